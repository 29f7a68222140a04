"""Layer parameters and seed handling.

Each data layer is configured by one parameter dataclass. Values are
validated on construction so that a bad configuration fails at setup time
with a ConfigurationError instead of somewhere inside the prefetch thread.

Environment variable:
    FEEDLINE_SEED: Seed used by layers constructed with ``seed=None``.
                   Unset means fresh OS entropy on every run.

Usage:
    from feedline.config import ImageDataParameter, TransformParameter

    param = ImageDataParameter(source="train.txt", batch_size=32, shuffle=True)
    transform = TransformParameter.from_dict({"crop_size": 224, "mirror": True})
"""

from __future__ import annotations

import dataclasses
import enum
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from feedline.errors import ConfigurationError

# Environment variable name for the default seed
SEED_ENV_VAR = "FEEDLINE_SEED"


class Phase(str, enum.Enum):
    """Network phase. TRAIN enables random crops, mirroring and jitter."""

    TRAIN = "train"
    TEST = "test"


class Modality(str, enum.Enum):
    """Video frame modality."""

    RGB = "rgb"
    FLOW = "flow"


def _coerce_enum(enum_cls: type[enum.Enum], value: Any, name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"{name} must be one of: {choices} (got {value!r})") from None


class _FromDict:
    """Mixin adding ``from_dict`` to parameter dataclasses."""

    @classmethod
    def from_dict(cls, mapping: Mapping[str, Any]):
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown {cls.__name__} option(s): {', '.join(unknown)}"
            )
        return cls(**mapping)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _check_batch_size(batch_size: int) -> None:
    if batch_size <= 0:
        raise ConfigurationError(f"batch_size must be positive (got {batch_size})")


def _check_resize(new_height: int, new_width: int) -> None:
    if (new_height == 0) != (new_width == 0) or new_height < 0 or new_width < 0:
        raise ConfigurationError(
            "new_height and new_width must both be zero or both be positive "
            f"(got {new_height}x{new_width})"
        )


@dataclass
class TransformParameter(_FromDict):
    """Per-sample preprocessing applied by DataTransformer.

    Attributes:
        crop_size: Square crop edge. 0 keeps the full image.
        mirror: Randomly flip horizontally (TRAIN phase only).
        scale: Multiplier applied after mean subtraction.
        mean_file: Path to a ``.npy`` mean image shaped (C, H, W).
        mean_value: Per-channel means. Mutually exclusive with mean_file.
    """

    crop_size: int = 0
    mirror: bool = False
    scale: float = 1.0
    mean_file: str | None = None
    mean_value: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        self.mean_value = tuple(float(v) for v in self.mean_value)
        if self.crop_size < 0:
            raise ConfigurationError(f"crop_size must be >= 0 (got {self.crop_size})")
        if self.mean_file and self.mean_value:
            raise ConfigurationError("Cannot specify mean_file and mean_value at the same time")


@dataclass
class DataParameter(_FromDict):
    """Key/value database source of serialized Datum records."""

    source: str
    batch_size: int
    backend: str = "lmdb"
    shuffle: bool = False
    rand_skip: int = 0

    def __post_init__(self) -> None:
        _check_batch_size(self.batch_size)
        if self.backend != "lmdb":
            raise ConfigurationError(f"Unknown database backend: {self.backend!r}")
        if self.rand_skip < 0:
            raise ConfigurationError(f"rand_skip must be >= 0 (got {self.rand_skip})")


@dataclass
class ImageDataParameter(_FromDict):
    """Image list source: one ``path label`` line per image."""

    source: str
    batch_size: int
    shuffle: bool = False
    new_height: int = 0
    new_width: int = 0
    is_color: bool = True
    root_folder: str = ""
    rand_skip: int = 0

    def __post_init__(self) -> None:
        _check_batch_size(self.batch_size)
        _check_resize(self.new_height, self.new_width)
        if self.rand_skip < 0:
            raise ConfigurationError(f"rand_skip must be >= 0 (got {self.rand_skip})")


@dataclass
class VideoDataParameter(_FromDict):
    """Video list source with segment-based temporal sampling.

    Attributes:
        new_length: Consecutive frames read per segment.
        num_segments: Equal-length windows each clip is divided into.
        flow_pairs: Record lines carry motion-vector and TV-L1 directories
            (``mvs_dir tvl1_dir path duration label``).
    """

    source: str
    batch_size: int
    shuffle: bool = False
    new_height: int = 0
    new_width: int = 0
    new_length: int = 1
    num_segments: int = 1
    modality: Modality = Modality.RGB
    root_folder: str = ""
    flow_pairs: bool = False
    rgb_pattern: str = "img_{:05d}.jpg"
    flow_x_pattern: str = "flow_x_{:05d}.jpg"
    flow_y_pattern: str = "flow_y_{:05d}.jpg"

    def __post_init__(self) -> None:
        _check_batch_size(self.batch_size)
        _check_resize(self.new_height, self.new_width)
        self.modality = _coerce_enum(Modality, self.modality, "modality")
        if self.new_length <= 0:
            raise ConfigurationError(f"new_length must be positive (got {self.new_length})")
        if self.num_segments <= 0:
            raise ConfigurationError(f"num_segments must be positive (got {self.num_segments})")


@dataclass
class WindowDataParameter(_FromDict):
    """Window file source for detection fine-tuning.

    Each batch holds ``round(batch_size * fg_fraction)`` foreground windows
    (overlap >= fg_threshold) after the background ones (overlap <
    bg_threshold, label forced to 0). The crop edge is
    ``TransformParameter.crop_size``.

    Attributes:
        context_pad: Pixels of context added around each window, measured
            in the warped crop.
        crop_mode: ``warp`` stretches the window to the crop; ``square``
            first grows it to a square around its center.
        cache_images: Read every image file into memory at setup.
    """

    source: str
    batch_size: int
    fg_threshold: float = 0.5
    bg_threshold: float = 0.5
    fg_fraction: float = 0.25
    context_pad: int = 0
    crop_mode: str = "warp"
    cache_images: bool = False
    root_folder: str = ""

    def __post_init__(self) -> None:
        _check_batch_size(self.batch_size)
        if not 0.0 <= self.fg_fraction <= 1.0:
            raise ConfigurationError(f"fg_fraction must be in [0, 1] (got {self.fg_fraction})")
        if self.context_pad < 0:
            raise ConfigurationError(f"context_pad must be >= 0 (got {self.context_pad})")
        if self.crop_mode not in ("warp", "square"):
            raise ConfigurationError(f"crop_mode must be warp or square (got {self.crop_mode!r})")


@dataclass
class MemoryDataParameter(_FromDict):
    """Shape of batches pushed into a MemoryDataLayer."""

    batch_size: int
    channels: int
    height: int
    width: int

    def __post_init__(self) -> None:
        _check_batch_size(self.batch_size)
        if min(self.channels, self.height, self.width) <= 0:
            raise ConfigurationError(
                "channels, height and width must be positive "
                f"(got {self.channels}x{self.height}x{self.width})"
            )


@dataclass
class HDF5DataParameter(_FromDict):
    """HDF5 source: a text file listing one ``.h5`` path per line."""

    source: str
    batch_size: int
    shuffle: bool = False
    dataset_names: tuple[str, ...] = ("data", "label")

    def __post_init__(self) -> None:
        _check_batch_size(self.batch_size)
        self.dataset_names = tuple(self.dataset_names)
        if not self.dataset_names:
            raise ConfigurationError("dataset_names must name at least one dataset")


@dataclass
class HDF5OutputParameter(_FromDict):
    file_name: str
    dataset_names: tuple[str, ...] = ("data", "label")

    def __post_init__(self) -> None:
        self.dataset_names = tuple(self.dataset_names)


@dataclass
class FillerParameter(_FromDict):
    """How a DummyDataLayer top is filled: constant, uniform or gaussian."""

    type: str = "constant"
    value: float = 0.0
    min: float = 0.0
    max: float = 1.0
    mean: float = 0.0
    std: float = 1.0

    def __post_init__(self) -> None:
        if self.type not in ("constant", "uniform", "gaussian"):
            raise ConfigurationError(f"Unknown filler type: {self.type!r}")


@dataclass
class DummyDataParameter(_FromDict):
    shapes: tuple[tuple[int, ...], ...]
    fillers: tuple[FillerParameter, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.shapes = tuple(tuple(int(d) for d in s) for s in self.shapes)
        self.fillers = tuple(
            f if isinstance(f, FillerParameter) else FillerParameter.from_dict(f)
            for f in self.fillers
        )
        if not self.shapes:
            raise ConfigurationError("DummyDataParameter needs at least one shape")
        if len(self.fillers) not in (0, 1, len(self.shapes)):
            raise ConfigurationError(
                f"Expected 0, 1 or {len(self.shapes)} fillers (got {len(self.fillers)})"
            )


def resolve_seed(seed: int | None = None) -> int:
    """Return an explicit seed.

    Checks, in order: the ``seed`` argument, the FEEDLINE_SEED environment
    variable, fresh OS entropy.
    """
    if seed is not None:
        return int(seed)
    env_seed = os.environ.get(SEED_ENV_VAR)
    if env_seed:
        try:
            return int(env_seed)
        except ValueError:
            raise ConfigurationError(
                f"{SEED_ENV_VAR} must be an integer (got {env_seed!r})"
            ) from None
    return int(np.random.SeedSequence().entropy)


def spawn_generators(seed: int | None, count: int) -> list[np.random.Generator]:
    """Spawn ``count`` independent generators from one seed.

    Each randomness axis (shuffle order, segment jitter, crop/mirror) gets
    its own stream so that draws on one axis never shift another.
    """
    children = np.random.SeedSequence(resolve_seed(seed)).spawn(count)
    return [np.random.default_rng(child) for child in children]


__all__ = [
    "SEED_ENV_VAR",
    "DataParameter",
    "DummyDataParameter",
    "FillerParameter",
    "HDF5DataParameter",
    "HDF5OutputParameter",
    "ImageDataParameter",
    "MemoryDataParameter",
    "Modality",
    "Phase",
    "TransformParameter",
    "VideoDataParameter",
    "WindowDataParameter",
    "resolve_seed",
    "spawn_generators",
]

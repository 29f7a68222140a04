"""Per-sample preprocessing: mean subtraction, crop, mirror, scale.

DataTransformer turns one decoded CHW uint8 sample into a fixed-shape
float32 array ready to be written into a batch slot. Random choices
(crop offsets, mirror flips) are only made in the TRAIN phase and are
drawn from the transformer's own generator.

Usage:
    from feedline.config import Phase, TransformParameter
    from feedline.transforms import DataTransformer

    t = DataTransformer(TransformParameter(crop_size=224, mirror=True), Phase.TRAIN)
    out = t(sample)       # float32 [C, 224, 224]
    t.infer_shape((3, 256, 256))  # (3, 224, 224)
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from feedline.config import Phase, TransformParameter
from feedline.errors import ConfigurationError, DecodeError


def load_mean_file(path: str | Path) -> np.ndarray:
    """Load a ``.npy`` mean image as float32 (C, H, W)."""
    try:
        mean = np.load(path, allow_pickle=False)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load mean file {path}: {e}") from e
    if mean.ndim == 4 and mean.shape[0] == 1:
        mean = mean[0]
    if mean.ndim != 3:
        raise ConfigurationError(f"Mean file {path} must be shaped (C, H, W), got {mean.shape}")
    return mean.astype(np.float32)


class DataTransformer:
    """Apply mean subtraction, cropping, mirroring and scaling to one sample.

    Args:
        param: Transform options. None means identity (float32 cast only).
        phase: TRAIN draws random crops/flips, TEST center-crops.
        rng: Generator for crop offsets and mirror flips.
    """

    def __init__(
        self,
        param: TransformParameter | None = None,
        phase: Phase = Phase.TRAIN,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.param = param if param is not None else TransformParameter()
        self.phase = Phase(phase)
        self.rng = rng if rng is not None else np.random.default_rng()
        self.mean: np.ndarray | None = None
        if self.param.mean_file:
            self.mean = load_mean_file(self.param.mean_file)
        self.mean_values = np.asarray(self.param.mean_value, dtype=np.float32)

    @property
    def train(self) -> bool:
        return self.phase == Phase.TRAIN

    def _check_mean(self, shape: tuple[int, ...]) -> None:
        if self.mean is not None and self.mean.shape != tuple(shape):
            raise ConfigurationError(
                f"Mean file shape {self.mean.shape} does not match data shape {tuple(shape)}"
            )

    def infer_shape(self, shape: tuple[int, ...]) -> tuple[int, int, int]:
        """Output shape for a (C, H, W) input."""
        channels, height, width = shape
        self._check_mean(shape)
        crop = self.param.crop_size
        if crop:
            if crop > height or crop > width:
                raise ConfigurationError(
                    f"crop_size {crop} exceeds data size {height}x{width}"
                )
            return (channels, crop, crop)
        return (channels, height, width)

    def _offsets(self, height: int, width: int, crop: int) -> tuple[int, int]:
        if self.train:
            return (
                int(self.rng.integers(0, height - crop + 1)),
                int(self.rng.integers(0, width - crop + 1)),
            )
        return (height - crop) // 2, (width - crop) // 2

    def transform(self, sample: np.ndarray) -> np.ndarray:
        if sample.ndim != 3:
            raise DecodeError(f"Expected a CHW sample, got shape {sample.shape}")
        channels, height, width = sample.shape
        data = sample.astype(np.float32)

        if self.mean is not None:
            self._check_mean(sample.shape)
            data -= self.mean
        elif self.mean_values.size:
            # fewer values than channels repeat cyclically (e.g. RGB means over stacked frames)
            data -= np.resize(self.mean_values, channels)[:, None, None]

        crop = self.param.crop_size
        if crop:
            if crop > height or crop > width:
                raise DecodeError(f"Sample {height}x{width} is smaller than crop_size {crop}")
            h_off, w_off = self._offsets(height, width, crop)
            data = data[:, h_off:h_off + crop, w_off:w_off + crop]

        if self.param.mirror and self.train and self.rng.integers(2):
            data = data[:, :, ::-1]

        if self.param.scale != 1.0:
            data = data * np.float32(self.param.scale)

        return np.ascontiguousarray(data)

    def __call__(self, sample: np.ndarray) -> np.ndarray:
        return self.transform(sample)

    def __repr__(self) -> str:
        return (
            f"DataTransformer(crop_size={self.param.crop_size}, mirror={self.param.mirror}, "
            f"scale={self.param.scale}, mean_file={self.param.mean_file!r}, "
            f"mean_value={self.param.mean_value}, phase='{self.phase.value}')"
        )


__all__ = ["DataTransformer", "load_mean_file"]

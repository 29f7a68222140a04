"""WindowDataLayer: foreground/background windows cropped from images.

Used to fine-tune a classifier on detection proposals. Every window in the
window file is sorted into a foreground pool (overlap >= fg_threshold,
keeps its label) or a background pool (overlap < bg_threshold, label 0).
Each batch is ``batch_size - num_fg`` background windows followed by
``num_fg`` foreground windows, each drawn uniformly at random from its pool.

A window is grown by ``context_pad`` pixels of context (measured in the
warped crop), clipped to the image, and warped to ``crop_size``. Parts of
the padded window that fall outside the image stay zero.

Usage:
    from feedline import TransformParameter, WindowDataLayer, WindowDataParameter

    layer = WindowDataLayer(
        WindowDataParameter("windows.txt", batch_size=128, context_pad=16),
        transform_param=TransformParameter(crop_size=227, mirror=True,
                                           mean_value=(104, 117, 123)),
        seed=0,
    )
    layer.setup()
    crops, labels = layer.forward()    # [128, 3, 227, 227], [128]
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from tqdm import tqdm

from feedline.config import WindowDataParameter
from feedline.decoders import read_image_window
from feedline.errors import ConfigurationError, DecodeError
from feedline.layers.base import PrefetchingDataLayer
from feedline.prefetch import SampleSource
from feedline.records import Window, WindowImage, read_window_file
from feedline.transforms import DataTransformer

logger = logging.getLogger(__name__)


def _round(value: float) -> int:
    """Round half away from zero."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass(frozen=True)
class WindowCrop:
    """Where a window is read from and where it lands in the crop."""

    box: tuple[int, int, int, int]
    size: tuple[int, int]
    pad_h: int
    pad_w: int


def window_crop(
    window: Window,
    image_height: int,
    image_width: int,
    crop_size: int,
    context_pad: int = 0,
    square: bool = False,
    mirror: bool = False,
) -> WindowCrop:
    """Compute the image box to read and its warped size and offset in the crop.

    Raises:
        DecodeError: If the padded window does not intersect the image.
    """
    x1, y1, x2, y2 = window.x1, window.y1, window.x2, window.y2
    if not (context_pad > 0 or square):
        return WindowCrop((x1, y1, x2, y2), (crop_size, crop_size), 0, 0)

    context_scale = crop_size / (crop_size - 2 * context_pad)
    half_height = (y2 - y1 + 1) / 2.0
    half_width = (x2 - x1 + 1) / 2.0
    center_x = x1 + half_width
    center_y = y1 + half_height
    if square:
        half_height = half_width = max(half_height, half_width)
    x1 = _round(center_x - half_width * context_scale)
    x2 = _round(center_x + half_width * context_scale)
    y1 = _round(center_y - half_height * context_scale)
    y2 = _round(center_y + half_height * context_scale)

    unclipped_height = y2 - y1 + 1
    unclipped_width = x2 - x1 + 1
    pad_x1 = max(0, -x1)
    pad_y1 = max(0, -y1)
    pad_x2 = max(0, x2 - image_width + 1)
    pad_y2 = max(0, y2 - image_height + 1)
    x1, x2 = x1 + pad_x1, x2 - pad_x2
    y1, y2 = y1 + pad_y1, y2 - pad_y2
    if x1 > x2 or y1 > y2:
        raise DecodeError(f"Window {window} lies outside the {image_width}x{image_height} image")

    scale_x = crop_size / unclipped_width
    scale_y = crop_size / unclipped_height
    width = _round((x2 - x1 + 1) * scale_x)
    height = _round((y2 - y1 + 1) * scale_y)
    pad_h = _round(pad_y1 * scale_y)
    # the flip moves the right-hand padding to the left
    pad_w = _round((pad_x2 if mirror else pad_x1) * scale_x)
    height = min(height, crop_size - pad_h)
    width = min(width, crop_size - pad_w)
    return WindowCrop((x1, y1, x2, y2), (width, height), pad_h, pad_w)


class WindowSampleSource(SampleSource):
    """Draw foreground/background windows and warp them to the crop size.

    Slot ``i`` of a batch is foreground when ``i >= batch_size - num_fg``.
    Every draw, decoded or skipped, moves the slot position by one.
    """

    def __init__(
        self,
        images: list[WindowImage],
        param: WindowDataParameter,
        transformer: DataTransformer,
        rng: np.random.Generator,
        cache: dict[int, bytes] | None = None,
    ) -> None:
        self.images = images
        self.param = param
        self.transformer = transformer
        self.rng = rng
        self.cache = cache or {}
        self.crop_size = transformer.param.crop_size
        self.num_fg = int(param.batch_size * param.fg_fraction)
        self.position = 0

        self.fg_windows: list[tuple[int, Window]] = []
        self.bg_windows: list[tuple[int, Window]] = []
        for index, image in enumerate(images):
            for window in image.windows:
                if window.overlap >= param.fg_threshold:
                    if window.label <= 0:
                        raise ConfigurationError(
                            f"Foreground window in {image.path} has label {window.label}; "
                            "foreground labels must be positive"
                        )
                    self.fg_windows.append((index, window))
                elif window.overlap < param.bg_threshold:
                    self.bg_windows.append((index, window))
        logger.info(
            "WindowData: %d foreground windows, %d background windows",
            len(self.fg_windows), len(self.bg_windows),
        )
        if self.num_fg > 0 and not self.fg_windows:
            raise ConfigurationError("fg_fraction > 0 but no window reaches fg_threshold")
        if self.num_fg < param.batch_size and not self.bg_windows:
            raise ConfigurationError("fg_fraction < 1 but no window is below bg_threshold")
        self._check_mean()

    def _check_mean(self) -> None:
        mean = self.transformer.mean
        if mean is None:
            return
        if mean.shape[1] != mean.shape[2]:
            raise ConfigurationError(f"Mean image must be square (got {mean.shape})")
        if mean.shape[1] < self.crop_size:
            raise ConfigurationError(
                f"Mean image {mean.shape} is smaller than crop_size {self.crop_size}"
            )

    def resolve(self, image: WindowImage) -> Path:
        return Path(self.param.root_folder) / image.path

    def _draw(self) -> tuple[int, Window, bool]:
        slot = self.position % self.param.batch_size
        self.position += 1
        pool = self.fg_windows if slot >= self.param.batch_size - self.num_fg else self.bg_windows
        index, window = pool[int(self.rng.integers(len(pool)))]
        t = self.transformer
        mirror = bool(t.param.mirror and t.train and t.rng.integers(2))
        return index, window, mirror

    def next_sample(self) -> tuple[np.ndarray, int]:
        index, window, mirror = self._draw()
        image = self.images[index]
        crop = window_crop(
            window, image.height, image.width, self.crop_size,
            self.param.context_pad, self.param.crop_mode == "square", mirror,
        )
        pixels = read_image_window(
            self.cache.get(index, self.resolve(image)),
            crop.box, crop.size, mirror, is_color=image.channels != 1,
        )

        channels, height, width = pixels.shape
        region = pixels.astype(np.float32)
        t = self.transformer
        if t.mean is not None:
            off = (t.mean.shape[1] - self.crop_size) // 2
            top, left = off + crop.pad_h, off + crop.pad_w
            if t.mean.shape[0] != channels:
                raise DecodeError(
                    f"{image.path} has {channels} channels, mean image has {t.mean.shape[0]}",
                    image.path,
                )
            region -= t.mean[:, top:top + height, left:left + width]
        elif t.mean_values.size:
            region -= np.resize(t.mean_values, channels)[:, None, None]
        if t.param.scale != 1.0:
            region *= np.float32(t.param.scale)

        out = np.zeros((channels, self.crop_size, self.crop_size), dtype=np.float32)
        out[:, crop.pad_h:crop.pad_h + height, crop.pad_w:crop.pad_w + width] = region
        label = window.label if window.overlap >= self.param.fg_threshold else 0
        return out, label

    def skip(self, count: int) -> None:
        for _ in range(count):
            self._draw()

    def sample_shape(self) -> tuple[int, ...]:
        return (self.images[0].channels, self.crop_size, self.crop_size)

    def describe(self) -> str:
        return f"WindowSampleSource(position={self.position})"

    def __len__(self) -> int:
        return len(self.fg_windows) + len(self.bg_windows)


class WindowDataLayer(PrefetchingDataLayer):
    """Crops of foreground and background windows listed in a window file.

    ``transform_param.crop_size`` sets the output size and is required.
    Mean subtraction, mirroring (TRAIN only) and scale come from the same
    TransformParameter; a mean image is sampled at the crop's position
    inside its centered ``crop_size`` region.
    """

    type_name = "WindowData"

    def __init__(self, param: WindowDataParameter, **kwargs) -> None:
        super().__init__(param, **kwargs)
        crop_size = self.transform_param.crop_size
        if crop_size <= 0:
            raise ConfigurationError("WindowData needs transform_param.crop_size > 0")
        if 2 * param.context_pad >= crop_size:
            raise ConfigurationError(
                f"context_pad {param.context_pad} leaves no room in crop_size {crop_size}"
            )

    def load_cache(self, images: list[WindowImage]) -> dict[int, bytes]:
        """Read every listed image file into memory."""
        cache = {}
        for index, image in enumerate(tqdm(images, desc="Caching images", leave=False)):
            path = Path(self.param.root_folder) / image.path
            try:
                cache[index] = path.read_bytes()
            except OSError as e:
                raise ConfigurationError(f"Cannot cache image {path}: {e}") from e
        return cache

    def build_source(self) -> WindowSampleSource:
        images = read_window_file(self.param.source)
        cache = self.load_cache(images) if self.param.cache_images else None
        return WindowSampleSource(images, self.param, self.transformer, self.sample_rng, cache)


__all__ = [
    "WindowCrop",
    "WindowDataLayer",
    "WindowSampleSource",
    "window_crop",
]

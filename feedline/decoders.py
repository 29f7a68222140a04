"""Sample decoders.

Thin adapters over PIL that turn a record locator into a CHW uint8 array.
Every failure to read or decode is raised as DecodeError carrying the
locator, which is the only failure signal the prefetch loop understands.

Video clips are directories of extracted frames (1-based numbering):

    RGB:   img_00001.jpg, img_00002.jpg, ...          (3 channels each)
    FLOW:  flow_x_00001.jpg, flow_y_00001.jpg, ...    (1 channel each)

Segment decoders stack all snippets along the channel axis, segment-major:
``[seg0 frame0, seg0 frame1, ..., seg1 frame0, ...]``.
"""

from __future__ import annotations

import io
import zipfile
from collections.abc import Sequence
from pathlib import Path

import numpy as np
from PIL import Image

from feedline.db import Datum
from feedline.errors import DecodeError

DEFAULT_RGB_PATTERN = "img_{:05d}.jpg"
DEFAULT_FLOW_X_PATTERN = "flow_x_{:05d}.jpg"
DEFAULT_FLOW_Y_PATTERN = "flow_y_{:05d}.jpg"


def _to_chw(img: Image.Image, height: int, width: int, is_color: bool) -> np.ndarray:
    img = img.convert("RGB" if is_color else "L")
    if height > 0 and width > 0 and img.size != (width, height):
        img = img.resize((width, height), Image.Resampling.BILINEAR)
    arr = np.asarray(img, dtype=np.uint8)
    if arr.ndim == 2:
        return arr[np.newaxis].copy()
    return np.ascontiguousarray(arr.transpose(2, 0, 1))


def read_image(
    path: str | Path,
    height: int = 0,
    width: int = 0,
    is_color: bool = True,
) -> np.ndarray:
    """Read an image file as CHW uint8, resized when height and width are set.

    Raises:
        DecodeError: If the file is missing or not a decodable image.
    """
    try:
        with Image.open(path) as img:
            return _to_chw(img, height, width, is_color)
    except (OSError, ValueError) as e:
        raise DecodeError(f"Could not open or find file {path}: {e}", path) from e


def decode_image_bytes(
    payload: bytes,
    height: int = 0,
    width: int = 0,
    is_color: bool = True,
) -> np.ndarray:
    """Decode compressed image bytes (JPEG, PNG, ...) as CHW uint8."""
    try:
        with Image.open(io.BytesIO(payload)) as img:
            return _to_chw(img, height, width, is_color)
    except (OSError, ValueError) as e:
        raise DecodeError(f"Could not decode image bytes: {e}") from e


def decode_datum(payload: bytes | Datum, is_color: bool = True) -> tuple[np.ndarray, int]:
    """Decode a serialized Datum into (CHW uint8 array, label)."""
    try:
        datum = payload if isinstance(payload, Datum) else Datum.from_bytes(payload)
    except (OSError, ValueError, KeyError, EOFError, zipfile.BadZipFile) as e:
        raise DecodeError(f"Corrupt datum: {e}") from e
    if datum.encoded:
        return decode_image_bytes(datum.data, is_color=is_color), datum.label
    try:
        return datum.to_array(), datum.label
    except ValueError as e:
        raise DecodeError(f"Datum geometry does not match its data: {e}") from e


def read_image_window(
    source: str | Path | bytes,
    box: tuple[int, int, int, int],
    size: tuple[int, int],
    mirror: bool = False,
    is_color: bool = True,
) -> np.ndarray:
    """Crop ``box`` (x1, y1, x2, y2, corners inclusive) out of an image.

    The crop is resized to ``size`` (width, height) and optionally flipped
    left to right. ``source`` is a file path or the file's bytes.

    Returns:
        CHW uint8 array.
    """
    locator = source if not isinstance(source, bytes) else None
    x1, y1, x2, y2 = box
    try:
        with Image.open(io.BytesIO(source) if isinstance(source, bytes) else source) as img:
            img = img.convert("RGB" if is_color else "L")
            if not (0 <= x1 <= x2 < img.width and 0 <= y1 <= y2 < img.height):
                raise DecodeError(f"Window {box} lies outside image {img.size}", locator)
            img = img.crop((x1, y1, x2 + 1, y2 + 1))
            if img.size != size:
                img = img.resize(size, Image.Resampling.BILINEAR)
            if mirror:
                img = img.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
            return _to_chw(img, 0, 0, is_color)
    except (OSError, ValueError) as e:
        raise DecodeError(f"Could not read window {box} of {locator or 'image bytes'}: {e}", locator) from e


def _stack(frames: list[np.ndarray], locator: object) -> np.ndarray:
    try:
        return np.concatenate(frames, axis=0)
    except ValueError as e:
        raise DecodeError(f"Frames of {locator} differ in size: {e}", locator) from e


def _frame_numbers(offsets: Sequence[int], new_length: int):
    for offset in offsets:
        for j in range(new_length):
            yield offset + j + 1


def read_segment_rgb(
    video_dir: str | Path,
    offsets: Sequence[int],
    height: int = 0,
    width: int = 0,
    new_length: int = 1,
    pattern: str = DEFAULT_RGB_PATTERN,
) -> np.ndarray:
    """Read ``new_length`` RGB frames at each offset.

    Returns:
        uint8 array shaped (3 * new_length * len(offsets), H, W).
    """
    video_dir = Path(video_dir)
    frames = [
        read_image(video_dir / pattern.format(n), height, width, is_color=True)
        for n in _frame_numbers(offsets, new_length)
    ]
    return _stack(frames, video_dir)


def read_segment_flow(
    video_dir: str | Path,
    offsets: Sequence[int],
    height: int = 0,
    width: int = 0,
    new_length: int = 1,
    x_pattern: str = DEFAULT_FLOW_X_PATTERN,
    y_pattern: str = DEFAULT_FLOW_Y_PATTERN,
) -> np.ndarray:
    """Read x/y optical-flow frame pairs at each offset.

    Returns:
        uint8 array shaped (2 * new_length * len(offsets), H, W).
    """
    video_dir = Path(video_dir)
    frames = []
    for n in _frame_numbers(offsets, new_length):
        frames.append(read_image(video_dir / x_pattern.format(n), height, width, is_color=False))
        frames.append(read_image(video_dir / y_pattern.format(n), height, width, is_color=False))
    return _stack(frames, video_dir)


def read_segment_flow_pair(
    mvs_dir: str | Path,
    tvl1_dir: str | Path,
    offsets: Sequence[int],
    height: int = 0,
    width: int = 0,
    new_length: int = 1,
    x_pattern: str = DEFAULT_FLOW_X_PATTERN,
    y_pattern: str = DEFAULT_FLOW_Y_PATTERN,
) -> np.ndarray:
    """Read motion-vector and TV-L1 flow frames at each offset.

    Per frame the channels are ``mvs_x, mvs_y, tvl1_x, tvl1_y``.

    Returns:
        uint8 array shaped (4 * new_length * len(offsets), H, W).
    """
    mvs_dir, tvl1_dir = Path(mvs_dir), Path(tvl1_dir)
    frames = []
    for n in _frame_numbers(offsets, new_length):
        for directory in (mvs_dir, tvl1_dir):
            frames.append(read_image(directory / x_pattern.format(n), height, width, is_color=False))
            frames.append(read_image(directory / y_pattern.format(n), height, width, is_color=False))
    return _stack(frames, mvs_dir)


__all__ = [
    "DEFAULT_FLOW_X_PATTERN",
    "DEFAULT_FLOW_Y_PATTERN",
    "DEFAULT_RGB_PATTERN",
    "decode_datum",
    "decode_image_bytes",
    "read_image",
    "read_image_window",
    "read_segment_flow",
    "read_segment_flow_pair",
    "read_segment_rgb",
]

"""Record-list files.

A record list is plain text, one record per line, whitespace-separated:

    ImageRecord:     <path> <label>
    VideoRecord:     <frame_dir> <num_frames> <label>
    FlowPairRecord:  <mvs_dir> <tvl1_dir> <frame_dir> <num_frames> <label>

Blank lines and lines starting with ``#`` are ignored. Image paths may
contain spaces (the label is split off the right end).

Window files use a block format instead, one block per image:

    # <image_index>
    <image_path>
    <channels>
    <height>
    <width>
    <num_windows>
    <label> <overlap> <x1> <y1> <x2> <y2>     (num_windows lines)

Usage:
    from feedline.records import ImageRecord, read_record_list

    records = read_record_list("train.txt", ImageRecord)
    print(records[0])  # ImageRecord(path='a.jpg', label=0)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from feedline.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageRecord:
    path: str
    label: int

    @classmethod
    def parse(cls, line: str) -> ImageRecord:
        path, label = line.rsplit(None, 1)
        return cls(path, int(label))

    def to_line(self) -> str:
        return f"{self.path} {self.label}"


@dataclass(frozen=True)
class VideoRecord:
    """A clip stored as a directory of extracted frames."""

    path: str
    duration: int
    label: int

    @classmethod
    def parse(cls, line: str) -> VideoRecord:
        path, duration, label = line.rsplit(None, 2)
        return cls(path, int(duration), int(label))

    def to_line(self) -> str:
        return f"{self.path} {self.duration} {self.label}"


@dataclass(frozen=True)
class FlowPairRecord:
    """A clip paired with motion-vector and TV-L1 flow frame directories."""

    mvs_dir: str
    tvl1_dir: str
    path: str
    duration: int
    label: int

    @classmethod
    def parse(cls, line: str) -> FlowPairRecord:
        mvs_dir, tvl1_dir, path, duration, label = line.split()
        return cls(mvs_dir, tvl1_dir, path, int(duration), int(label))

    def to_line(self) -> str:
        return f"{self.mvs_dir} {self.tvl1_dir} {self.path} {self.duration} {self.label}"


Record = ImageRecord | VideoRecord | FlowPairRecord
R = TypeVar("R", ImageRecord, VideoRecord, FlowPairRecord)


def parse_records(lines: Iterable[str], record_type: type[R], source: str = "<lines>") -> list[R]:
    """Parse record lines, raising ConfigurationError with the line number on bad input."""
    records = []
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            records.append(record_type.parse(line))
        except ValueError:
            raise ConfigurationError(
                f"{source}:{lineno}: malformed {record_type.__name__} line: {line!r}"
            ) from None
    return records


def read_record_list(source: str | Path, record_type: type[R]) -> list[R]:
    """Read a record-list file.

    Raises:
        ConfigurationError: If the file is missing, unreadable, malformed
            or contains no records.
    """
    source = Path(source)
    logger.info("Opening file: %s", source)
    try:
        text = source.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read record list {source}: {e}") from e

    records = parse_records(text.splitlines(), record_type, source=str(source))
    if not records:
        raise ConfigurationError(f"Record list {source} contains no records")
    logger.info("A total of %d records in %s", len(records), source)
    return records


def write_record_list(path: str | Path, records: Iterable[Record]) -> None:
    """Write records one per line, in the format read_record_list accepts."""
    lines = [record.to_line() for record in records]
    Path(path).write_text("".join(f"{line}\n" for line in lines))


@dataclass(frozen=True)
class Window:
    """A labeled box, corners inclusive, with its overlap against ground truth."""

    label: int
    overlap: float
    x1: int
    y1: int
    x2: int
    y2: int

    @classmethod
    def parse(cls, line: str) -> Window:
        label, overlap, x1, y1, x2, y2 = line.split()
        return cls(int(label), float(overlap), int(x1), int(y1), int(x2), int(y2))


@dataclass(frozen=True)
class WindowImage:
    path: str
    channels: int
    height: int
    width: int
    windows: tuple[Window, ...]


def read_window_file(source: str | Path) -> list[WindowImage]:
    """Read a window file.

    Raises:
        ConfigurationError: If the file is missing, truncated or malformed,
            or lists no images.
    """
    source = Path(source)
    logger.info("Window data file: %s", source)
    try:
        text = source.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read window file {source}: {e}") from e

    lines = iter([
        (lineno, line.strip())
        for lineno, line in enumerate(text.splitlines(), start=1)
        if line.strip()
    ])
    lineno, line = 0, ""

    def take() -> str:
        nonlocal lineno, line
        try:
            lineno, line = next(lines)
        except StopIteration:
            raise ConfigurationError(f"{source}: unexpected end of file") from None
        return line

    images = []
    try:
        for lineno, line in lines:
            if not line.startswith("#"):
                raise ConfigurationError(f"{source}:{lineno}: expected \"# <index>\", got {line!r}")
            path = take()
            channels, height, width, count = (int(take()) for _ in range(4))
            windows = tuple(Window.parse(take()) for _ in range(count))
            images.append(WindowImage(path, channels, height, width, windows))
    except ConfigurationError:
        raise
    except ValueError:
        raise ConfigurationError(f"{source}:{lineno}: malformed line: {line!r}") from None

    if not images:
        raise ConfigurationError(f"Window file {source} lists no images")
    logger.info("A total of %d images in %s", len(images), source)
    return images


__all__ = [
    "FlowPairRecord",
    "ImageRecord",
    "Record",
    "VideoRecord",
    "Window",
    "WindowImage",
    "parse_records",
    "read_record_list",
    "read_window_file",
    "write_record_list",
]

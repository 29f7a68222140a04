"""Build an LMDB database of Datum records from an image list.

Each line of the list is ``<path> <label>`` with ``path`` relative to
``root_folder``. Records are stored under keys ``{index:08d}_{path}`` so
that key order equals list order (after the optional shuffle).

Usage:
    from feedline.convert import convert_imageset

    n = convert_imageset("train.txt", "/data/images", "/data/train_lmdb",
                         shuffle=True, resize_height=256, resize_width=256)
"""

from __future__ import annotations

import io
import itertools
import logging
from collections.abc import Iterator
from pathlib import Path

from PIL import Image
from tqdm import tqdm

from feedline.config import spawn_generators
from feedline.db import Datum, LMDBDatabase
from feedline.decoders import read_image
from feedline.errors import ConfigurationError, DecodeError
from feedline.records import ImageRecord, read_record_list

logger = logging.getLogger(__name__)

# Records written per LMDB transaction
COMMIT_EVERY = 1000


def _encode_resized(path: Path, height: int, width: int, is_color: bool) -> bytes:
    """Re-encode an image after resizing, keeping its file format."""
    try:
        with Image.open(path) as img:
            fmt = img.format or "PNG"
            img = img.convert("RGB" if is_color else "L")
            img = img.resize((width, height), Image.Resampling.BILINEAR)
            buf = io.BytesIO()
            img.save(buf, format=fmt)
    except (OSError, ValueError) as e:
        raise DecodeError(f"Could not open or find file {path}: {e}", path) from e
    return buf.getvalue()


def make_datum(
    path: str | Path,
    label: int,
    resize_height: int = 0,
    resize_width: int = 0,
    is_color: bool = True,
    encoded: bool = False,
) -> Datum:
    """Read one image file into a Datum.

    Raw datums hold decoded CHW pixels. Encoded datums hold the file bytes
    as-is, or re-encoded bytes when a resize is requested.
    """
    path = Path(path)
    if not encoded:
        return Datum.from_array(read_image(path, resize_height, resize_width, is_color), label)
    if resize_height > 0 and resize_width > 0:
        payload = _encode_resized(path, resize_height, resize_width, is_color)
    else:
        try:
            payload = path.read_bytes()
        except OSError as e:
            raise DecodeError(f"Could not open or find file {path}: {e}", path) from e
    return Datum(data=payload, label=int(label), encoded=True)


def _datums(
    records: list[ImageRecord],
    root_folder: Path,
    resize_height: int,
    resize_width: int,
    is_color: bool,
    encoded: bool,
    progress: tqdm | None,
) -> Iterator[tuple[bytes, bytes]]:
    expected_size = None
    for index, record in enumerate(records):
        if progress is not None:
            progress.update(1)
        try:
            datum = make_datum(
                root_folder / record.path, record.label,
                resize_height, resize_width, is_color, encoded,
            )
        except DecodeError as e:
            logger.warning("Skipping %s: %s", record.path, e)
            continue
        if not encoded:
            if expected_size is None:
                expected_size = len(datum.data)
            elif len(datum.data) != expected_size:
                raise ConfigurationError(
                    f"Incorrect data field size {len(datum.data)} for {record.path} "
                    f"(expected {expected_size}); set resize_height/resize_width"
                )
        yield f"{index:08d}_{record.path}".encode(), datum.to_bytes()


def convert_imageset(
    list_file: str | Path,
    root_folder: str | Path,
    db_path: str | Path,
    shuffle: bool = False,
    resize_height: int = 0,
    resize_width: int = 0,
    is_color: bool = True,
    encoded: bool = False,
    seed: int | None = None,
    verbose: bool = True,
) -> int:
    """Convert an image list into an LMDB database.

    Unreadable images are logged and skipped. Raw (not encoded) records
    must all have the same size, so mixed-size inputs need a resize.

    Args:
        list_file: Record list of ``<path> <label>`` lines.
        root_folder: Directory the record paths are relative to.
        db_path: LMDB directory to create. Must not exist yet.
        shuffle: Shuffle the list before writing.
        resize_height, resize_width: Resize every image (both or neither).
        is_color: Store 3-channel (True) or grayscale (False) images.
        encoded: Store compressed file bytes instead of raw pixels.
        seed: Shuffle seed (see feedline.config.resolve_seed).
        verbose: Show a progress bar.

    Returns:
        Number of records written.
    """
    db_path = Path(db_path)
    if db_path.exists():
        raise ConfigurationError(f"Database {db_path} already exists")
    if (resize_height == 0) != (resize_width == 0):
        raise ConfigurationError("resize_height and resize_width must be set together")

    records = read_record_list(list_file, ImageRecord)
    if shuffle:
        (rng,) = spawn_generators(seed, 1)
        order = rng.permutation(len(records))
        records = [records[i] for i in order]
        logger.info("Shuffling data")

    progress = tqdm(total=len(records), desc="Converting images") if verbose else None
    written = 0
    db = LMDBDatabase(db_path, readonly=False)
    try:
        items = _datums(
            records, Path(root_folder), resize_height, resize_width,
            is_color, encoded, progress,
        )
        while True:
            chunk = list(itertools.islice(items, COMMIT_EVERY))
            if not chunk:
                break
            written += db.put_many(chunk)
            logger.debug("Processed %d files.", written)
    finally:
        db.close()
        if progress is not None:
            progress.close()

    logger.info("Wrote %d of %d records to %s", written, len(records), db_path)
    return written


__all__ = ["COMMIT_EVERY", "convert_imageset", "make_datum"]

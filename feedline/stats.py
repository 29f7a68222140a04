"""Dataset statistics computation.

Computes the mean image of a Datum database, the input expected by
``TransformParameter.mean_file``. Raw and encoded datums are both
accepted; every record must decode to the same (C, H, W) shape.

Usage:
    from feedline import compute_image_mean

    mean = compute_image_mean("/data/train_lmdb", "mean.npy")
    print(mean.shape)   # (3, 256, 256)
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
from tqdm import tqdm

from feedline.db import Database, LMDBDatabase
from feedline.decoders import decode_datum
from feedline.errors import ConfigurationError

__all__ = ["compute_image_mean"]

logger = logging.getLogger(__name__)


def compute_image_mean(
    database: str | Path | Database,
    output_file: str | Path | None = None,
    num_samples: int | None = None,
    verbose: bool = True,
) -> np.ndarray:
    """Compute the per-pixel mean of all datums in a database.

    Accumulation is float64 over uint8 pixels.

    Args:
        database: An open Database, or the path of an LMDB directory.
        output_file: Save the mean here as ``.npy`` (shape (C, H, W)).
        num_samples: Use only the first ``num_samples`` records in key
            order. ``None`` = all records.
        verbose: Show a progress bar and print per-channel means.

    Returns:
        float32 array shaped (C, H, W).
    """
    owned = not isinstance(database, Database)
    db = LMDBDatabase(database) if owned else database
    try:
        total = len(db) if num_samples is None else min(num_samples, len(db))
        if total < 1:
            raise ConfigurationError(f"No records found in {db!r}")

        cursor = db.cursor()
        iterator = range(total)
        if verbose:
            iterator = tqdm(iterator, desc="Computing mean", total=total)

        channel_sum = None
        count = 0
        try:
            for _ in iterator:
                if not cursor.valid:
                    break
                sample, _ = decode_datum(cursor.value())
                if channel_sum is None:
                    channel_sum = np.zeros(sample.shape, dtype=np.float64)
                elif sample.shape != channel_sum.shape:
                    raise ConfigurationError(
                        f"Record {cursor.key()!r} has shape {sample.shape}, "
                        f"expected {channel_sum.shape}"
                    )
                channel_sum += sample
                count += 1
                cursor.next()
        finally:
            cursor.close()
    finally:
        if owned:
            db.close()

    mean = (channel_sum / count).astype(np.float32)
    logger.info("Processed %d records, mean image shape %s", count, mean.shape)

    if output_file is not None:
        np.save(output_file, mean)
        logger.info("Wrote mean image to %s", output_file)

    if verbose:
        channel_means = mean.reshape(mean.shape[0], -1).mean(axis=1)
        print(f"Image mean ({count:,} records):")
        for c, value in enumerate(channel_means):
            print(f"  mean_value channel {c}: {value:.6f}")

    return mean

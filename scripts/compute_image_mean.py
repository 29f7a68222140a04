#!/usr/bin/env python
"""Compute the mean image of a Datum database.

The result is saved as a ``.npy`` array shaped (C, H, W), usable as
``TransformParameter(mean_file=...)``.

Usage:
    python scripts/compute_image_mean.py /data/train_lmdb mean.npy

    # First 10k records only
    python scripts/compute_image_mean.py /data/train_lmdb mean.npy --num-samples 10000
"""

import argparse
import logging
import sys

from feedline.errors import ConfigurationError
from feedline.stats import compute_image_mean


def main():
    parser = argparse.ArgumentParser(description="Compute the mean image of an LMDB database")
    parser.add_argument("db_path", help="LMDB directory of Datum records")
    parser.add_argument("output_file", nargs="?", default=None,
                        help="Where to save the mean (.npy)")
    parser.add_argument("--num-samples", type=int, default=None,
                        help="Use only the first N records")
    parser.add_argument("--quiet", action="store_true",
                        help="Hide the progress bar")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        compute_image_mean(
            args.db_path,
            args.output_file,
            num_samples=args.num_samples,
            verbose=not args.quiet,
        )
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python
"""Convert a list of images into an LMDB database of Datum records.

The list file holds one ``<path> <label>`` line per image, with paths
relative to ROOT_FOLDER.

Usage:
    # Raw pixels, all images resized to 256x256, shuffled
    python scripts/convert_imageset.py /data/images/ train.txt /data/train_lmdb \
        --shuffle --resize-height 256 --resize-width 256

    # Keep the original compressed bytes
    python scripts/convert_imageset.py /data/images/ train.txt /data/train_lmdb --encoded
"""

import argparse
import logging
import sys

from feedline.convert import convert_imageset
from feedline.errors import ConfigurationError


def main():
    parser = argparse.ArgumentParser(description="Convert an image list to an LMDB database")
    parser.add_argument("root_folder", help="Directory the listed paths are relative to")
    parser.add_argument("list_file", help="Text file of '<path> <label>' lines")
    parser.add_argument("db_path", help="LMDB directory to create")
    parser.add_argument("--gray", action="store_true",
                        help="Store grayscale images")
    parser.add_argument("--shuffle", action="store_true",
                        help="Randomly shuffle the order of images")
    parser.add_argument("--resize-height", type=int, default=0,
                        help="Height images are resized to (0 = keep)")
    parser.add_argument("--resize-width", type=int, default=0,
                        help="Width images are resized to (0 = keep)")
    parser.add_argument("--encoded", action="store_true",
                        help="Store compressed image bytes instead of raw pixels")
    parser.add_argument("--seed", type=int, default=None,
                        help="Shuffle seed (default: FEEDLINE_SEED or random)")
    parser.add_argument("--quiet", action="store_true",
                        help="Hide the progress bar")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        count = convert_imageset(
            args.list_file,
            args.root_folder,
            args.db_path,
            shuffle=args.shuffle,
            resize_height=args.resize_height,
            resize_width=args.resize_width,
            is_color=not args.gray,
            encoded=args.encoded,
            seed=args.seed,
            verbose=not args.quiet,
        )
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(f"Wrote {count:,} records to {args.db_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""ImageDataLayer: batches from a list of image files."""

from __future__ import annotations

from pathlib import Path

import numpy as np

from feedline.config import ImageDataParameter
from feedline.cursors import IndexListCursor
from feedline.decoders import read_image
from feedline.layers.base import PrefetchingDataLayer
from feedline.prefetch import CursorSampleSource
from feedline.records import ImageRecord, read_record_list


class ImageDataLayer(PrefetchingDataLayer):
    """Read ``path label`` lines from ``param.source`` and decode each image.

    Images are resized to ``new_height x new_width`` when both are set;
    otherwise every image must share the size of the first one. With
    ``shuffle`` the list is shuffled at setup and again every epoch.
    """

    type_name = "ImageData"

    def __init__(self, param: ImageDataParameter, **kwargs) -> None:
        super().__init__(param, **kwargs)
        self.cursor: IndexListCursor[ImageRecord] | None = None

    def resolve(self, record: ImageRecord) -> Path:
        return Path(self.param.root_folder) / record.path

    def decode(self, record: ImageRecord) -> tuple[np.ndarray, int]:
        p = self.param
        image = read_image(self.resolve(record), p.new_height, p.new_width, p.is_color)
        return image, record.label

    def build_source(self) -> CursorSampleSource:
        records = read_record_list(self.param.source, ImageRecord)
        self.cursor = IndexListCursor(records, self.param.shuffle, self.shuffle_rng)
        self.rand_skip(self.cursor, self.param.rand_skip)
        return CursorSampleSource(
            self.cursor,
            self.decoder or self.decode,
            self.transformer,
            locate=lambda record: str(self.resolve(record)),
        )


__all__ = ["ImageDataLayer"]

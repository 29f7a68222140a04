"""DataLayer: batches from a key/value database of serialized Datum records."""

from __future__ import annotations

import logging
from typing import Any

from feedline.config import DataParameter
from feedline.cursors import SequentialShuffleCursor
from feedline.db import Database, LMDBDatabase
from feedline.decoders import decode_datum
from feedline.layers.base import PrefetchingDataLayer
from feedline.prefetch import CursorSampleSource

logger = logging.getLogger(__name__)


def _decode_entry(entry: tuple[bytes, bytes]):
    return decode_datum(entry[1])


def _locate_entry(entry: tuple[bytes, bytes]) -> str:
    return entry[0].decode("utf-8", errors="replace")


class DataLayer(PrefetchingDataLayer):
    """Read Datum records from an LMDB database.

    The first epoch walks the database in key order. With ``shuffle`` the
    cursor switches to a once-permuted key pool after the first wrap and
    keeps that order for the rest of the run.

    Args:
        param: DataParameter
        database: Use this already-open database instead of opening
            ``param.source``. The caller keeps ownership.
        **kwargs: See PrefetchingDataLayer.
    """

    type_name = "Data"

    def __init__(self, param: DataParameter, database: Database | None = None, **kwargs: Any) -> None:
        super().__init__(param, **kwargs)
        self._external_db = database
        self.database: Database | None = None
        self.cursor: SequentialShuffleCursor | None = None

    def build_source(self) -> CursorSampleSource:
        if self._external_db is not None:
            self.database = self._external_db
        else:
            self.database = LMDBDatabase(self.param.source)
        logger.info("Opened database %r", self.database)
        self.cursor = SequentialShuffleCursor(self.database, self.param.shuffle, self.shuffle_rng)
        self.rand_skip(self.cursor, self.param.rand_skip)
        return CursorSampleSource(
            self.cursor,
            self.decoder or _decode_entry,
            self.transformer,
            locate=_locate_entry,
        )

    def close(self) -> None:
        super().close()
        if self.cursor is not None:
            self.cursor.close()
            self.cursor = None
        if self.database is not None and self._external_db is None:
            self.database.close()
        self.database = None


__all__ = ["DataLayer"]

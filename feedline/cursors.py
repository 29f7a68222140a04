"""Source cursors: the position of a layer inside its dataset.

A cursor names "the next record to read" and moves forward one record at
a time, reporting when it wraps back to the start (end of an epoch). Two
shuffle policies exist and are kept apart:

- SequentialShuffleCursor (key/value databases): the first pass reads keys
  in stored order. At the first wrap, if shuffling is on, the full key
  space is permuted once and every later pass reuses that permutation.
- IndexListCursor (record lists): the list is shuffled at construction and
  reshuffled in place at every wrap.

Cursors are mutated only by the thread that fills batches.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Generic, TypeVar

import numpy as np

from feedline.db import Database
from feedline.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEQUENTIAL = "sequential"
SHUFFLE = "shuffle"


class SourceCursor(ABC):
    """Position within a dataset."""

    @abstractmethod
    def current(self) -> Any:
        """Return the record at the current position without moving."""

    @abstractmethod
    def advance(self) -> bool:
        """Move forward one record. Returns True if the dataset wrapped."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    def skip(self, count: int) -> int:
        """Advance ``count`` records. Returns the number of wraps."""
        wraps = 0
        for _ in range(count):
            wraps += self.advance()
        return wraps


class SequentialShuffleCursor(SourceCursor):
    """Database cursor that turns shuffled after its first epoch.

    ``current()`` returns ``(key, value)`` byte pairs.

    Args:
        database: Source database (must be non-empty)
        shuffle: Switch to a permuted key pool after the first wrap
        rng: Generator used for the one-time permutation
    """

    def __init__(
        self,
        database: Database,
        shuffle: bool = False,
        rng: np.random.Generator | None = None,
    ) -> None:
        if len(database) == 0:
            raise ConfigurationError(f"Database {database!r} is empty")
        self.database = database
        self.shuffle = shuffle
        self.rng = rng if rng is not None else np.random.default_rng()
        self._db_cursor = database.cursor()
        self._mode = SEQUENTIAL
        self._key_pool: list[bytes] = []
        self._pool_index = 0

    @property
    def mode(self) -> str:
        return self._mode

    def current(self) -> tuple[bytes, bytes]:
        if self._mode == SEQUENTIAL:
            return self._db_cursor.key(), self._db_cursor.value()
        key = self._key_pool[self._pool_index]
        return key, self.database.get(key)

    def advance(self) -> bool:
        if self._mode == SHUFFLE:
            self._pool_index += 1
            if self._pool_index >= len(self._key_pool):
                logger.debug("Restarting shuffled key pool from start.")
                self._pool_index = 0
                return True
            return False

        self._db_cursor.next()
        if self._db_cursor.valid:
            return False

        logger.debug("Restarting data prefetching from start.")
        self._db_cursor.seek_to_first()
        if self.shuffle:
            logger.info("Entering shuffling mode after first epoch")
            self._key_pool = self.database.keys()
            self.rng.shuffle(self._key_pool)
            self._pool_index = 0
            self._mode = SHUFFLE
        return True

    def __len__(self) -> int:
        return len(self.database)

    def close(self) -> None:
        self._db_cursor.close()

    def __repr__(self) -> str:
        return (
            f"SequentialShuffleCursor(size={len(self)}, shuffle={self.shuffle}, "
            f"mode='{self._mode}')"
        )


class IndexListCursor(SourceCursor, Generic[T]):
    """Index into an explicit record list, reshuffled every epoch.

    Args:
        records: Records to iterate (must be non-empty)
        shuffle: Shuffle now and again at every wrap
        rng: Generator used for every shuffle
    """

    def __init__(
        self,
        records: Sequence[T],
        shuffle: bool = False,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.records: list[T] = list(records)
        if not self.records:
            raise ConfigurationError("Record list is empty")
        self.shuffle = shuffle
        self.rng = rng if rng is not None else np.random.default_rng()
        self.index = 0
        if self.shuffle:
            self._shuffle()

    def _shuffle(self) -> None:
        self.rng.shuffle(self.records)

    def current(self) -> T:
        return self.records[self.index]

    def advance(self) -> bool:
        self.index += 1
        if self.index < len(self.records):
            return False
        logger.debug("Restarting data prefetching from start.")
        self.index = 0
        if self.shuffle:
            self._shuffle()
        return True

    def __len__(self) -> int:
        return len(self.records)

    def __repr__(self) -> str:
        return f"IndexListCursor(size={len(self)}, shuffle={self.shuffle}, index={self.index})"


__all__ = [
    "SEQUENTIAL",
    "SHUFFLE",
    "IndexListCursor",
    "SequentialShuffleCursor",
    "SourceCursor",
]

"""Key/value record stores for DataLayer.

Records are serialized Datum values (pixel buffer or encoded image bytes
plus a label) stored under ordered byte keys. Two backends share one
interface:

- LMDBDatabase: an on-disk LMDB environment (the usual training source)
- MemoryDatabase: a sorted in-process dict, handy for tests and for
  feeding small generated datasets

Usage:
    from feedline.db import Datum, LMDBDatabase

    db = LMDBDatabase("/data/train_lmdb")
    cursor = db.cursor()
    while cursor.valid:
        datum = Datum.from_bytes(cursor.value())
        cursor.next()
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

import lmdb
import numpy as np

from feedline.errors import ConfigurationError

# Default LMDB map size (1 TiB of address space, not disk)
DEFAULT_MAP_SIZE = 1 << 40


@dataclass
class Datum:
    """One serialized sample.

    Raw datums hold ``channels * height * width`` uint8 pixels in CHW
    order. Encoded datums hold the original compressed image bytes and
    leave the geometry at zero until decoded.

    Attributes:
        data: Pixel bytes (raw) or compressed file bytes (encoded)
        label: Integer class label
        channels, height, width: Geometry of raw data
        encoded: Whether ``data`` is a compressed image
    """

    data: bytes
    label: int = 0
    channels: int = 0
    height: int = 0
    width: int = 0
    encoded: bool = False

    @classmethod
    def from_array(cls, array: np.ndarray, label: int = 0) -> Datum:
        """Build a raw datum from a CHW uint8 array."""
        if array.ndim != 3:
            raise ValueError(f"Expected a CHW array, got shape {array.shape}")
        channels, height, width = array.shape
        return cls(
            data=np.ascontiguousarray(array, dtype=np.uint8).tobytes(),
            label=int(label),
            channels=channels,
            height=height,
            width=width,
        )

    def to_array(self) -> np.ndarray:
        """Return raw pixels as a CHW uint8 array."""
        if self.encoded:
            raise ValueError("Encoded datum must be decoded, see feedline.decoders.decode_datum")
        return np.frombuffer(self.data, dtype=np.uint8).reshape(
            self.channels, self.height, self.width
        )

    def to_bytes(self) -> bytes:
        header = np.array(
            [self.channels, self.height, self.width, self.label, int(self.encoded)],
            dtype=np.int64,
        )
        buf = io.BytesIO()
        np.savez(buf, header=header, data=np.frombuffer(self.data, dtype=np.uint8))
        return buf.getvalue()

    @classmethod
    def from_bytes(cls, payload: bytes) -> Datum:
        with np.load(io.BytesIO(payload), allow_pickle=False) as npz:
            channels, height, width, label, encoded = (int(v) for v in npz["header"])
            data = npz["data"].tobytes()
        return cls(
            data=data,
            label=label,
            channels=channels,
            height=height,
            width=width,
            encoded=bool(encoded),
        )


class DBCursor(ABC):
    """Forward-only cursor over a database in key order."""

    @property
    @abstractmethod
    def valid(self) -> bool:
        ...

    @abstractmethod
    def seek_to_first(self) -> None:
        ...

    @abstractmethod
    def next(self) -> None:
        ...

    @abstractmethod
    def key(self) -> bytes:
        ...

    @abstractmethod
    def value(self) -> bytes:
        ...

    def close(self) -> None:
        """Release the cursor. No-op by default."""


class Database(ABC):
    """Ordered byte-key to byte-value store."""

    @abstractmethod
    def cursor(self) -> DBCursor:
        ...

    @abstractmethod
    def keys(self) -> list[bytes]:
        ...

    @abstractmethod
    def get(self, key: bytes) -> bytes:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...

    def close(self) -> None:
        """Release resources. No-op by default."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


# =============================================================================
# LMDB backend
# =============================================================================

class LMDBCursor(DBCursor):
    def __init__(self, env: lmdb.Environment) -> None:
        self._txn = env.begin(write=False)
        self._cursor = self._txn.cursor()
        self._valid = self._cursor.first()

    @property
    def valid(self) -> bool:
        return self._valid

    def seek_to_first(self) -> None:
        self._valid = self._cursor.first()

    def next(self) -> None:
        self._valid = self._cursor.next()

    def key(self) -> bytes:
        return bytes(self._cursor.key())

    def value(self) -> bytes:
        return bytes(self._cursor.value())

    def close(self) -> None:
        self._cursor.close()
        self._txn.abort()


class LMDBDatabase(Database):
    """LMDB environment opened read-only (default) or for writing.

    Args:
        path: LMDB directory
        readonly: Open without write access. The directory must exist.
        map_size: Maximum database size when writing
    """

    def __init__(
        self,
        path: str | Path,
        readonly: bool = True,
        map_size: int = DEFAULT_MAP_SIZE,
    ) -> None:
        self.path = Path(path)
        if readonly and not self.path.exists():
            raise ConfigurationError(f"LMDB database not found: {self.path}")
        try:
            self._env = lmdb.open(
                str(self.path),
                readonly=readonly,
                lock=not readonly,
                readahead=False,
                meminit=False,
                map_size=map_size,
            )
        except lmdb.Error as e:
            raise ConfigurationError(f"Cannot open LMDB database {self.path}: {e}") from e

    def cursor(self) -> LMDBCursor:
        return LMDBCursor(self._env)

    def keys(self) -> list[bytes]:
        with self._env.begin(write=False) as txn:
            return [bytes(k) for k in txn.cursor().iternext(keys=True, values=False)]

    def get(self, key: bytes) -> bytes:
        with self._env.begin(write=False) as txn:
            value = txn.get(key)
        if value is None:
            raise KeyError(key)
        return bytes(value)

    def put_many(self, items: Iterable[tuple[bytes, bytes]]) -> int:
        """Write key/value pairs in a single transaction. Returns the count."""
        count = 0
        with self._env.begin(write=True) as txn:
            for key, value in items:
                txn.put(key, value, overwrite=True)
                count += 1
        return count

    def __len__(self) -> int:
        return int(self._env.stat()["entries"])

    def close(self) -> None:
        self._env.close()

    def __repr__(self) -> str:
        return f"LMDBDatabase(path='{self.path}')"


# =============================================================================
# In-memory backend
# =============================================================================

class MemoryCursor(DBCursor):
    def __init__(self, items: list[tuple[bytes, bytes]]) -> None:
        self._items = items
        self._pos = 0

    @property
    def valid(self) -> bool:
        return self._pos < len(self._items)

    def seek_to_first(self) -> None:
        self._pos = 0

    def next(self) -> None:
        self._pos += 1

    def key(self) -> bytes:
        return self._items[self._pos][0]

    def value(self) -> bytes:
        return self._items[self._pos][1]


class MemoryDatabase(Database):
    """Sorted in-memory store with the same interface as LMDBDatabase."""

    def __init__(self, items: Mapping[bytes, bytes] | Iterable[tuple[bytes, bytes]] = ()) -> None:
        pairs = items.items() if isinstance(items, Mapping) else items
        self._data = dict(pairs)

    def put(self, key: bytes, value: bytes) -> None:
        self._data[key] = value

    def cursor(self) -> MemoryCursor:
        return MemoryCursor(sorted(self._data.items()))

    def keys(self) -> list[bytes]:
        return sorted(self._data)

    def get(self, key: bytes) -> bytes:
        return self._data[key]

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"MemoryDatabase(entries={len(self._data)})"


__all__ = [
    "DEFAULT_MAP_SIZE",
    "DBCursor",
    "Database",
    "Datum",
    "LMDBCursor",
    "LMDBDatabase",
    "MemoryCursor",
    "MemoryDatabase",
]

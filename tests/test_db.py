"""Tests for the Datum codec and the key/value database backends."""

import numpy as np
import pytest

from feedline.db import Datum, LMDBDatabase, MemoryDatabase
from feedline.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _items(n: int) -> list[tuple[bytes, bytes]]:
    return [(f"{i:08d}".encode(), f"value-{i}".encode()) for i in range(n)]


def _walk(db) -> list[bytes]:
    cursor = db.cursor()
    keys = []
    while cursor.valid:
        keys.append(cursor.key())
        cursor.next()
    cursor.close()
    return keys


# ---------------------------------------------------------------------------
# Tests: Datum
# ---------------------------------------------------------------------------

class TestDatum:
    def test_array_round_trip(self):
        array = np.arange(2 * 3 * 4, dtype=np.uint8).reshape(2, 3, 4)
        datum = Datum.from_array(array, label=5)
        restored = Datum.from_bytes(datum.to_bytes())
        assert restored == datum
        np.testing.assert_array_equal(restored.to_array(), array)
        assert restored.label == 5

    def test_encoded_keeps_payload(self):
        datum = Datum(data=b"\xff\xd8jpeg", label=1, encoded=True)
        restored = Datum.from_bytes(datum.to_bytes())
        assert restored.encoded
        assert restored.data == b"\xff\xd8jpeg"

    def test_encoded_to_array_raises(self):
        with pytest.raises(ValueError, match="Encoded"):
            Datum(data=b"x", encoded=True).to_array()

    def test_from_array_needs_chw(self):
        with pytest.raises(ValueError):
            Datum.from_array(np.zeros((4, 4), dtype=np.uint8))


# ---------------------------------------------------------------------------
# Tests: backends
# ---------------------------------------------------------------------------

class TestMemoryDatabase:
    def test_key_order(self):
        db = MemoryDatabase(dict(reversed(_items(5))))
        assert _walk(db) == [k for k, _ in _items(5)]
        assert db.keys() == [k for k, _ in _items(5)]
        assert len(db) == 5

    def test_get_and_put(self):
        db = MemoryDatabase()
        db.put(b"k", b"v")
        assert db.get(b"k") == b"v"
        with pytest.raises(KeyError):
            db.get(b"missing")


class TestLMDBDatabase:
    def test_write_then_read(self, tmp_path):
        path = tmp_path / "db"
        with LMDBDatabase(path, readonly=False, map_size=1 << 24) as db:
            assert db.put_many(_items(4)) == 4

        with LMDBDatabase(path) as db:
            assert len(db) == 4
            assert _walk(db) == [k for k, _ in _items(4)]
            assert db.get(b"00000002") == b"value-2"
            with pytest.raises(KeyError):
                db.get(b"nope")

    def test_missing_database(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            LMDBDatabase(tmp_path / "absent")

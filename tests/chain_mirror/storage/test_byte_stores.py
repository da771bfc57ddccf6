"""Tests for the in-memory and SQLite byte stores."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from chain_mirror.storage import ByteStore, MemoryByteStore, SQLiteByteStore
from chain_mirror.types import QuotaExceededError, StorageError


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest) -> Generator[ByteStore, None, None]:
    """Each byte store implementation, unbounded."""
    backend = _bounded(request.param, None)
    yield backend
    backend.close()


def _bounded(kind: str, capacity: int | None) -> ByteStore:
    if kind == "memory":
        return MemoryByteStore(capacity)
    return SQLiteByteStore(":memory:", capacity)


class TestByteStore:
    """Behavior shared by every byte store."""

    def test_write_and_read(self, store: ByteStore) -> None:
        """A written value can be read back."""
        store.write("snapshot/blocks", b'{"a":1}')

        assert store.read("snapshot/blocks") == b'{"a":1}'

    def test_missing_key(self, store: ByteStore) -> None:
        """Reading an absent key returns None."""
        assert store.read("nothing") is None

    def test_write_overwrites(self, store: ByteStore) -> None:
        """A second write replaces the first."""
        store.write("k", b"one")
        store.write("k", b"two")

        assert store.read("k") == b"two"

    def test_delete(self, store: ByteStore) -> None:
        """Deleted keys read as absent, and deleting twice is fine."""
        store.write("k", b"v")

        store.delete("k")
        store.delete("k")

        assert store.read("k") is None

    def test_keys_by_prefix(self, store: ByteStore) -> None:
        """Keys are listed sorted and filtered by prefix."""
        store.write("snapshot/transactions", b"t")
        store.write("snapshot/blocks", b"b")
        store.write("other", b"o")

        assert store.keys("snapshot/") == ["snapshot/blocks", "snapshot/transactions"]
        assert store.keys() == ["other", "snapshot/blocks", "snapshot/transactions"]


class TestQuota:
    """Tests for capacity limits."""

    @pytest.mark.parametrize("kind", ["memory", "sqlite"])
    def test_write_past_capacity_refused(self, kind: str) -> None:
        """A write that would exceed capacity raises and stores nothing."""
        store = _bounded(kind, 10)
        store.write("a", b"12345")

        with pytest.raises(QuotaExceededError):
            store.write("b", b"123456")

        assert store.read("b") is None
        store.close()

    @pytest.mark.parametrize("kind", ["memory", "sqlite"])
    def test_overwrite_counts_replaced_value(self, kind: str) -> None:
        """Replacing a value only needs room for the difference."""
        store = _bounded(kind, 10)
        store.write("a", b"12345678")

        store.write("a", b"1234567890")

        assert store.read("a") == b"1234567890"
        store.close()

    def test_negative_capacity_rejected(self) -> None:
        """Capacity cannot be negative."""
        with pytest.raises(ValueError):
            MemoryByteStore(-1)
        with pytest.raises(ValueError):
            SQLiteByteStore(":memory:", -1)


class TestSQLiteFile:
    """Tests for file-backed SQLite stores."""

    def test_values_survive_reopen(self, tmp_path: Path) -> None:
        """Data written to a file is there after reopening it."""
        path = tmp_path / "mirror.db"
        with SQLiteByteStore(path) as store:
            store.write("snapshot/blocks", b"\x00\x01binary")

        with SQLiteByteStore(path) as reopened:
            assert reopened.read("snapshot/blocks") == b"\x00\x01binary"
            assert reopened.used_bytes == len(b"\x00\x01binary")

    def test_database_failures_raise_storage_error(self, tmp_path: Path) -> None:
        """Driver errors surface as StorageError, never as sqlite3 exceptions."""
        store = SQLiteByteStore(tmp_path / "mirror.db")
        store.close()

        with pytest.raises(StorageError):
            store.write("snapshot/blocks", b"data")
        with pytest.raises(StorageError):
            store.read("snapshot/blocks")
        with pytest.raises(StorageError):
            store.delete("snapshot/blocks")
        with pytest.raises(StorageError):
            store.keys()

    def test_quota_is_a_storage_error(self) -> None:
        """Callers handling StorageError also handle a full store."""
        assert issubclass(QuotaExceededError, StorageError)

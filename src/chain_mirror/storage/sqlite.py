"""
SQLite byte store for persisting snapshots across process restarts.

A single key/value table holds every snapshot. Values are the snapshot's
JSON bytes, stored directly in a BLOB column.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from chain_mirror.types import QuotaExceededError, StorageError

from .namespaces import KV


class SQLiteByteStore:
    """
    SQLite implementation of the ByteStore protocol.

    Capacity is enforced by the store itself, counting value bytes, so the
    same quota semantics apply to a file and to ``:memory:``.
    """

    def __init__(self, path: Path | str, capacity_bytes: int | None = None) -> None:
        """
        Initialize the store.

        Creates the database file and table if they don't exist.

        Args:
            path: Path to SQLite database file.
                  Use ":memory:" for in-memory database.
            capacity_bytes: Maximum total size of stored values, or None for
                no limit.
        """
        if capacity_bytes is not None and capacity_bytes < 0:
            raise ValueError(f"capacity_bytes must be non-negative, got {capacity_bytes}")
        self._path = Path(path) if isinstance(path, str) else path
        self.capacity_bytes = capacity_bytes

        # The event loop thread owns the connection; tests may touch it from others.
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute(KV.CREATE_TABLE)
        self._conn.commit()

    @property
    def used_bytes(self) -> int:
        """Total size of stored values."""
        with _translate_errors("measuring", "*"):
            row = self._conn.execute(f"SELECT COALESCE(SUM(length(data)), 0) FROM {KV.TABLE_NAME}")
            return int(row.fetchone()[0])

    def read(self, key: str) -> bytes | None:
        """Read the value under a key."""
        with _translate_errors("reading", key):
            cursor = self._conn.execute(f"SELECT data FROM {KV.TABLE_NAME} WHERE key = ?", (key,))
            row = cursor.fetchone()
        return bytes(row[0]) if row is not None else None

    def write(self, key: str, data: bytes) -> None:
        """Store a value, refusing writes past capacity."""
        with _translate_errors("writing", key):
            if self.capacity_bytes is not None:
                cursor = self._conn.execute(
                    f"SELECT COALESCE(SUM(length(data)), 0) FROM {KV.TABLE_NAME} WHERE key != ?",
                    (key,),
                )
                used = int(cursor.fetchone()[0])
                if used + len(data) > self.capacity_bytes:
                    raise QuotaExceededError(
                        f"Writing {len(data)} bytes to {key!r} exceeds capacity "
                        f"({used}/{self.capacity_bytes} bytes used)"
                    )

            with self._conn:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {KV.TABLE_NAME} (key, data) VALUES (?, ?)",
                    (key, sqlite3.Binary(data)),
                )

    def delete(self, key: str) -> None:
        """Remove a key if present."""
        with _translate_errors("deleting", key), self._conn:
            self._conn.execute(f"DELETE FROM {KV.TABLE_NAME} WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        """Stored keys starting with a prefix."""
        with _translate_errors("listing", prefix):
            cursor = self._conn.execute(
                f"SELECT key FROM {KV.TABLE_NAME} WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [row[0] for row in cursor.fetchall()]

    def close(self) -> None:
        """Close database connection."""
        self._conn.close()

    def __enter__(self) -> SQLiteByteStore:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()


@contextmanager
def _translate_errors(action: str, key: str) -> Iterator[None]:
    """Raise sqlite3 failures as StorageError, or QuotaExceededError when full."""
    try:
        yield
    except sqlite3.OperationalError as exc:
        # SQLITE_FULL: the disk or the page limit ran out.
        if getattr(exc, "sqlite_errorcode", None) == sqlite3.SQLITE_FULL:
            raise QuotaExceededError(f"Database full {action} {key!r}: {exc}") from exc
        raise StorageError(f"Failed {action} {key!r}: {exc}") from exc
    except sqlite3.Error as exc:
        raise StorageError(f"Failed {action} {key!r}: {exc}") from exc

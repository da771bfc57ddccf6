"""
Database namespace definitions for storage tables.

Defines table names and schema constants for SQLite storage.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class KeyValueNamespace:
    """
    Namespace for raw key/value storage.

    Snapshots are stored as opaque bytes keyed by a string.
    """

    TABLE_NAME: str = "kv"
    """Table name for key/value storage."""

    CREATE_TABLE: str = """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            data BLOB NOT NULL
        )
    """
    """SQL to create the key/value table."""


KV = KeyValueNamespace()

SNAPSHOT_PREFIX = "snapshot/"
"""Key prefix of per-stream snapshots."""


def snapshot_key(stream: str) -> str:
    """Byte store key of a stream's snapshot."""
    return f"{SNAPSHOT_PREFIX}{stream}"

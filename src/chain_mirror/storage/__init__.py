"""
Storage module for snapshot persistence.

Provides byte store abstractions and the adapter that saves and restores
stream state through them.
"""

from .database import ByteStore
from .memory import MemoryByteStore
from .namespaces import KeyValueNamespace, snapshot_key
from .snapshot import (
    SNAPSHOT_VERSION,
    SnapshotAdapter,
    StreamSnapshot,
    capture,
    decode,
    encode,
)
from .sqlite import SQLiteByteStore

__all__ = [
    "ByteStore",
    "KeyValueNamespace",
    "MemoryByteStore",
    "SNAPSHOT_VERSION",
    "SQLiteByteStore",
    "SnapshotAdapter",
    "StreamSnapshot",
    "capture",
    "decode",
    "encode",
    "snapshot_key",
]

"""Reusable type definitions for the chain mirror."""

from .base import FrozenModel
from .entity import Entity
from .exceptions import (
    ConflictError,
    CorruptSnapshotError,
    GapError,
    InconsistentEntityError,
    MirrorError,
    QuotaExceededError,
    RpcError,
    StorageError,
)
from .height_range import HeightRange, coalesce, subtract

__all__ = [
    # Core types
    "FrozenModel",
    "Entity",
    "HeightRange",
    "coalesce",
    "subtract",
    # Exceptions
    "MirrorError",
    "RpcError",
    "GapError",
    "ConflictError",
    "InconsistentEntityError",
    "StorageError",
    "QuotaExceededError",
    "CorruptSnapshotError",
]

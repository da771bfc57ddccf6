"""
Abstract byte store interface for snapshot persistence.

Defines the Protocol that all byte store implementations must follow.
Uses structural subtyping for flexibility.
"""

from __future__ import annotations

from typing import Protocol


class ByteStore(Protocol):
    """
    Protocol for a capacity-bounded key/value store of raw bytes.

    The mirror only ever stores opaque snapshot bytes under string keys. It
    never relies on the store for consistency across keys.

    Capacity
    --------
    Implementations may refuse writes that would exceed their capacity by
    raising QuotaExceededError. The previous value of the key must survive a
    refused write.
    """

    def read(self, key: str) -> bytes | None:
        """
        Read the value stored under a key.

        Returns:
            The stored bytes, or None if the key is absent.
        """
        ...

    def write(self, key: str, data: bytes) -> None:
        """
        Store bytes under a key, replacing any previous value.

        Raises:
            QuotaExceededError: If the write would exceed the store's capacity.
        """
        ...

    def delete(self, key: str) -> None:
        """Remove a key. Absent keys are ignored."""
        ...

    def keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with a prefix, sorted."""
        ...

    def close(self) -> None:
        """Release any resources held by the store."""
        ...

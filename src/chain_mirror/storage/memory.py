"""In-memory byte store, the analogue of a browser's session storage."""

from __future__ import annotations

from chain_mirror.types import QuotaExceededError


class MemoryByteStore:
    """
    Byte store backed by a dict.

    Contents live as long as the process. Capacity counts value bytes only.
    """

    def __init__(self, capacity_bytes: int | None = None) -> None:
        """
        Initialize the store.

        Args:
            capacity_bytes: Maximum total size of stored values, or None for
                no limit.
        """
        if capacity_bytes is not None and capacity_bytes < 0:
            raise ValueError(f"capacity_bytes must be non-negative, got {capacity_bytes}")
        self.capacity_bytes = capacity_bytes
        self._data: dict[str, bytes] = {}

    @property
    def used_bytes(self) -> int:
        """Total size of stored values."""
        return sum(len(value) for value in self._data.values())

    def read(self, key: str) -> bytes | None:
        """Read the value under a key."""
        return self._data.get(key)

    def write(self, key: str, data: bytes) -> None:
        """Store a value, refusing writes past capacity."""
        if self.capacity_bytes is not None:
            used = self.used_bytes - len(self._data.get(key, b""))
            if used + len(data) > self.capacity_bytes:
                raise QuotaExceededError(
                    f"Writing {len(data)} bytes to {key!r} exceeds capacity "
                    f"({used}/{self.capacity_bytes} bytes used)"
                )
        self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        """Remove a key if present."""
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        """Stored keys starting with a prefix."""
        return sorted(key for key in self._data if key.startswith(prefix))

    def close(self) -> None:
        """Nothing to release."""

"""Exception hierarchy for the chain mirror."""

from __future__ import annotations


class MirrorError(Exception):
    """
    Base exception for all chain mirror errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class RpcError(MirrorError):
    """
    Transport-level failure talking to the remote data source.

    Always transient from the engine's point of view: the affected range stays
    unfetched and the next reconciliation pass retries it.
    """


class GapError(MirrorError):
    """
    Raised when a watermark extension would cross uncovered heights.

    This is an internal invariant violation: the caller proposed an extension
    that the cache contents do not support.

    Attributes:
        stream: The stream whose watermark was being extended.
        expected: The first height that must be covered.
        requested: The last height the extension would trust.
    """

    def __init__(self, stream: str, expected: int, requested: int) -> None:
        self.stream = stream
        self.expected = expected
        self.requested = requested
        super().__init__(
            f"Cannot extend {stream!r} to {requested}: heights from {expected} are not covered"
        )


class ConflictError(MirrorError):
    """
    The remote source reported two different payloads for the same height.

    The offending batch is discarded and the range is retried later; cached
    data is never overwritten.

    Attributes:
        stream: The stream the conflict was detected in.
        height: The height with divergent payloads.
    """

    def __init__(self, stream: str, height: int, detail: str = "") -> None:
        self.stream = stream
        self.height = height
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Conflicting payloads for {stream!r} at height {height}{suffix}")


class InconsistentEntityError(ConflictError):
    """Raised by the cache store when a height is re-inserted with a different payload."""


class StorageError(MirrorError):
    """
    The byte store failed to read, write or delete.

    Persistence is best effort: the engine logs the failure, counts it and
    keeps serving from memory.
    """


class QuotaExceededError(StorageError):
    """The byte store has no room left for a write."""


class CorruptSnapshotError(MirrorError):
    """
    A persisted snapshot failed validation on restore.

    Attributes:
        stream: The stream the snapshot belonged to.
    """

    def __init__(self, stream: str, detail: str) -> None:
        self.stream = stream
        super().__init__(f"Corrupt snapshot for {stream!r}: {detail}")

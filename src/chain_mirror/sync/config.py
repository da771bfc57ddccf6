"""
Sync engine configuration.

Operational parameters for synchronization: batch sizes, timeouts, cadence,
backoff and retention limits.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Final

MAX_BATCH_SIZE: Final[int] = 10
"""Maximum heights requested from the remote source in a single call."""

MAX_CONCURRENT_REQUESTS: Final[int] = 2
"""Maximum range requests in flight at once across all streams."""

MAX_REQUESTS_PER_PASS: Final[int] = 16
"""Maximum chunks one reconciliation pass issues for a single stream."""

REQUEST_TIMEOUT: Final[float] = 10.0
"""Timeout for an individual remote call in seconds."""

POLL_INTERVAL: Final[float] = 3.0
"""Seconds between successful poll cycles."""

BACKOFF_INITIAL: Final[float] = 1.0
"""Delay after the first failed poll cycle in seconds."""

BACKOFF_MULTIPLIER: Final[float] = 2.0
"""Growth factor of the delay per consecutive failure."""

BACKOFF_MAX: Final[float] = 60.0
"""Upper bound on the backoff delay in seconds."""

RETENTION_LIMIT: Final[int] = 2000
"""Maximum entries kept per stream before the oldest are evicted."""

INITIAL_SYNC_DEPTH: Final[int] = 10
"""How many heights below the head an empty stream starts from."""

GENESIS_HEIGHT: Final[int] = 0
"""Lowest height the remote sequence can contain."""

SHUTDOWN_GRACE: Final[float] = 5.0
"""Seconds a stopping service waits for an in-progress cycle before cancelling it."""


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """
    Tunables for one mirror instance.

    Defaults come from the module constants. Validation happens at
    construction so a bad value fails at startup, not mid-sync.
    """

    max_batch_size: int = MAX_BATCH_SIZE
    """Maximum heights per remote range request."""

    max_concurrent_requests: int = MAX_CONCURRENT_REQUESTS
    """Maximum remote range requests in flight."""

    max_requests_per_pass: int = MAX_REQUESTS_PER_PASS
    """Maximum chunks per stream per reconciliation pass."""

    request_timeout: float = REQUEST_TIMEOUT
    """Timeout for each remote call in seconds."""

    poll_interval: float = POLL_INTERVAL
    """Seconds between successful poll cycles."""

    backoff_initial: float = BACKOFF_INITIAL
    """Delay after the first failure."""

    backoff_multiplier: float = BACKOFF_MULTIPLIER
    """Delay growth factor per consecutive failure."""

    backoff_max: float = BACKOFF_MAX
    """Backoff ceiling."""

    retention_limit: int = RETENTION_LIMIT
    """Default per-stream entry limit."""

    stream_retention: Mapping[str, int] = field(default_factory=dict)
    """Per-stream overrides of the retention limit."""

    initial_sync_depth: int = INITIAL_SYNC_DEPTH
    """Heights below the head an empty stream starts from."""

    genesis_height: int = GENESIS_HEIGHT
    """Lowest height an empty stream may be anchored at."""

    shutdown_grace: float = SHUTDOWN_GRACE
    """Seconds to wait for an in-progress cycle on stop."""

    def __post_init__(self) -> None:
        """Validate ranges of every tunable."""
        for name in (
            "max_batch_size",
            "max_concurrent_requests",
            "max_requests_per_pass",
            "retention_limit",
            "initial_sync_depth",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        for name in ("request_timeout", "poll_interval", "backoff_initial", "backoff_max"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.backoff_multiplier <= 1:
            raise ValueError(f"backoff_multiplier must exceed 1, got {self.backoff_multiplier}")
        if self.backoff_max < self.backoff_initial:
            raise ValueError("backoff_max must not be below backoff_initial")
        if self.genesis_height < 0:
            raise ValueError(f"genesis_height must be non-negative, got {self.genesis_height}")
        if self.shutdown_grace < 0:
            raise ValueError(f"shutdown_grace must be non-negative, got {self.shutdown_grace}")
        for stream, limit in self.stream_retention.items():
            if limit < 1:
                raise ValueError(f"Retention for {stream!r} must be at least 1, got {limit}")

    def retention_for(self, stream: str) -> int:
        """Entry limit for a stream, honoring per-stream overrides."""
        return self.stream_retention.get(stream, self.retention_limit)

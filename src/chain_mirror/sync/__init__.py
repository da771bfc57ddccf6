"""
Incremental range synchronization for the chain mirror.

What Is Synced?
---------------
A remote ledger exposes an append-only sequence of blocks keyed by height.
The mirror keeps a bounded window of that sequence in memory, per stream,
and keeps it current as the remote head moves.

The Challenge
-------------
1. **No re-fetching**: Heights already cached are never requested again
2. **No gaps or duplicates**: Readers only see contiguous, deduplicated data
3. **Unreliable remote**: Failed requests are retried without losing progress
4. **Bounded memory**: The oldest entries are evicted past a retention limit

How It Works
------------
- The poll scheduler asks the remote for its head on a timer
- The fetch orchestrator plans the missing ranges and requests them in chunks
- The merge engine integrates each chunk and moves the watermarks
- The cache store holds entities and the ranges known to be fully fetched

The consumer-facing service lives in ``chain_mirror.sync.service``.
"""

from __future__ import annotations

__all__ = [
    # Cache store
    "CacheStore",
    "CachedEntry",
    "RangeView",
    # Range tracking
    "RangeTracker",
    "TrackedRange",
    # Merge engine
    "MergeEngine",
    "MergeResult",
    # Fetch orchestration
    "ChunkOutcome",
    "FetchOrchestrator",
    "ReconcileResult",
    # Scheduling
    "CycleReport",
    "PollScheduler",
    "PollState",
    "backoff_delay",
    # Configuration
    "SyncConfig",
    "MAX_BATCH_SIZE",
    "MAX_CONCURRENT_REQUESTS",
    "POLL_INTERVAL",
    "REQUEST_TIMEOUT",
    "RETENTION_LIMIT",
]

from .cache_store import CachedEntry, CacheStore, RangeView
from .config import (
    MAX_BATCH_SIZE,
    MAX_CONCURRENT_REQUESTS,
    POLL_INTERVAL,
    REQUEST_TIMEOUT,
    RETENTION_LIMIT,
    SyncConfig,
)
from .merge import MergeEngine, MergeResult
from .orchestrator import ChunkOutcome, FetchOrchestrator, ReconcileResult
from .range_tracker import RangeTracker, TrackedRange
from .scheduler import CycleReport, PollScheduler, backoff_delay
from .states import PollState

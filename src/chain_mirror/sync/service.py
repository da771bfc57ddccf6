"""
Mirror service: the consumer-facing entry point.

This wires the sync components together and exposes what consumers need:

- **query**: Read cached entities with a coverage flag
- **find_block** / **find_transaction**: Look up trusted data by hash
- **clear**: Drop one stream or all of them
- **stats**: Per-stream counters for management surfaces

Lifecycle
---------
1. ``start()`` restores persisted snapshots and launches the poll loop
2. The loop reconciles every stream on a timer; streams that merged data are persisted
3. ``stop()`` requests a cooperative stop, waits a grace period, then cancels
4. A final snapshot of every stream is saved

A stopped service can be started again and resumes from its watermarks.

Reads Never Fail on Sync Problems
---------------------------------
Fetch and merge failures are absorbed by the engine and retried. A query for
data that is not there yet simply reports the missing heights as gaps.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from chain_mirror.rpc.source import (
    BLOCKS,
    DEFAULT_STREAMS,
    TRANSACTIONS,
    RemoteDataSource,
    block_hash,
    transaction_by_hash,
)
from chain_mirror.storage import ByteStore, SnapshotAdapter
from chain_mirror.types import Entity, FrozenModel, HeightRange, subtract

from .cache_store import CacheStore
from .config import SyncConfig
from .merge import MergeEngine
from .orchestrator import FetchOrchestrator
from .range_tracker import RangeTracker
from .scheduler import CycleReport, PollScheduler

logger = logging.getLogger(__name__)

HeightQuery = int | tuple[int, int] | HeightRange
"""A single height, an inclusive ``(lo, hi)`` pair, or a range."""


@dataclass(slots=True)
class QueryResult:
    """Entities found for a query, and which requested heights are not available."""

    stream: str
    """Queried stream."""

    requested: HeightRange
    """Requested heights."""

    entities: list[Entity]
    """Trusted entities in the requested range, ascending by height."""

    gaps: list[HeightRange]
    """Requested heights outside the trusted range."""

    @property
    def is_covered(self) -> bool:
        """Check if every requested height is trusted."""
        return not self.gaps


class StreamStats(FrozenModel):
    """Counters describing one stream."""

    entry_count: int
    """Cached entries."""

    low_watermark: int | None
    """Lowest trusted height."""

    high_watermark: int | None
    """Highest trusted height."""

    observed_head: int | None
    """Highest height the remote has reported."""

    approx_byte_size: int
    """Approximate cached payload bytes."""

    gap_pending: bool
    """Whether fetched data above the high watermark waits on a gap."""


@dataclass(slots=True)
class MirrorService:
    """
    Keeps a local mirror of remote streams and serves reads from it.

    Usable as an async context manager that starts and stops the poll loop.
    """

    source: RemoteDataSource
    """Remote source to mirror."""

    streams: Sequence[str] = DEFAULT_STREAMS
    """Streams to mirror."""

    config: SyncConfig = field(default_factory=SyncConfig)
    """Sync tunables."""

    store: ByteStore | None = None
    """Byte store for snapshots. None disables persistence."""

    cache: CacheStore = field(init=False)
    tracker: RangeTracker = field(init=False)
    engine: MergeEngine = field(init=False)
    orchestrator: FetchOrchestrator = field(init=False)
    scheduler: PollScheduler = field(init=False)
    persistence: SnapshotAdapter | None = field(init=False)

    _task: asyncio.Task[None] | None = field(default=None, repr=False)
    """The running poll loop."""

    def __post_init__(self) -> None:
        """Initialize sync components."""
        if not self.streams:
            raise ValueError("At least one stream is required")
        self.streams = tuple(self.streams)
        self._init_components()

    def _init_components(self) -> None:
        """
        Initialize the sync engine.

        Components are built leaf first: the cache, then the tracker over it,
        then the single writer, then the drivers.
        """
        self.cache = CacheStore()
        self.tracker = RangeTracker(self.cache)
        self.engine = MergeEngine(self.cache, self.tracker, self.config)
        self.orchestrator = FetchOrchestrator(self.source, self.engine, self.config)
        self.scheduler = PollScheduler(
            self.source,
            self.orchestrator,
            self.streams,
            self.config,
            on_cycle=self._after_cycle,
        )
        self.persistence = (
            SnapshotAdapter(self.store, self.engine) if self.store is not None else None
        )

    # -------------------------------------------------------------------------
    # Consumer API
    # -------------------------------------------------------------------------

    def query(self, stream: str, target: HeightQuery) -> QueryResult:
        """
        Read trusted entities.

        Only heights inside the tracked range are served. Data fetched out of
        order above it is held back until the gap below it closes.

        Args:
            stream: Stream to read.
            target: A height, an inclusive ``(lo, hi)`` pair, or a HeightRange.

        Returns:
            Entities in the range and the heights that are not yet available.

        Raises:
            ValueError: If the stream is not mirrored or the range is invalid.
        """
        self._check_stream(stream)
        requested = _as_range(target)

        tracked = self.tracker.snapshot(stream)
        if tracked.low is None or tracked.high is None:
            return QueryResult(stream, requested, entities=[], gaps=[requested])

        trusted = HeightRange(tracked.low, tracked.high)
        overlap = requested.intersect(trusted)
        entities = self.cache.entities(stream, overlap.lo, overlap.hi) if overlap else []
        return QueryResult(stream, requested, entities, gaps=subtract(requested, [trusted]))

    def latest(self, stream: str, count: int) -> list[Entity]:
        """The newest trusted entities of a stream, newest first."""
        self._check_stream(stream)
        if count < 1:
            return []
        return self._trusted_newest_first(stream)[:count]

    def find_block(self, hash_value: str) -> Entity | None:
        """
        Find a trusted block by its hash.

        Returns:
            The block entity, or None if no trusted block has that hash.
            Callers fall back to the remote node.
        """
        for entity in self._trusted_newest_first(BLOCKS):
            if block_hash(entity.payload) == hash_value:
                return entity
        return None

    def find_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        """
        Find a trusted transaction by its hash, searching the newest blocks first.

        Returns:
            The transaction, or None if no trusted block includes it.
            Callers fall back to the remote node.
        """
        for entity in self._trusted_newest_first(TRANSACTIONS):
            tx = transaction_by_hash(entity.payload, tx_hash)
            if tx is not None:
                return tx
        return None

    async def clear(self, stream: str | None = None) -> None:
        """
        Drop cached data, watermarks and snapshots.

        Fetches in flight for a cleared stream are discarded when they land.

        Args:
            stream: Stream to clear, or None for every stream.
        """
        targets = self.streams if stream is None else (stream,)
        for name in targets:
            self._check_stream(name)
            await self.engine.clear(name)
            self.engine.publish_metrics(name)
            if self.persistence is not None:
                self.persistence.discard(name)

    def stats(self) -> dict[str, StreamStats]:
        """Counters for every mirrored stream."""
        result: dict[str, StreamStats] = {}
        for stream in self.streams:
            tracked = self.tracker.snapshot(stream)
            result[stream] = StreamStats(
                entry_count=self.cache.entry_count(stream),
                low_watermark=tracked.low,
                high_watermark=tracked.high,
                observed_head=tracked.head,
                approx_byte_size=self.cache.byte_size(stream),
                gap_pending=self.engine.is_gap_pending(stream),
            )
        return result

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Check if the poll loop is running."""
        return self._task is not None and not self._task.done()

    async def restore(self) -> None:
        """Load every stream's snapshot, if persistence is enabled."""
        if self.persistence is None:
            return
        for stream in self.streams:
            await self.persistence.restore(stream)

    async def start(self) -> None:
        """Restore snapshots and launch the poll loop. No-op if already running."""
        if self.is_running:
            return
        await self.restore()
        self.scheduler.reset()
        self._task = asyncio.create_task(self.scheduler.run(), name="chain-mirror-poll")
        logger.info("Mirror started for %s", ", ".join(self.streams))

    async def stop(self) -> None:
        """
        Stop the poll loop and save a final snapshot.

        The running cycle gets ``shutdown_grace`` seconds to finish before it
        is cancelled. Merges already applied are kept.
        """
        task = self._task
        if task is None:
            return
        self.scheduler.stop()
        done, _ = await asyncio.wait({task}, timeout=self.config.shutdown_grace)
        if not done:
            logger.info("Poll cycle still running after grace period, cancelling")
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._task = None

        if self.persistence is not None:
            await self.persistence.save_all(self.streams)
        logger.info("Mirror stopped")

    async def sync_once(self) -> CycleReport:
        """
        Run a single poll cycle and persist its results.

        Raises:
            RuntimeError: If the poll loop is running.
        """
        if self.is_running:
            raise RuntimeError("Cannot run a manual cycle while the poll loop is running")
        return await self.scheduler.poll_once()

    async def __aenter__(self) -> MirrorService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _after_cycle(self, report: CycleReport) -> None:
        """Persist streams that merged data this cycle."""
        if self.persistence is not None and report.merged_streams:
            await self.persistence.save_all(report.merged_streams)

    def _trusted_newest_first(self, stream: str) -> list[Entity]:
        if stream not in self.streams:
            return []
        tracked = self.tracker.snapshot(stream)
        if tracked.low is None or tracked.high is None:
            return []
        return self.cache.entities(stream, tracked.low, tracked.high)[::-1]

    def _check_stream(self, stream: str) -> None:
        if stream not in self.streams:
            raise ValueError(f"Unknown stream {stream!r}, mirroring {list(self.streams)}")


def _as_range(target: HeightQuery) -> HeightRange:
    """Normalize a query target to a HeightRange."""
    if isinstance(target, HeightRange):
        return target
    if isinstance(target, int):
        return HeightRange(target, target)
    lo, hi = target
    return HeightRange(lo, hi)

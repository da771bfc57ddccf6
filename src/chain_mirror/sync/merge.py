"""
Merge engine: integrate fetched batches into the cache.

A fetch returns the entities the remote source reported for a requested
range. Turning that into cached, trusted state takes several steps that must
look atomic to readers.

How It Works
------------
1. **Filter**: Drop entities outside the requested range or below the floor
2. **Deduplicate**: Collapse repeated heights; differing payloads are a conflict
3. **Validate**: Check every entity against the cache before touching it
4. **Insert**: Put entities and mark the requested range as covered
5. **Backfill**: Lower a provisional low watermark over the covered run below it
6. **Advance**: Extend the high watermark over the covered run above it
7. **Evict**: Trim the oldest entries past the retention limit

Atomicity
---------
Merges for one stream are serialized by a per-stream lock. Steps 1 through 7
contain no await, so under asyncio no reader can run between them: readers
see the state before the merge or after it, never in between.

Out-of-Order Batches
--------------------
A batch above the high watermark is stored and its range marked covered, but
the watermark stays put. The stream is "gap pending" until the missing range
arrives. When it does, step 6 extends the watermark over both at once.

A stream nobody anchored takes its first batch as a provisional start. A
later batch below it is kept, and once the heights between them are covered
step 5 moves the low watermark down, so arrival order does not change the
outcome. Anchoring, eviction and restore fix a floor that backfill never
crosses, so evicted heights are not resurrected.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from chain_mirror import metrics
from chain_mirror.types import (
    ConflictError,
    Entity,
    HeightRange,
    InconsistentEntityError,
)

from .cache_store import CacheStore
from .config import SyncConfig
from .range_tracker import RangeTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeResult:
    """Outcome of merging one batch."""

    stream: str
    """Stream the batch was merged into."""

    requested: HeightRange
    """Range the batch was fetched for."""

    inserted: int = 0
    """Entities newly added to the cache."""

    duplicates: int = 0
    """Entities already cached or repeated within the batch."""

    dropped: int = 0
    """Entities ignored for lying outside the range or below the floor."""

    evicted: int = 0
    """Entries evicted after the merge."""

    high_watermark: int | None = None
    """High watermark after the merge."""

    gap_pending: bool = False
    """Whether covered data above the high watermark is waiting on a gap."""

    discarded: bool = False
    """Whether the batch was ignored because the stream was cleared during the fetch."""


@dataclass(slots=True)
class MergeEngine:
    """
    Single writer of the cache store and range tracker.

    Every mutation of stream state goes through this engine so that one lock
    per stream is enough to serialize them.
    """

    cache: CacheStore
    """Cache holding entities and covered spans."""

    tracker: RangeTracker
    """Watermarks over the cache."""

    config: SyncConfig = field(default_factory=SyncConfig)
    """Retention limits."""

    _locks: dict[str, asyncio.Lock] = field(default_factory=dict)
    """Mutation lock per stream."""

    _generations: dict[str, int] = field(default_factory=dict)
    """Clear counter per stream."""

    def lock(self, stream: str) -> asyncio.Lock:
        """Get the mutation lock of a stream."""
        lock = self._locks.get(stream)
        if lock is None:
            lock = self._locks[stream] = asyncio.Lock()
        return lock

    def generation(self, stream: str) -> int:
        """
        Current generation of a stream.

        Fetchers capture this before issuing a request and pass it back with
        the batch. A mismatch means the stream was cleared in between.
        """
        return self._generations.get(stream, 0)

    async def merge(
        self,
        stream: str,
        requested: HeightRange,
        entities: Sequence[Entity],
        generation: int | None = None,
    ) -> MergeResult:
        """
        Merge a fetched batch.

        Args:
            stream: Stream the batch belongs to.
            requested: Range the batch was fetched for. The whole range counts
                as fetched: heights without an entity were skipped by the remote.
            entities: Entities returned for the range, in any order.
            generation: Generation captured before the fetch, if any.

        Returns:
            Summary of what changed.

        Raises:
            ConflictError: If the batch carries two payloads for one height, or
                a payload differing from the cached one. The cache is unchanged.
        """
        result = MergeResult(stream=stream, requested=requested)

        async with self.lock(stream):
            if generation is not None and generation != self.generation(stream):
                logger.debug("Discarding stale batch %s for %s", requested, stream)
                result.discarded = True
                return result

            floor = self.tracker.floor(stream)
            low = requested.lo if floor is None else max(floor, requested.lo)

            if requested.hi < low:
                result.dropped = len(entities)
                return result

            try:
                batch = self._prepare(stream, requested, low, entities, result)
            except ConflictError:
                metrics.merge_conflicts.labels(stream=stream).inc()
                raise

            self.tracker.anchor(stream, low, fixed=False)
            for height, entity in batch.items():
                if self.cache.put(stream, height, entity.payload):
                    result.inserted += 1
                else:
                    result.duplicates += 1

            self.cache.mark_covered(stream, HeightRange(low, requested.hi))
            self._backfill(stream)
            self._advance(stream)
            self.tracker.observe_head(stream, requested.hi)
            result.evicted = self._evict(stream)

            tracked = self.tracker.snapshot(stream)
            result.high_watermark = tracked.high
            result.gap_pending = self.is_gap_pending(stream)
            self.publish_metrics(stream)

        metrics.entities_merged.labels(stream=stream).inc(result.inserted)
        logger.debug(
            "Merged %s into %s: %d new, %d duplicate, high=%s",
            requested,
            stream,
            result.inserted,
            result.duplicates,
            result.high_watermark,
        )
        return result

    def _prepare(
        self,
        stream: str,
        requested: HeightRange,
        low: int,
        entities: Sequence[Entity],
        result: MergeResult,
    ) -> dict[int, Entity]:
        """Filter, deduplicate and validate a batch without mutating anything."""
        batch: dict[int, Entity] = {}
        for entity in entities:
            if entity.height not in requested:
                logger.warning(
                    "Remote returned height %d outside requested %s for %s",
                    entity.height,
                    requested,
                    stream,
                )
                result.dropped += 1
                continue
            if entity.height < low:
                result.dropped += 1
                continue

            seen = batch.get(entity.height)
            if seen is not None:
                if seen.payload != entity.payload:
                    raise ConflictError(stream, entity.height, "batch holds two payloads")
                result.duplicates += 1
                continue
            batch[entity.height] = entity

        for height, entity in batch.items():
            if self.cache.has(stream, height) and self.cache.get(stream, height) != entity.payload:
                raise InconsistentEntityError(stream, height, "payload differs from cached entry")
        return dict(sorted(batch.items()))

    def _backfill(self, stream: str) -> None:
        """Lower a provisional low watermark over the covered run just below it."""
        low = self.tracker.snapshot(stream).low
        if low is None:
            return
        start = self.cache.covered_down_to(stream, low - 1)
        if start is None:
            return
        floor = self.tracker.floor(stream)
        self.tracker.backfill_low_watermark(stream, start if floor is None else max(floor, start))

    def _advance(self, stream: str) -> None:
        """Extend the high watermark over the covered run above it."""
        start = self.tracker.snapshot(stream).next_height
        if start is None:
            return
        covered = self.cache.covered_through(stream, start)
        if covered is not None:
            self.tracker.extend_high_watermark(stream, covered)

    def _evict(self, stream: str) -> int:
        """Honor the retention limit. Returns the number of evicted entries."""
        retention = self.config.retention_for(stream)
        count = self.cache.evicted_count(stream, retention)
        if count == 0:
            return 0
        floor = self.cache.evict_oldest(stream, retention)
        if floor is not None:
            self.tracker.advance_low_watermark(stream, floor)
        metrics.evictions.labels(stream=stream).inc(count)
        logger.debug("Evicted %d entries from %s, low=%s", count, stream, floor)
        return count

    def publish_metrics(self, stream: str) -> None:
        """Push the current state of a stream to the gauges."""
        tracked = self.tracker.snapshot(stream)
        metrics.record_stream(
            stream,
            low=tracked.low,
            high=tracked.high,
            head=tracked.head,
            entries=self.cache.entry_count(stream),
            size=self.cache.byte_size(stream),
        )

    def is_gap_pending(self, stream: str) -> bool:
        """Check if covered data exists above the first untrusted height."""
        start = self.tracker.snapshot(stream).next_height
        if start is None:
            return False
        return any(span.hi >= start for span in self.cache.spans(stream))

    def observe_head(self, stream: str, height: int) -> bool:
        """Record a remote head report for a stream."""
        moved = self.tracker.observe_head(stream, height)
        if moved:
            metrics.stream_observed_head.labels(stream=stream).set(float(height))
        return moved

    def anchor(self, stream: str, height: int) -> bool:
        """Set the starting height of an unanchored stream."""
        return self.tracker.anchor(stream, height)

    async def clear(self, stream: str) -> None:
        """
        Drop all state of a stream.

        In-flight fetches captured the old generation, so their batches are
        discarded when they arrive.
        """
        async with self.lock(stream):
            self._generations[stream] = self.generation(stream) + 1
            self.cache.clear(stream)
            self.tracker.reset(stream)
        logger.info("Cleared stream %s", stream)

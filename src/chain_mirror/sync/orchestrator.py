"""
Fetch orchestrator: decide what to request and drive merges.

Given a stream's tracked range and the observed head, the orchestrator works
out the missing heights and requests them in bounded chunks.

Planning
--------
The missing range is ``[high + 1, head]`` (or ``[low, head]`` for an empty
stream). From it the orchestrator removes:

- Spans already covered in the cache (out-of-order data waiting on a gap)
- Ranges currently in flight (another pass is already fetching them)

What is left is split into chunks of at most ``max_batch_size`` heights.
Only the lowest ``max_requests_per_pass`` chunks are issued per pass, so a
stream far behind catches up over several passes with bounded work each.

Failure Model
-------------
A failed chunk is not retried within the pass. Its heights stay uncovered,
so the next pass plans them again. There is no partial credit: a chunk is
merged in full or not at all.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from chain_mirror import metrics
from chain_mirror.rpc.source import RemoteDataSource
from chain_mirror.types import (
    ConflictError,
    Entity,
    GapError,
    HeightRange,
    RpcError,
    subtract,
)

from .config import SyncConfig
from .merge import MergeEngine

logger = logging.getLogger(__name__)


class ChunkOutcome(Enum):
    """What happened to one requested chunk."""

    MERGED = "merged"
    """Fetched and merged."""

    RPC_FAILED = "rpc_failed"
    """The remote call failed or timed out."""

    CONFLICT = "conflict"
    """The batch contradicted itself or the cache and was discarded."""

    GAP = "gap"
    """The merge hit an internal watermark inconsistency."""

    DISCARDED = "discarded"
    """The stream was cleared while the chunk was in flight."""


@dataclass(slots=True)
class ReconcileResult:
    """Summary of one reconciliation pass over one stream."""

    stream: str
    """Reconciled stream."""

    requested: list[HeightRange] = field(default_factory=list)
    """Chunks issued this pass."""

    merged: list[HeightRange] = field(default_factory=list)
    """Chunks fetched and merged."""

    failed: list[HeightRange] = field(default_factory=list)
    """Chunks left for the next pass."""

    @property
    def has_failures(self) -> bool:
        """Check if any chunk failed."""
        return bool(self.failed)

    @property
    def is_noop(self) -> bool:
        """Check if there was nothing to fetch."""
        return not self.requested


@dataclass(slots=True)
class FetchOrchestrator:
    """
    Plans range requests and feeds their results to the merge engine.

    Fetches happen outside the per-stream lock so readers never wait on the
    network. The in-flight set keeps two passes from requesting the same range.
    """

    source: RemoteDataSource
    """Remote source to fetch from."""

    engine: MergeEngine
    """Engine that integrates fetched batches."""

    config: SyncConfig = field(default_factory=SyncConfig)
    """Batch, concurrency and timeout limits."""

    _in_flight: dict[str, set[HeightRange]] = field(default_factory=dict)
    """Chunks currently being fetched, per stream."""

    _semaphore: asyncio.Semaphore | None = None
    """Global bound on concurrent remote calls. Created on first use."""

    def in_flight(self, stream: str) -> list[HeightRange]:
        """Chunks of a stream currently being fetched."""
        return sorted(self._in_flight.get(stream, ()))

    def plan(self, stream: str) -> list[HeightRange]:
        """
        Compute the chunks the next pass would request for a stream.

        An empty stream with a known head is anchored first, a few heights
        below the head, so startup loads recent data instead of all history.

        Returns:
            Chunks in ascending order, at most ``max_requests_per_pass``.
        """
        tracked = self.engine.tracker.snapshot(stream)
        if tracked.head is None:
            return []
        if not tracked.is_anchored:
            start = max(
                self.config.genesis_height,
                tracked.head - self.config.initial_sync_depth + 1,
            )
            self.engine.anchor(stream, start)
            tracked = self.engine.tracker.snapshot(stream)

        start = tracked.next_height
        if start is None or start > tracked.head:
            return []

        missing = HeightRange(start, tracked.head)
        holes = [*self.engine.cache.spans(stream), *self._in_flight.get(stream, ())]
        chunks: list[HeightRange] = []
        for piece in subtract(missing, holes):
            chunks.extend(piece.split(self.config.max_batch_size))
            if len(chunks) >= self.config.max_requests_per_pass:
                break
        return chunks[: self.config.max_requests_per_pass]

    async def reconcile(self, stream: str) -> ReconcileResult:
        """
        Run one pass for a stream.

        Idempotent: with no new head and a fully covered range, nothing is
        requested.
        """
        result = ReconcileResult(stream=stream)
        generation = self.engine.generation(stream)
        chunks = self.plan(stream)
        if not chunks:
            return result

        result.requested = chunks
        pending = self._in_flight.setdefault(stream, set())
        pending.update(chunks)
        logger.debug("Reconciling %s: %d chunks from %s", stream, len(chunks), chunks[0])

        outcomes: dict[HeightRange, ChunkOutcome] = {}
        try:
            async with asyncio.TaskGroup() as tg:
                for chunk in chunks:
                    tg.create_task(self._fetch_chunk(stream, chunk, generation, outcomes))
        finally:
            pending.difference_update(chunks)

        for chunk in chunks:
            if outcomes.get(chunk) is ChunkOutcome.MERGED:
                result.merged.append(chunk)
            elif outcomes.get(chunk) is not ChunkOutcome.DISCARDED:
                result.failed.append(chunk)
        return result

    async def reconcile_all(self, streams: Iterable[str]) -> dict[str, ReconcileResult]:
        """Reconcile several streams concurrently."""
        names = list(streams)
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self.reconcile(stream)) for stream in names]
        return {stream: task.result() for stream, task in zip(names, tasks, strict=True)}

    async def _fetch_chunk(
        self,
        stream: str,
        chunk: HeightRange,
        generation: int,
        outcomes: dict[HeightRange, ChunkOutcome],
    ) -> None:
        """Fetch and merge one chunk, recording the outcome instead of raising."""
        started = time.perf_counter()
        try:
            async with self._limiter():
                entities = await asyncio.wait_for(
                    self.source.get_range(stream, chunk.lo, chunk.hi),
                    timeout=self.config.request_timeout,
                )
        except TimeoutError:
            logger.warning("Fetching %s %s timed out", stream, chunk)
            outcomes[chunk] = ChunkOutcome.RPC_FAILED
        except RpcError as exc:
            logger.warning("Fetching %s %s failed: %s", stream, chunk, exc.message)
            outcomes[chunk] = ChunkOutcome.RPC_FAILED
        else:
            metrics.fetch_duration.labels(stream=stream).observe(time.perf_counter() - started)
            outcomes[chunk] = await self._merge_chunk(stream, chunk, entities, generation)
        metrics.fetch_requests.labels(stream=stream, outcome=outcomes[chunk].value).inc()

    async def _merge_chunk(
        self,
        stream: str,
        chunk: HeightRange,
        entities: list[Entity],
        generation: int,
    ) -> ChunkOutcome:
        try:
            merged = await self.engine.merge(stream, chunk, entities, generation)
        except ConflictError as exc:
            logger.warning("Discarding %s %s: %s", stream, chunk, exc.message)
            return ChunkOutcome.CONFLICT
        except GapError as exc:
            logger.error("Watermark inconsistency merging %s %s: %s", stream, chunk, exc.message)
            return ChunkOutcome.GAP
        return ChunkOutcome.DISCARDED if merged.discarded else ChunkOutcome.MERGED

    def _limiter(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)
        return self._semaphore

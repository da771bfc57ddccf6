"""
Persistence adapter: save and restore stream state through a byte store.

Each stream is saved independently under ``snapshot/<stream>`` as JSON with
camelCase keys. A snapshot holds the tracked range, the covered spans and
every cached entry.

Failing Closed
--------------
A snapshot is only loaded if every watermark invariant holds. Anything else
(bad JSON, unknown version, wrong stream, broken invariant) raises
CorruptSnapshotError, and the stream starts empty instead.

Non-Fatal Failures
------------------
Persistence never stops the mirror. Store failures, quota refusals included,
and corrupt snapshots are logged as warnings and counted; the stream keeps
serving from memory.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final, Self

from pydantic import Field, ValidationError, model_validator

from chain_mirror import metrics
from chain_mirror.sync.merge import MergeEngine
from chain_mirror.sync.range_tracker import TrackedRange
from chain_mirror.types import (
    CorruptSnapshotError,
    Entity,
    FrozenModel,
    HeightRange,
    QuotaExceededError,
    StorageError,
)

from .database import ByteStore
from .namespaces import snapshot_key

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION: Final = 1
"""Format version written into every snapshot."""


class CoveredSpan(FrozenModel):
    """A fully fetched height range, inclusive on both ends."""

    lo: int = Field(ge=0)
    hi: int = Field(ge=0)


class StreamSnapshot(FrozenModel):
    """Serialized state of one stream."""

    version: int
    """Snapshot format version."""

    stream: str
    """Stream the snapshot belongs to."""

    low_watermark: int | None = None
    high_watermark: int | None = None
    observed_head: int | None = None

    spans: list[CoveredSpan] = Field(default_factory=list)
    """Covered spans, sorted and disjoint."""

    entries: list[Entity] = Field(default_factory=list)
    """Cached entries, strictly ascending by height."""

    @model_validator(mode="after")
    def _check_invariants(self) -> Self:
        """Reject any snapshot that would load an inconsistent stream."""
        if self.version != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported version {self.version}")

        low, high, head = self.low_watermark, self.high_watermark, self.observed_head
        if low is None:
            if high is not None or self.spans or self.entries:
                raise ValueError("unanchored stream must be empty")
            return self

        previous_hi = -2
        for span in self.spans:
            if span.hi < span.lo:
                raise ValueError(f"span [{span.lo}, {span.hi}] is reversed")
            if span.lo <= previous_hi + 1:
                raise ValueError("spans must be sorted and coalesced")
            if span.lo < low:
                raise ValueError(f"span [{span.lo}, {span.hi}] starts below low watermark")
            previous_hi = span.hi

        previous_height = -1
        for entry in self.entries:
            if entry.height <= previous_height:
                raise ValueError("entry heights must be strictly increasing")
            if not any(span.lo <= entry.height <= span.hi for span in self.spans):
                raise ValueError(f"entry at height {entry.height} lies outside covered spans")
            previous_height = entry.height

        if high is not None:
            if head is None or not low <= high <= head:
                raise ValueError(f"watermarks violate low <= high <= head: {low}, {high}, {head}")
            if not any(span.lo <= low and high <= span.hi for span in self.spans):
                raise ValueError(f"[{low}, {high}] is not covered")
        return self

    def tracked_range(self) -> TrackedRange:
        """The stored watermarks."""
        return TrackedRange(
            low=self.low_watermark,
            high=self.high_watermark,
            head=self.observed_head,
        )

    def height_ranges(self) -> list[HeightRange]:
        """The stored spans as height ranges."""
        return [HeightRange(span.lo, span.hi) for span in self.spans]


def capture(engine: MergeEngine, stream: str) -> StreamSnapshot:
    """
    Build a snapshot of a stream's current state.

    The caller must hold the stream's lock. Data held below a provisional low
    watermark is left out, since restore fixes the floor at that watermark.
    """
    tracked = engine.tracker.snapshot(stream)
    spans = engine.cache.spans(stream)
    if tracked.low is not None:
        low = tracked.low
        spans = [HeightRange(max(span.lo, low), span.hi) for span in spans if span.hi >= low]
    entries: list[Entity] = []
    if spans:
        entries = engine.cache.entities(stream, spans[0].lo, spans[-1].hi)
    return StreamSnapshot(
        version=SNAPSHOT_VERSION,
        stream=stream,
        low_watermark=tracked.low,
        high_watermark=tracked.high,
        observed_head=tracked.head,
        spans=[CoveredSpan(lo=span.lo, hi=span.hi) for span in spans],
        entries=entries,
    )


def encode(snapshot: StreamSnapshot) -> bytes:
    """Serialize a snapshot to JSON bytes."""
    return snapshot.model_dump_json(by_alias=True).encode()


def decode(stream: str, data: bytes) -> StreamSnapshot:
    """
    Parse and validate snapshot bytes.

    Raises:
        CorruptSnapshotError: If the bytes are not a valid snapshot of ``stream``.
    """
    try:
        snapshot = StreamSnapshot.model_validate_json(data)
    except ValidationError as exc:
        raise CorruptSnapshotError(stream, f"{exc.error_count()} validation errors") from exc
    if snapshot.stream != stream:
        raise CorruptSnapshotError(stream, f"snapshot belongs to {snapshot.stream!r}")
    return snapshot


@dataclass(slots=True)
class SnapshotAdapter:
    """
    Saves and restores streams of a merge engine.

    Every operation holds the stream's lock, so a snapshot never captures a
    half-applied merge and a restore never interleaves with one.
    """

    store: ByteStore
    """Where snapshots are kept."""

    engine: MergeEngine
    """Engine whose cache and tracker are persisted."""

    async def save(self, stream: str) -> bool:
        """
        Persist one stream.

        Returns:
            True if written, False if the store refused or failed the write.
        """
        async with self.engine.lock(stream):
            data = encode(capture(self.engine, stream))
        try:
            self.store.write(snapshot_key(stream), data)
        except QuotaExceededError as exc:
            metrics.persistence_warnings.labels(kind="quota_exceeded").inc()
            logger.warning("Skipping snapshot of %s: %s", stream, exc.message)
            return False
        except StorageError as exc:
            metrics.persistence_warnings.labels(kind="storage_error").inc()
            logger.warning("Skipping snapshot of %s: %s", stream, exc.message)
            return False
        logger.debug("Saved snapshot of %s (%d bytes)", stream, len(data))
        return True

    async def save_all(self, streams: Iterable[str]) -> dict[str, bool]:
        """Persist several streams. Returns whether each was written."""
        return {stream: await self.save(stream) for stream in streams}

    async def restore(self, stream: str) -> bool:
        """
        Load one stream from its snapshot.

        A corrupt snapshot resets the stream to empty and is deleted. A store
        that cannot be read leaves the stream empty.

        Returns:
            True if state was loaded, False if there was none, it was corrupt,
            or the store failed.
        """
        try:
            data = self.store.read(snapshot_key(stream))
        except StorageError as exc:
            metrics.persistence_warnings.labels(kind="storage_error").inc()
            logger.warning("Cannot read snapshot of %s: %s; starting empty", stream, exc.message)
            return False
        if data is None:
            return False

        async with self.engine.lock(stream):
            try:
                snapshot = decode(stream, data)
            except CorruptSnapshotError as exc:
                metrics.persistence_warnings.labels(kind="corrupt_snapshot").inc()
                logger.warning("%s; starting empty", exc.message)
                self.engine.cache.clear(stream)
                self.engine.tracker.reset(stream)
                self.discard(stream)
                return False

            self.engine.cache.load(stream, snapshot.entries, snapshot.height_ranges())
            self.engine.tracker.restore(stream, snapshot.tracked_range())
            self.engine.publish_metrics(stream)

        logger.info(
            "Restored %s: %d entries, watermarks [%s, %s]",
            stream,
            len(snapshot.entries),
            snapshot.low_watermark,
            snapshot.high_watermark,
        )
        return True

    def discard(self, stream: str) -> bool:
        """
        Delete a stream's snapshot.

        Returns:
            True if deleted, False if the store failed.
        """
        try:
            self.store.delete(snapshot_key(stream))
        except StorageError as exc:
            metrics.persistence_warnings.labels(kind="storage_error").inc()
            logger.warning("Cannot delete snapshot of %s: %s", stream, exc.message)
            return False
        return True

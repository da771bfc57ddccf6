"""
Height-keyed cache of mirrored entities.

Why Track Spans?
----------------
The remote source may skip heights. Asking for ``[1, 7]`` can legitimately
return entities for 1..5 only. Entity heights alone therefore cannot tell us
whether a height is missing because it was never fetched or because it does
not exist.

The store records *covered spans* next to the entities: the ranges that were
fetched in full. A height is known if it falls inside a span; it has data if
it also has an entry.

How It Works
------------
Each stream owns a segment with:

1. **Entries**: Maps height to CachedEntry (the entity plus its size)
2. **Height index**: Sorted list of entry heights for range scans and eviction
3. **Spans**: Sorted, coalesced list of covered ranges

Memory Safety
-------------
Segments are bounded by the retention limit. Eviction removes the lowest
heights first, so the cache always holds the most recent window.

Concurrency
-----------
Every method is synchronous. Under asyncio a call runs to completion before
any other task runs, so readers always see a whole mutation or none of it.
Serialization of writers per stream is the Merge Engine's job.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable
from dataclasses import dataclass, field

from pydantic import JsonValue

from chain_mirror.types import (
    Entity,
    HeightRange,
    InconsistentEntityError,
    coalesce,
    subtract,
)


@dataclass(slots=True)
class CachedEntry:
    """An entity held in the cache together with its size for stats."""

    entity: Entity
    """The cached entity."""

    size: int
    """Approximate payload size in bytes."""


@dataclass(slots=True)
class RangeView:
    """Result of a range read: what is there, and what is not known."""

    entities: list[Entity]
    """Entities present in the requested range, ascending by height."""

    gaps: list[HeightRange]
    """Sub-ranges of the request not covered by any fetched span."""

    @property
    def is_complete(self) -> bool:
        """Check if the whole requested range has been fetched."""
        return not self.gaps


@dataclass(slots=True)
class StreamSegment:
    """The cached entries and covered spans of one stream."""

    entries: dict[int, CachedEntry] = field(default_factory=dict)
    """Entries keyed by height."""

    heights: list[int] = field(default_factory=list)
    """Sorted entry heights."""

    spans: list[HeightRange] = field(default_factory=list)
    """Sorted, coalesced ranges known to be fully fetched."""

    byte_size: int = 0
    """Sum of entry sizes."""


@dataclass(slots=True)
class CacheStore:
    """
    Ordered store of cached entities, one segment per stream.

    The store never decides *when* to evict or which spans to record. It only
    enforces per-height immutability and keeps its indexes consistent.
    """

    _segments: dict[str, StreamSegment] = field(default_factory=dict)
    """Segments by stream name."""

    def __contains__(self, stream: object) -> bool:
        """Check if a stream has a segment."""
        return stream in self._segments

    def _segment(self, stream: str) -> StreamSegment:
        segment = self._segments.get(stream)
        if segment is None:
            segment = self._segments[stream] = StreamSegment()
        return segment

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def put(self, stream: str, height: int, payload: JsonValue) -> bool:
        """
        Insert an entity.

        Idempotent: re-inserting the same payload at the same height is a no-op.

        Args:
            stream: Stream name.
            height: Entity height.
            payload: Entity payload.

        Returns:
            True if a new entry was created, False if it already existed.

        Raises:
            InconsistentEntityError: If a different payload is already cached
                at this height.
        """
        segment = self._segment(stream)
        existing = segment.entries.get(height)
        if existing is not None:
            if existing.entity.payload != payload:
                raise InconsistentEntityError(stream, height, "payload differs from cached entry")
            return False

        entity = Entity(height=height, payload=payload)
        entry = CachedEntry(entity=entity, size=entity.encoded_size())
        segment.entries[height] = entry
        bisect.insort(segment.heights, height)
        segment.byte_size += entry.size
        return True

    def get(self, stream: str, height: int) -> JsonValue | None:
        """
        Get the payload cached at a height.

        Returns:
            The payload, or None if no entry exists.
        """
        segment = self._segments.get(stream)
        if segment is None:
            return None
        entry = segment.entries.get(height)
        return entry.entity.payload if entry is not None else None

    def has(self, stream: str, height: int) -> bool:
        """Check if an entry exists at a height."""
        segment = self._segments.get(stream)
        return segment is not None and height in segment.entries

    def entities(self, stream: str, lo: int, hi: int) -> list[Entity]:
        """Entities with heights in ``[lo, hi]``, ascending."""
        segment = self._segments.get(stream)
        if segment is None or lo > hi:
            return []
        start = bisect.bisect_left(segment.heights, lo)
        stop = bisect.bisect_right(segment.heights, hi)
        return [segment.entries[h].entity for h in segment.heights[start:stop]]

    def get_range(self, stream: str, lo: int, hi: int) -> RangeView:
        """
        Read an inclusive height range.

        Heights that were never fetched are reported as gaps rather than
        silently skipped. Heights inside a fetched span but without an entry
        were skipped by the remote source and are not gaps.
        """
        requested = HeightRange(lo, hi)
        return RangeView(
            entities=self.entities(stream, lo, hi),
            gaps=self.uncovered(stream, requested),
        )

    def entry_count(self, stream: str) -> int:
        """Number of entries cached for a stream."""
        segment = self._segments.get(stream)
        return len(segment.entries) if segment is not None else 0

    def byte_size(self, stream: str) -> int:
        """Approximate payload bytes cached for a stream."""
        segment = self._segments.get(stream)
        return segment.byte_size if segment is not None else 0

    def lowest_height(self, stream: str) -> int | None:
        """Lowest cached height, or None if the stream holds nothing."""
        segment = self._segments.get(stream)
        if segment is None or not segment.heights:
            return None
        return segment.heights[0]

    # -------------------------------------------------------------------------
    # Covered Spans
    # -------------------------------------------------------------------------

    def mark_covered(self, stream: str, covered: HeightRange) -> None:
        """Record that every entity of a range has been inserted."""
        segment = self._segment(stream)
        segment.spans = coalesce([*segment.spans, covered])

    def spans(self, stream: str) -> list[HeightRange]:
        """Covered spans of a stream, sorted and coalesced."""
        segment = self._segments.get(stream)
        return list(segment.spans) if segment is not None else []

    def covered_through(self, stream: str, start: int) -> int | None:
        """
        Find how far coverage runs contiguously from a height.

        Returns:
            The highest ``h`` such that ``[start, h]`` is covered, or None if
            ``start`` itself is not covered.
        """
        segment = self._segments.get(stream)
        if segment is None:
            return None
        # Spans are coalesced, so at most one can contain start.
        index = bisect.bisect_right(segment.spans, HeightRange(start, start)) - 1
        for span in segment.spans[max(index, 0) : index + 2]:
            if start in span:
                return span.hi
        return None

    def covered_down_to(self, stream: str, end: int) -> int | None:
        """
        Find how far coverage runs contiguously below a height.

        Returns:
            The lowest ``h`` such that ``[h, end]`` is covered, or None if
            ``end`` itself is not covered.
        """
        for span in self.spans(stream):
            if end in span:
                return span.lo
        return None

    def uncovered(self, stream: str, requested: HeightRange) -> list[HeightRange]:
        """Parts of a range not covered by any span."""
        return subtract(requested, self.spans(stream))

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    def evict_oldest(self, stream: str, target_count: int) -> int | None:
        """
        Remove the lowest-height entries until at most ``target_count`` remain.

        Covered spans below the new lowest height are trimmed with them, so
        evicted heights read as unfetched again.

        Returns:
            The lowest remaining height (the new low watermark candidate),
            or None if nothing remains.
        """
        segment = self._segments.get(stream)
        if segment is None:
            return None

        excess = len(segment.heights) - max(target_count, 0)
        if excess > 0:
            for height in segment.heights[:excess]:
                segment.byte_size -= segment.entries.pop(height).size
            del segment.heights[:excess]

        if not segment.heights:
            segment.spans = []
            return None

        floor = segment.heights[0]
        segment.spans = [
            HeightRange(max(span.lo, floor), span.hi) for span in segment.spans if span.hi >= floor
        ]
        return floor

    def evicted_count(self, stream: str, target_count: int) -> int:
        """How many entries ``evict_oldest`` would remove for a target."""
        return max(self.entry_count(stream) - max(target_count, 0), 0)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def streams(self) -> list[str]:
        """Names of streams with a segment."""
        return list(self._segments)

    def clear(self, stream: str | None = None) -> None:
        """Drop one stream's segment, or every segment when ``stream`` is None."""
        if stream is None:
            self._segments.clear()
        else:
            self._segments.pop(stream, None)

    def load(self, stream: str, entities: Iterable[Entity], spans: Iterable[HeightRange]) -> None:
        """Replace a stream's segment with restored entities and spans."""
        self.clear(stream)
        segment = self._segment(stream)
        for entity in entities:
            self.put(stream, entity.height, entity.payload)
        segment.spans = coalesce(spans)

"""
Per-stream watermarks over the cached sequence.

A stream's tracked range answers one question: which heights can a reader
trust? Everything in ``[low, high]`` has been fetched with no gaps. Above
``high`` the cache may hold out-of-order data, but it is not authoritative
until the missing heights below it arrive.

``head`` is the highest height the remote source has ever reported. It runs
ahead of ``high`` while fetches are pending or failing.

Monotonicity
------------
All three values only move up. Remote heads may arrive out of order under
network reordering, so head updates use a max rule rather than overwrite.

The one exception is backfill. A stream anchored by its first merge has no
floor, so a later batch that closes the run just below ``low`` extends the
trusted range downward. An explicit anchor, an eviction or a restore sets the
floor, and ``low`` never goes below it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from chain_mirror.types import GapError

from .cache_store import CacheStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackedRange:
    """Watermarks of one stream. None means not yet known."""

    low: int | None = None
    """Lowest trusted height. Set when the stream is anchored."""

    high: int | None = None
    """Highest trusted height. None while the stream is empty."""

    head: int | None = None
    """Highest height ever reported by the remote source."""

    @property
    def is_anchored(self) -> bool:
        """Check if the stream has a starting height."""
        return self.low is not None

    @property
    def is_empty(self) -> bool:
        """Check if no height is trusted yet."""
        return self.high is None

    @property
    def next_height(self) -> int | None:
        """First height not yet trusted, or None if the stream is unanchored."""
        if self.high is not None:
            return self.high + 1
        return self.low

    def holds_invariant(self) -> bool:
        """Check ``low <= high <= head`` for a non-empty range."""
        if self.high is None:
            return True
        if self.low is None or self.head is None:
            return False
        return self.low <= self.high <= self.head


@dataclass(slots=True)
class RangeTracker:
    """
    Tracks watermarks per stream.

    The tracker consults the cache store before moving the high watermark, so
    it can refuse an extension that would cover unfetched heights.
    """

    cache: CacheStore
    """Store whose covered spans back every watermark extension."""

    _ranges: dict[str, TrackedRange] = field(default_factory=dict)
    """Tracked range by stream name."""

    _floors: dict[str, int] = field(default_factory=dict)
    """Lowest height a stream may ever trust again, by stream name."""

    def _range(self, stream: str) -> TrackedRange:
        tracked = self._ranges.get(stream)
        if tracked is None:
            tracked = self._ranges[stream] = TrackedRange()
        return tracked

    def snapshot(self, stream: str) -> TrackedRange:
        """Return a copy of a stream's tracked range."""
        return replace(self._range(stream))

    def streams(self) -> list[str]:
        """Names of tracked streams."""
        return list(self._ranges)

    def observe_head(self, stream: str, height: int) -> bool:
        """
        Record a remote head report.

        Smaller or equal reports are ignored: last-larger-wins.

        Returns:
            True if the observed head moved.
        """
        tracked = self._range(stream)
        if tracked.head is not None and height <= tracked.head:
            return False
        tracked.head = height
        return True

    def floor(self, stream: str) -> int | None:
        """Lowest height the low watermark may take, or None if unbounded."""
        return self._floors.get(stream)

    def anchor(self, stream: str, height: int, *, fixed: bool = True) -> bool:
        """
        Set the first height an empty stream will sync from.

        Args:
            stream: Stream name.
            height: Starting height.
            fixed: Whether the anchor is also the floor. A provisional anchor
                may later be lowered by backfill.

        Returns:
            True if the stream was anchored, False if it already had an anchor.
        """
        tracked = self._range(stream)
        if tracked.is_anchored:
            return False
        tracked.low = height
        if fixed:
            self._floors[stream] = height
        logger.debug("Anchored %s at height %d (fixed=%s)", stream, height, fixed)
        return True

    def backfill_low_watermark(self, stream: str, new_low: int) -> bool:
        """
        Move the low watermark down over heights fetched below it.

        Every height from ``new_low`` through the current ``low - 1`` must be
        covered in the cache store, and ``new_low`` may not pass the floor.

        Returns:
            True if the watermark moved.

        Raises:
            GapError: If the stream is unanchored, the floor would be passed,
                or the cache has an uncovered height in the extension.
        """
        tracked = self._range(stream)
        if tracked.low is None:
            raise GapError(stream, new_low, -1)
        if new_low >= tracked.low:
            return False

        floor = self._floors.get(stream)
        if floor is not None and new_low < floor:
            raise GapError(stream, new_low, floor - 1)
        covered = self.cache.covered_through(stream, new_low)
        if covered is None or covered < tracked.low - 1:
            raise GapError(stream, new_low, tracked.low - 1)

        logger.debug("Backfilled %s from %d down to %d", stream, tracked.low, new_low)
        tracked.low = new_low
        return True

    def extend_high_watermark(self, stream: str, new_high: int) -> bool:
        """
        Move the high watermark up to ``new_high``.

        Every height from the current ``high + 1`` through ``new_high`` must be
        covered in the cache store.

        Returns:
            True if the watermark moved, False if ``new_high`` is not above it.

        Raises:
            GapError: If the stream is unanchored or the cache has an
                uncovered height in the extension.
        """
        tracked = self._range(stream)
        start = tracked.next_height
        if start is None:
            raise GapError(stream, -1, new_high)
        if new_high < start:
            return False

        covered = self.cache.covered_through(stream, start)
        if covered is None or covered < new_high:
            raise GapError(stream, start, new_high)

        tracked.high = new_high
        if tracked.head is None or tracked.head < new_high:
            tracked.head = new_high
        return True

    def advance_low_watermark(self, stream: str, new_low: int) -> bool:
        """
        Move the low watermark up after eviction.

        If eviction went past the high watermark, the covered run starting at
        the new low becomes the tracked range. Both watermarks still only
        move up.

        Returns:
            True if the low watermark moved.
        """
        tracked = self._range(stream)
        floor = self._floors.get(stream)
        self._floors[stream] = new_low if floor is None else max(floor, new_low)
        if tracked.low is not None and new_low <= tracked.low:
            return False
        tracked.low = new_low

        if tracked.high is None or new_low > tracked.high:
            covered = self.cache.covered_through(stream, new_low)
            if covered is not None:
                logger.info(
                    "Eviction moved %s past its high watermark, rebasing to [%d, %d]",
                    stream,
                    new_low,
                    covered,
                )
                tracked.high = covered
                if tracked.head is None or tracked.head < covered:
                    tracked.head = covered
            else:
                tracked.high = None
        return True

    def restore(self, stream: str, tracked: TrackedRange) -> None:
        """Install a restored tracked range. Its low watermark becomes the floor."""
        self._ranges[stream] = replace(tracked)
        if tracked.low is not None:
            self._floors[stream] = tracked.low
        else:
            self._floors.pop(stream, None)

    def reset(self, stream: str | None = None) -> None:
        """Forget one stream, or every stream when ``stream`` is None."""
        if stream is None:
            self._ranges.clear()
            self._floors.clear()
        else:
            self._ranges.pop(stream, None)
            self._floors.pop(stream, None)

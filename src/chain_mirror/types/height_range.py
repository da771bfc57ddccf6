"""
Inclusive height ranges and the interval arithmetic the sync engine needs.

Every range in the mirror is closed on both ends: ``HeightRange(3, 5)`` holds
heights 3, 4 and 5. Lists of ranges passed to the helpers below are expected
to be sorted; results are always sorted and coalesced.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass


@dataclass(frozen=True, slots=True, order=True)
class HeightRange:
    """A closed interval of heights ``[lo, hi]``."""

    lo: int
    """First height in the range."""

    hi: int
    """Last height in the range (inclusive)."""

    def __post_init__(self) -> None:
        """Reject empty or negative ranges."""
        if self.lo < 0:
            raise ValueError(f"Range start must be non-negative, got {self.lo}")
        if self.hi < self.lo:
            raise ValueError(f"Range end {self.hi} is below start {self.lo}")

    def __len__(self) -> int:
        """Number of heights in the range."""
        return self.hi - self.lo + 1

    def __contains__(self, height: object) -> bool:
        """Check if a height falls inside the range."""
        return isinstance(height, int) and self.lo <= height <= self.hi

    def __iter__(self) -> Iterator[int]:
        """Iterate over every height in ascending order."""
        return iter(range(self.lo, self.hi + 1))

    def __str__(self) -> str:
        return f"[{self.lo}, {self.hi}]"

    def covers(self, other: HeightRange) -> bool:
        """Check if this range fully contains another."""
        return self.lo <= other.lo and other.hi <= self.hi

    def intersect(self, other: HeightRange) -> HeightRange | None:
        """Return the overlap with another range, or None if disjoint."""
        lo = max(self.lo, other.lo)
        hi = min(self.hi, other.hi)
        if lo > hi:
            return None
        return HeightRange(lo, hi)

    def split(self, max_size: int) -> list[HeightRange]:
        """
        Split into consecutive chunks of at most ``max_size`` heights.

        Args:
            max_size: Upper bound on the length of each chunk.

        Returns:
            Chunks in ascending order. Their union is exactly this range.
        """
        if max_size < 1:
            raise ValueError(f"Chunk size must be positive, got {max_size}")
        return [
            HeightRange(start, min(start + max_size - 1, self.hi))
            for start in range(self.lo, self.hi + 1, max_size)
        ]


def coalesce(ranges: Iterable[HeightRange]) -> list[HeightRange]:
    """
    Merge overlapping and adjacent ranges.

    ``[1, 3]`` and ``[4, 6]`` become ``[1, 6]`` since no height lies between them.
    """
    merged: list[HeightRange] = []
    for rng in sorted(ranges):
        if merged and rng.lo <= merged[-1].hi + 1:
            last = merged[-1]
            merged[-1] = HeightRange(last.lo, max(last.hi, rng.hi))
        else:
            merged.append(rng)
    return merged


def subtract(base: HeightRange, holes: Iterable[HeightRange]) -> list[HeightRange]:
    """
    Return the parts of ``base`` not covered by any of ``holes``.

    Args:
        base: The range to carve up.
        holes: Ranges to remove. Need not be sorted or disjoint.

    Returns:
        Sorted, disjoint pieces of ``base``.
    """
    pieces: list[HeightRange] = []
    cursor = base.lo
    for hole in coalesce(holes):
        if hole.hi < cursor:
            continue
        if hole.lo > base.hi:
            break
        if hole.lo > cursor:
            pieces.append(HeightRange(cursor, hole.lo - 1))
        cursor = hole.hi + 1
        if cursor > base.hi:
            return pieces
    if cursor <= base.hi:
        pieces.append(HeightRange(cursor, base.hi))
    return pieces

"""
Mock remote data sources for testing the sync engine.

Each mock provides a minimal in-memory implementation of RemoteDataSource.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from pydantic import JsonValue

from chain_mirror.types import Entity, HeightRange, RpcError

from .builders import make_payload


class FakeDataSource:
    """
    In-memory remote ledger with configurable failures.

    Every stream sees the same heights. Payloads include the stream name so
    streams never share data.
    """

    def __init__(self, heights: Iterable[int] = (), head: int | None = None) -> None:
        """Initialize with the heights the remote holds and its head."""
        self.payloads: dict[int, JsonValue] = {}
        self.head = head
        self.add(heights)

        self.head_failures = 0
        """Number of upcoming get_head calls that raise RpcError."""

        self.failing: set[HeightRange] = set()
        """Requested ranges that raise RpcError."""

        self.fail_all = False
        """Whether every get_range call raises RpcError."""

        self.delay = 0.0
        """Seconds each get_range call sleeps before answering."""

        self.gate: asyncio.Event | None = None
        """If set, get_range waits for this event before answering."""

        self.range_log: list[tuple[str, int, int]] = []
        self.head_calls = 0
        self.active = 0
        self.max_active = 0

    def add(self, heights: Iterable[int], tag: str = "a") -> None:
        """Make heights available, raising the head if needed."""
        for height in heights:
            self.payloads[height] = make_payload(height, tag)
            if self.head is None or height > self.head:
                self.head = height

    def payload(self, stream: str, height: int) -> JsonValue:
        """The payload the remote serves for a stream at a height."""
        return {"stream": stream, "data": self.payloads[height]}

    async def get_head(self) -> int:
        """Return the configured head or fail."""
        self.head_calls += 1
        if self.head_failures > 0:
            self.head_failures -= 1
            raise RpcError("head unavailable")
        if self.head is None:
            raise RpcError("empty ledger")
        return self.head

    async def get_range(self, stream: str, lo: int, hi: int) -> list[Entity]:
        """Return stored entities in range or fail."""
        self.range_log.append((stream, lo, hi))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_all or HeightRange(lo, hi) in self.failing:
                raise RpcError(f"range [{lo}, {hi}] unavailable")
            return [
                Entity(height=h, payload=self.payload(stream, h))
                for h in sorted(self.payloads)
                if lo <= h <= hi
            ]
        finally:
            self.active -= 1

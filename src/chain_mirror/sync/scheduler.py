"""
Poll scheduler: the background loop that keeps the mirror fresh.

How It Works
------------
1. Ask the remote source for its head
2. Record the head on every stream
3. Reconcile every stream against it
4. Sleep for the poll interval, or for a backoff delay after a failure
5. Repeat until stopped

Backoff
-------
After ``n`` consecutive failed cycles the next cycle waits
``min(initial * multiplier ** (n - 1), cap)`` seconds. A single successful
cycle resets the count.

Cancellation
------------
Stopping is cooperative: ``stop()`` wakes the sleep, a cycle already running
is allowed to finish, and no new cycle starts afterwards. Callers that cannot
wait cancel the ``run()`` task; a merge already committed stays committed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from chain_mirror import metrics
from chain_mirror.rpc.source import RemoteDataSource
from chain_mirror.types import RpcError

from .config import SyncConfig
from .orchestrator import FetchOrchestrator, ReconcileResult
from .states import PollState

logger = logging.getLogger(__name__)


def backoff_delay(failures: int, initial: float, multiplier: float, cap: float) -> float:
    """
    Delay before the next cycle after consecutive failures.

    Args:
        failures: Consecutive failed cycles, at least 1.
        initial: Delay after the first failure.
        multiplier: Growth factor per further failure.
        cap: Upper bound.

    Returns:
        Delay in seconds.
    """
    if failures < 1:
        raise ValueError(f"failures must be at least 1, got {failures}")
    exponent = min(failures - 1, 1024)
    try:
        delay = initial * multiplier**exponent
    except OverflowError:
        return cap
    return min(delay, cap)


@dataclass(slots=True)
class CycleReport:
    """Outcome of one poll cycle."""

    head: int | None = None
    """Remote head observed this cycle, None if it could not be fetched."""

    results: dict[str, ReconcileResult] = field(default_factory=dict)
    """Reconciliation result per stream."""

    error: str | None = None
    """Why the cycle failed before reconciling, if it did."""

    @property
    def failed(self) -> bool:
        """Check if the cycle should trigger backoff."""
        return self.error is not None or any(r.has_failures for r in self.results.values())

    @property
    def merged_streams(self) -> list[str]:
        """Streams that merged at least one chunk."""
        return [stream for stream, result in self.results.items() if result.merged]


CycleHook = Callable[[CycleReport], Awaitable[None]]
"""Coroutine called after every cycle."""


@dataclass(slots=True)
class PollScheduler:
    """Drives reconciliation on a timer with exponential backoff on failure."""

    source: RemoteDataSource
    """Remote source asked for its head every cycle."""

    orchestrator: FetchOrchestrator
    """Orchestrator reconciling the streams."""

    streams: Sequence[str]
    """Streams to keep in sync."""

    config: SyncConfig = field(default_factory=SyncConfig)
    """Cadence, timeout and backoff settings."""

    on_cycle: CycleHook | None = None
    """Optional hook run after each cycle."""

    _state: PollState = PollState.IDLE
    """Current state machine state."""

    _failures: int = 0
    """Consecutive failed cycles."""

    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    """Set when a stop is requested."""

    @property
    def state(self) -> PollState:
        """Current scheduler state."""
        return self._state

    @property
    def failures(self) -> int:
        """Consecutive failed cycles."""
        return self._failures

    @property
    def stop_requested(self) -> bool:
        """Check if a stop has been requested."""
        return self._stop.is_set()

    def next_delay(self) -> float:
        """Seconds to wait before the next cycle."""
        if self._state == PollState.BACKING_OFF:
            return backoff_delay(
                self._failures,
                self.config.backoff_initial,
                self.config.backoff_multiplier,
                self.config.backoff_max,
            )
        return self.config.poll_interval

    def _transition_to(self, new_state: PollState) -> None:
        """
        Transition to a new poll state.

        Raises:
            ValueError: If transition is not allowed.
        """
        if not self._state.can_transition_to(new_state):
            raise ValueError(f"Invalid state transition: {self._state.name} -> {new_state.name}")
        self._state = new_state

    async def poll_once(self) -> CycleReport:
        """
        Run one cycle: fetch the head, then reconcile every stream.

        Failures never propagate. They are logged, counted, and move the
        scheduler into backoff.
        """
        self._transition_to(PollState.POLLING)
        report = CycleReport()
        try:
            report.head = await asyncio.wait_for(
                self.source.get_head(), timeout=self.config.request_timeout
            )
        except TimeoutError:
            report.error = "head request timed out"
        except RpcError as exc:
            report.error = exc.message

        if report.error is None and report.head is not None:
            try:
                for stream in self.streams:
                    self.orchestrator.engine.observe_head(stream, report.head)
                report.results = await self.orchestrator.reconcile_all(self.streams)
            except Exception as exc:
                logger.exception("Unexpected error during reconciliation")
                report.error = f"unexpected error: {exc!r}"

        if report.failed:
            self._failures += 1
            metrics.poll_failures.inc()
            self._transition_to(PollState.BACKING_OFF)
            logger.warning(
                "Poll cycle failed (%d in a row), retrying in %.1fs: %s",
                self._failures,
                self.next_delay(),
                report.error or "chunk fetches failed",
            )
        else:
            self._failures = 0
            self._transition_to(PollState.IDLE)

        if self.on_cycle is not None:
            try:
                await self.on_cycle(report)
            except Exception:
                logger.exception("Poll cycle hook failed")
        return report

    async def run(self) -> None:
        """Poll until stopped."""
        logger.info(
            "Polling %s every %.1fs",
            ", ".join(self.streams),
            self.config.poll_interval,
        )
        try:
            while not self._stop.is_set():
                await self.poll_once()
                if self._stop.is_set():
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.next_delay())
                except TimeoutError:
                    pass
        finally:
            self._state = PollState.IDLE
            logger.info("Poll loop stopped")

    def stop(self) -> None:
        """Request a cooperative stop."""
        self._stop.set()

    def reset(self) -> None:
        """Allow a stopped scheduler to run again."""
        self._stop.clear()
        self._failures = 0
        self._state = PollState.IDLE

"""Poll scheduler state machine."""

from __future__ import annotations

from enum import Enum, auto


class PollState(Enum):
    """
    Poll scheduler states.

    State Machine Diagram
    ---------------------
    ::

        IDLE --> POLLING --> IDLE
                    |          ^
                    v          |
               BACKING_OFF ----+ (on stop)
                    |
                    +--> POLLING

    Transitions
    -----------
    IDLE -> POLLING
        - Triggered when: The poll interval elapses
        - Action: Ask the remote for its head and reconcile every stream

    POLLING -> IDLE
        - Triggered when: The cycle completed without failures, or on stop

    POLLING -> BACKING_OFF
        - Triggered when: The head request or any chunk fetch failed
        - Action: Wait an exponentially growing delay

    BACKING_OFF -> POLLING
        - Triggered when: The backoff delay elapses

    BACKING_OFF -> IDLE
        - Triggered when: Stop requested
    """

    IDLE = auto()
    """Waiting for the next tick. No remote calls are in progress."""

    POLLING = auto()
    """A reconciliation cycle is running."""

    BACKING_OFF = auto()
    """
    Waiting after a failed cycle.

    The delay grows with each consecutive failure up to a cap. The first
    successful cycle resets it.
    """

    def can_transition_to(self, target: PollState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The proposed target state.

        Returns:
            True if the transition is allowed by the state machine rules.
        """
        return target in _VALID_TRANSITIONS.get(self, set())

    @property
    def is_active(self) -> bool:
        """Check if a cycle is running."""
        return self == PollState.POLLING


_VALID_TRANSITIONS: dict[PollState, set[PollState]] = {
    PollState.IDLE: {PollState.POLLING},
    PollState.POLLING: {PollState.IDLE, PollState.BACKING_OFF},
    PollState.BACKING_OFF: {PollState.POLLING, PollState.IDLE},
}
"""Valid state transitions for the poll state machine."""

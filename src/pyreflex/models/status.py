"""Status enumerations for reaction execution tracking.

Defines the lifecycle of a single Execution and the transition table
that every store update is checked against.
"""

from enum import Enum


class ExecutionStatus(Enum):
    """Status of one tracked reaction invocation.

    Lifecycle:
        PENDING → RUNNING → SUCCEEDED
                          → FAILED
                          → RETRYING → RUNNING → ...
        PENDING/RETRYING → CANCELLED

    Design: Forward-Only State Machine
        A status never moves backward. Terminal states (SUCCEEDED, FAILED,
        CANCELLED) have no outgoing transitions, which is what makes
        at-most-once success enforceable with a conditional update.
    """

    PENDING = "PENDING"
    """Created by the chain builder, waiting for a worker to claim it."""

    RUNNING = "RUNNING"
    """Claimed by exactly one worker, handler invocation in flight."""

    SUCCEEDED = "SUCCEEDED"
    """Handler returned successfully."""

    FAILED = "FAILED"
    """Retry manager declared the failure terminal."""

    RETRYING = "RETRYING"
    """Failed attempt, waiting for next_retry_at before being claimed again."""

    CANCELLED = "CANCELLED"
    """Cancelled before it could run (e.g. the Area was disabled)."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work will happen)."""
        return self in (
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    @property
    def is_claimable(self) -> bool:
        """Check if a worker may claim an execution in this status."""
        return self in (ExecutionStatus.PENDING, ExecutionStatus.RETRYING)

    def can_transition_to(self, target: "ExecutionStatus") -> bool:
        """Check whether ``self -> target`` is an allowed transition."""
        return target in _TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.RETRYING}
    ),
    ExecutionStatus.RETRYING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.SUCCEEDED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def sources_for(target: ExecutionStatus) -> frozenset[ExecutionStatus]:
    """Return every status from which ``target`` may be reached.

    Used to build the ``from_statuses`` guard of a conditional update.
    """
    return frozenset(src for src, targets in _TRANSITIONS.items() if target in targets)

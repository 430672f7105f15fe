"""
Execution represents one tracked reaction invocation, with retries.

Design principles:
- Value object: stores hand out snapshots, mutations go through the store
- Never deleted: executions are retained for audit
- attempt counts claims, so it only increases
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from pyreflex.models.status import ExecutionStatus


@dataclass(frozen=True)
class Execution:
    """
    Unit of work tracking one reaction invocation.

    An Execution is created PENDING by the chain builder (one per resolved
    link), advanced by dispatchers through store updates, and never deleted.

    The pair ``(action_link_id, triggering_event_id)`` is unique across the
    store; that uniqueness is what anchors at-most-once success.
    """

    # ==========================================================================
    # Identity
    # ==========================================================================

    id: str
    area_id: str
    action_link_id: str
    triggering_event_id: str

    # ==========================================================================
    # Handler routing (denormalized from the link's target instance)
    # ==========================================================================

    target_instance_id: str
    provider: str
    action_type: str

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt: int = 0
    """Number of times this execution has been claimed (1-indexed once running)."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    """Earliest time a RETRYING execution may be claimed again."""

    finished_at: datetime | None = None
    locked_by: str | None = None
    """Worker that holds the execution while RUNNING."""

    # ==========================================================================
    # Result (exactly one of these is set once terminal)
    # ==========================================================================

    result_payload: dict[str, Any] | None = None
    error_detail: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def handler_key(self) -> tuple[str, str]:
        return (self.provider, self.action_type)

    @property
    def dedup_pair(self) -> tuple[str, str]:
        return (self.action_link_id, self.triggering_event_id)

    def is_due(self, now: datetime) -> bool:
        """Check if a worker may claim this execution at ``now``."""
        if not self.status.is_claimable:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now

    def evolve(self, **changes: Any) -> Execution:
        """Return a copy with ``changes`` applied (stores never mutate in place)."""
        return replace(self, **changes)

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.id!r}, link={self.action_link_id!r}, "
            f"event={self.triggering_event_id!r}, status={self.status}, "
            f"attempt={self.attempt}, locked_by={self.locked_by!r})"
        )

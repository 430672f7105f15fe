"""
Execution Tracker - creates and mutates Execution records.

Every mutation is checked against the ExecutionStatus transition table
and then issued as one conditional update on the store, guarded by the
expected status, attempt counter and lock holder. A guard that does not
hold yields ConcurrencyConflict; asking for a transition that the table
forbids is a programming error and raises InvalidTransition.

State machine:
    PENDING  -> RUNNING      (claim)
    RUNNING  -> SUCCEEDED
    RUNNING  -> FAILED
    RUNNING  -> RETRYING
    RETRYING -> RUNNING      (claim after next_retry_at)
    PENDING|RETRYING -> CANCELLED
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pyreflex.executor.outcome import ConcurrencyConflict
from pyreflex.models import Execution, ExecutionStatus
from pyreflex.storage.base import ExecutionStore

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """A transition not present in the state machine was requested."""

    def __init__(self, current: ExecutionStatus, target: ExecutionStatus):
        super().__init__(f"Invalid transition {current} -> {target}")
        self.current = current
        self.target = target


@dataclass(frozen=True)
class ExecutionStatistics:
    """Point-in-time status counts for the operational surface."""

    counts: dict[ExecutionStatus, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def active(self) -> int:
        return (
            self.counts[ExecutionStatus.PENDING]
            + self.counts[ExecutionStatus.RUNNING]
            + self.counts[ExecutionStatus.RETRYING]
        )

    def __getitem__(self, status: ExecutionStatus) -> int:
        return self.counts[status]

    def as_dict(self) -> dict[str, int]:
        return {status.value: count for status, count in self.counts.items()}


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionTracker:
    """
    Single writer-facing API over execution state.

    Args:
        store: Durable store holding executions
        clock: Injectable time source
    """

    def __init__(self, store: ExecutionStore, clock: Callable[[], datetime] | None = None):
        self._store = store
        self._clock = clock or _utc_now

    @property
    def store(self) -> ExecutionStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    # ========================================================================
    # Creation and claiming
    # ========================================================================

    async def create_pending(self, execution: Execution) -> tuple[Execution, bool]:
        """
        Persist a PENDING execution, idempotent per (link, event) pair.

        Returns:
            (execution, created); an existing execution for the pair is
            returned unchanged with created=False.
        """
        if execution.status != ExecutionStatus.PENDING or execution.attempt != 0:
            raise InvalidTransition(execution.status, ExecutionStatus.PENDING)

        stored, created = await self._store.create_execution(execution)
        if created:
            logger.debug(f"Created {stored!r}")
        return stored, created

    async def claim(self, execution_id: str, worker_id: str) -> Execution | ConcurrencyConflict:
        """Exclusive PENDING/RETRYING -> RUNNING for one execution id."""
        claimed = await self._store.claim_execution(execution_id, worker_id, self._clock())
        if claimed is None:
            return ConcurrencyConflict(execution_id, "not claimable")
        logger.info(
            f"Worker {worker_id} claimed execution {execution_id} (attempt {claimed.attempt})"
        )
        return claimed

    async def claim_next(self, worker_id: str) -> Execution | None:
        """Claim the oldest due execution, None if nothing is due."""
        claimed = await self._store.claim_next(worker_id, self._clock())
        if claimed is not None:
            logger.info(
                f"Worker {worker_id} claimed execution {claimed.id} (attempt {claimed.attempt})"
            )
        return claimed

    # ========================================================================
    # Transitions out of RUNNING
    # ========================================================================

    async def transition(
        self,
        execution: Execution,
        to_status: ExecutionStatus,
        *,
        result_payload: dict[str, Any] | None = None,
        error_detail: dict[str, Any] | None = None,
        next_retry_at: datetime | None = None,
    ) -> Execution | ConcurrencyConflict:
        """
        Move ``execution`` from its observed status to ``to_status``.

        The update only applies if the stored row still has the observed
        status, attempt and lock holder.

        Raises:
            InvalidTransition: If the state machine forbids the move
        """
        if to_status == ExecutionStatus.RUNNING or not execution.status.can_transition_to(
            to_status
        ):
            raise InvalidTransition(execution.status, to_status)

        updated = await self._store.transition_execution(
            execution.id,
            (execution.status,),
            to_status,
            self._clock(),
            expected_attempt=execution.attempt,
            expected_worker=execution.locked_by,
            result_payload=result_payload,
            error_detail=error_detail,
            next_retry_at=next_retry_at,
        )
        if updated is None:
            logger.debug(
                f"Lost transition race on {execution.id}: {execution.status} -> {to_status}"
            )
            return ConcurrencyConflict(execution.id, f"{execution.status} -> {to_status}")
        return updated

    async def succeed(
        self, execution: Execution, result_payload: dict[str, Any]
    ) -> Execution | ConcurrencyConflict:
        return await self.transition(
            execution, ExecutionStatus.SUCCEEDED, result_payload=result_payload
        )

    async def fail(
        self, execution: Execution, error_detail: dict[str, Any]
    ) -> Execution | ConcurrencyConflict:
        return await self.transition(execution, ExecutionStatus.FAILED, error_detail=error_detail)

    async def schedule_retry(
        self, execution: Execution, next_retry_at: datetime, error_detail: dict[str, Any]
    ) -> Execution | ConcurrencyConflict:
        return await self.transition(
            execution,
            ExecutionStatus.RETRYING,
            error_detail=error_detail,
            next_retry_at=next_retry_at,
        )

    # ========================================================================
    # Cancellation
    # ========================================================================

    async def cancel(self, execution_id: str) -> Execution | ConcurrencyConflict:
        """Cancel one PENDING/RETRYING execution. RUNNING attempts are never aborted."""
        updated = await self._store.transition_execution(
            execution_id,
            (ExecutionStatus.PENDING, ExecutionStatus.RETRYING),
            ExecutionStatus.CANCELLED,
            self._clock(),
        )
        if updated is None:
            return ConcurrencyConflict(execution_id, "not cancellable")
        logger.info(f"Cancelled execution {execution_id}")
        return updated

    async def cancel_area(self, area_id: str) -> list[str]:
        """Cancel every PENDING/RETRYING execution of an Area; returns their ids."""
        cancelled = await self._store.cancel_area_executions(area_id, self._clock())
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} execution(s) of area {area_id}")
        return cancelled

    # ========================================================================
    # Queries
    # ========================================================================

    async def get(self, execution_id: str) -> Execution | None:
        return await self._store.get_execution(execution_id)

    async def find(self, action_link_id: str, triggering_event_id: str) -> Execution | None:
        return await self._store.find_execution(action_link_id, triggering_event_id)

    async def list_for_area(
        self,
        area_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        """Audit query: executions of one Area created in ``[since, until)``."""
        return await self._store.list_executions(
            area_id=area_id, since=since, until=until, statuses=statuses
        )

    async def find_stale(self, started_before: datetime) -> list[Execution]:
        return await self._store.find_stale_executions(started_before)

    async def next_retry_time(self) -> datetime | None:
        return await self._store.get_next_retry_time()

    async def statistics(self) -> ExecutionStatistics:
        return ExecutionStatistics(counts=await self._store.count_by_status())

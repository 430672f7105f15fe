"""In-memory storage implementation for pyreflex.

Design Pattern: Adapter Pattern
InMemoryExecutionStore adapts in-memory dictionaries to the ExecutionStore
interface. A single asyncio.Lock makes every operation atomic with respect
to other coroutines on the same event loop, which is all the atomicity a
single-process store needs.

Instance is immediately usable after __init__. Nothing survives a restart,
so this backend is for tests and demos only.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from pyreflex.models import Event, Execution, ExecutionStatus
from pyreflex.storage.base import ExecutionStore, StorageError, empty_status_counts


class InMemoryExecutionStore(ExecutionStore):
    """In-memory storage for testing.

    Can be substituted for SqliteExecutionStore without changing client code.

    Usage:
        store = InMemoryExecutionStore()
        await store.append_event(event)
    """

    def __init__(self):
        """Initialize in-memory storage with notification support."""
        # Storage: {event_id: Event}
        self._events: dict[str, Event] = {}

        # Storage: {dedup_key: expires_at or None for unbounded retention}
        self._dedup: dict[str, datetime | None] = {}

        # Storage: {execution_id: Execution}
        self._executions: dict[str, Execution] = {}

        # Index: {(action_link_id, triggering_event_id): execution_id}
        self._pairs: dict[tuple[str, str], str] = {}

        self._lock = asyncio.Lock()
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return "InMemoryExecutionStore"

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    # ========================================================================
    # Events
    # ========================================================================

    async def append_event(self, event: Event) -> None:
        async with self._lock:
            self._events.setdefault(event.id, event)

    async def get_event(self, event_id: str) -> Event | None:
        async with self._lock:
            return self._events.get(event_id)

    # ========================================================================
    # Dedup
    # ========================================================================

    async def check_and_set_dedup(
        self, key: str, now: datetime, ttl: timedelta | None = None
    ) -> bool:
        async with self._lock:
            if key in self._dedup:
                expires_at = self._dedup[key]
                if expires_at is None or now < expires_at:
                    return False

            self._dedup[key] = now + ttl if ttl is not None else None
            return True

    async def release_dedup(self, key: str) -> None:
        async with self._lock:
            self._dedup.pop(key, None)

    # ========================================================================
    # Executions
    # ========================================================================

    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        async with self._lock:
            if execution.triggering_event_id not in self._events:
                raise StorageError(
                    f"Cannot create execution {execution.id}: "
                    f"unknown event {execution.triggering_event_id}"
                )

            pair = execution.dedup_pair
            existing_id = self._pairs.get(pair)
            if existing_id is not None:
                return self._executions[existing_id], False

            if execution.id in self._executions:
                raise StorageError(f"Execution id already exists: {execution.id}")

            self._executions[execution.id] = execution
            self._pairs[pair] = execution.id

            # NOTE: We do NOT clear the event here. The dispatcher clears it upon waking.
            self._work_notify.set()
            return execution, True

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self._lock:
            return self._executions.get(execution_id)

    async def find_execution(
        self, action_link_id: str, triggering_event_id: str
    ) -> Execution | None:
        async with self._lock:
            execution_id = self._pairs.get((action_link_id, triggering_event_id))
            return self._executions.get(execution_id) if execution_id else None

    def _claim_locked(self, execution: Execution, worker_id: str, now: datetime) -> Execution:
        claimed = execution.evolve(
            status=ExecutionStatus.RUNNING,
            attempt=execution.attempt + 1,
            locked_by=worker_id,
            first_attempt_at=execution.first_attempt_at or now,
            last_attempt_at=now,
            next_retry_at=None,
        )
        self._executions[execution.id] = claimed
        return claimed

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or not execution.is_due(now):
                return None
            return self._claim_locked(execution, worker_id, now)

    async def claim_next(self, worker_id: str, now: datetime) -> Execution | None:
        async with self._lock:
            due = [e for e in self._executions.values() if e.is_due(now)]
            if not due:
                return None

            due.sort(key=lambda e: (e.next_retry_at or e.created_at, e.created_at))
            claimed = self._claim_locked(due[0], worker_id, now)

            # Daisy-chain: if more work is due, make sure another dispatcher wakes up
            if len(due) > 1:
                self._work_notify.set()
            return claimed

    async def transition_execution(
        self,
        execution_id: str,
        from_statuses: Iterable[ExecutionStatus],
        to_status: ExecutionStatus,
        now: datetime,
        *,
        expected_attempt: int | None = None,
        expected_worker: str | None = None,
        result_payload: dict[str, Any] | None = None,
        error_detail: dict[str, Any] | None = None,
        next_retry_at: datetime | None = None,
    ) -> Execution | None:
        allowed = frozenset(from_statuses)
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status not in allowed:
                return None
            if expected_attempt is not None and execution.attempt != expected_attempt:
                return None
            if expected_worker is not None and execution.locked_by != expected_worker:
                return None

            updated = execution.evolve(
                status=to_status,
                locked_by=None,
                next_retry_at=next_retry_at if to_status == ExecutionStatus.RETRYING else None,
                finished_at=now if to_status.is_terminal else execution.finished_at,
                result_payload=(
                    result_payload if result_payload is not None else execution.result_payload
                ),
                error_detail=error_detail if error_detail is not None else execution.error_detail,
            )
            self._executions[execution_id] = updated

            if to_status == ExecutionStatus.RETRYING:
                self._work_notify.set()
            return updated

    async def cancel_area_executions(self, area_id: str, now: datetime) -> list[str]:
        async with self._lock:
            cancelled = []
            for execution in list(self._executions.values()):
                if execution.area_id != area_id or not execution.status.is_claimable:
                    continue
                self._executions[execution.id] = execution.evolve(
                    status=ExecutionStatus.CANCELLED,
                    next_retry_at=None,
                    finished_at=now,
                )
                cancelled.append(execution.id)
            return cancelled

    async def list_executions(
        self,
        area_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        wanted = frozenset(statuses) if statuses is not None else None
        async with self._lock:
            result = [
                e
                for e in self._executions.values()
                if (area_id is None or e.area_id == area_id)
                and (since is None or e.created_at >= since)
                and (until is None or e.created_at < until)
                and (wanted is None or e.status in wanted)
            ]
        result.sort(key=lambda e: e.created_at)
        return result

    async def find_stale_executions(self, started_before: datetime) -> list[Execution]:
        async with self._lock:
            return [
                e
                for e in self._executions.values()
                if e.status == ExecutionStatus.RUNNING
                and e.last_attempt_at is not None
                and e.last_attempt_at < started_before
            ]

    async def get_next_retry_time(self) -> datetime | None:
        async with self._lock:
            times = [
                e.next_retry_at
                for e in self._executions.values()
                if e.status == ExecutionStatus.RETRYING and e.next_retry_at is not None
            ]
            return min(times) if times else None

    async def count_by_status(self) -> dict[ExecutionStatus, int]:
        async with self._lock:
            counts = empty_status_counts()
            for execution in self._executions.values():
                counts[execution.status] += 1
            return counts

    async def reset(self) -> None:
        async with self._lock:
            self._events.clear()
            self._dedup.clear()
            self._executions.clear()
            self._pairs.clear()
            self._work_notify.clear()

    async def close(self) -> None:
        pass

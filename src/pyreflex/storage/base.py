"""
ExecutionStore - Abstract interface for durable storage backends.

Design Pattern: Adapter Pattern
ExecutionStore defines the target interface that all storage adapters
implement. Different backends (SQLite, Redis, Memory) adapt to this
common interface.

Design Principle: Dependency Inversion (SOLID)
High-level modules (Deduplicator, ExecutionTracker, Dispatcher) depend on
this abstraction, not on concrete storage implementations.

The store is the single source of truth for Events, dedup keys and
Execution state. Every cross-worker coordination point is one of three
atomic primitives:

1. check-and-set of a dedup key with optional TTL
2. conditional state transition of an Execution keyed by id
3. durable append of Event and Execution records
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from pyreflex.models import Event, Execution, ExecutionStatus


class StorageError(Exception):
    """
    Storage operation failed.

    Adapters wrap driver exceptions in this type so callers handle one
    error class regardless of backend.
    """

    pass


class ExecutionStore(ABC):
    """
    Abstract storage interface for the orchestration core.

    Conditional operations return ``None``/``False`` when their guard does
    not hold. Losing a race is a normal outcome, not an exception.
    """

    # ========================================================================
    # Event Operations
    # ========================================================================

    @abstractmethod
    async def append_event(self, event: Event) -> None:
        """
        Durably append an accepted Event.

        Appending the same event id twice is a no-op (events are immutable).

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> Event | None:
        """Retrieve an Event by id, None if it was never appended."""
        pass

    # ========================================================================
    # Dedup Operations
    # ========================================================================

    @abstractmethod
    async def check_and_set_dedup(
        self, key: str, now: datetime, ttl: timedelta | None = None
    ) -> bool:
        """
        Atomically record ``key`` as seen unless it is already live.

        A key is live if it was set without a TTL, or if ``now`` is before
        its expiry. Two concurrent calls with the same key must never both
        return True.

        Args:
            key: Namespaced dedup key
            now: Current time (explicit parameter for testability)
            ttl: Optional retention window; None keeps the key forever

        Returns:
            True if the key was newly recorded (event accepted),
            False if it was already live (duplicate)
        """
        pass

    @abstractmethod
    async def release_dedup(self, key: str) -> None:
        """
        Forget ``key`` so the next check-and-set accepts it again.

        Used when an admitted event could not be persisted. Releasing a
        key that is not recorded is a no-op.
        """
        pass

    # ========================================================================
    # Execution Operations
    # ========================================================================

    @abstractmethod
    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        """
        Insert a PENDING execution unless its (link, event) pair exists.

        Returns:
            (stored execution, created). When the pair already exists the
            existing execution is returned with created=False.
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution snapshot by id."""
        pass

    @abstractmethod
    async def find_execution(
        self, action_link_id: str, triggering_event_id: str
    ) -> Execution | None:
        """Retrieve the execution for a (link, event) pair, if any."""
        pass

    @abstractmethod
    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        """
        Atomically move one due PENDING/RETRYING execution to RUNNING.

        On success the attempt counter is incremented, ``locked_by`` is set
        and ``last_attempt_at`` is stamped. Two workers racing on the same id
        cannot both succeed.

        Returns:
            The claimed execution, or None if it was not claimable
        """
        pass

    @abstractmethod
    async def claim_next(self, worker_id: str, now: datetime) -> Execution | None:
        """
        Claim the oldest due execution, if any.

        Ordering: due time (next_retry_at, or created_at for PENDING), oldest
        first.
        """
        pass

    @abstractmethod
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
        """
        Compare-and-swap the status of one execution.

        The update applies only if the current status is in
        ``from_statuses`` and, when given, the attempt counter and lock
        holder match. Moving out of RUNNING clears ``locked_by``; moving to
        a terminal status stamps ``finished_at``.

        Not used for claiming (see claim_execution).

        Returns:
            The updated execution, or None if the guard did not hold
        """
        pass

    @abstractmethod
    async def cancel_area_executions(self, area_id: str, now: datetime) -> list[str]:
        """
        Cancel every PENDING/RETRYING execution of an Area.

        RUNNING executions are left untouched.

        Returns:
            Ids of the executions that were cancelled
        """
        pass

    @abstractmethod
    async def list_executions(
        self,
        area_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        """
        Audit query ordered by created_at ascending.

        ``since`` is inclusive, ``until`` exclusive.
        """
        pass

    @abstractmethod
    async def find_stale_executions(self, started_before: datetime) -> list[Execution]:
        """Return RUNNING executions whose current attempt began before the cutoff."""
        pass

    @abstractmethod
    async def get_next_retry_time(self) -> datetime | None:
        """
        Earliest next_retry_at across RETRYING executions.

        Used by dispatchers to sleep until a retry becomes due instead of
        polling at a fixed rate.
        """
        pass

    @abstractmethod
    async def count_by_status(self) -> dict[ExecutionStatus, int]:
        """Return the number of executions in every status (zeros included)."""
        pass

    # ========================================================================
    # Utility Operations
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        Warning: Destructive operation - only use in testing!
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage connections and clean up resources."""
        pass


def empty_status_counts() -> dict[ExecutionStatus, int]:
    return {status: 0 for status in ExecutionStatus}


# =============================================================================
# Notification Source Protocol - Event-Driven Storage
# =============================================================================


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for stores that can wake dispatchers when work appears.

    Not all backends can provide efficient notifications; dispatchers
    fall back to polling when a store does not implement this.

    Contract:
        1. Maintain an asyncio.Event for work notifications
        2. Call ``event.set()`` when an execution becomes claimable
           (create_execution, transition to RETRYING)
        3. Dispatchers ``await event.wait()`` and then ``event.clear()``

    Usage:
        if isinstance(store, WorkNotificationSource):
            await asyncio.wait_for(store.work_notify().wait(), timeout=poll_interval)
        else:
            await asyncio.sleep(poll_interval)
    """

    def work_notify(self) -> asyncio.Event:
        """Return event that signals when work becomes available."""
        ...

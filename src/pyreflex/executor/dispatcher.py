"""Dispatcher for claiming and running reaction executions.

Dispatchers claim due executions from the shared store, invoke the
reaction handler registered for ``(provider, action_type)`` in background
tasks, and record the outcome through the ExecutionTracker. Any number of
dispatchers (in one process or many) can share a store; the store's
conditional updates are the only coordination.

Features:
- Event-driven work polling with fallback
- Bounded concurrency (permit acquired before claiming)
- Per-execution handler timeout
- Retry decisions delegated to the RetryManager
- Stale RUNNING executions recovered as timed-out attempts
- Chained reactions re-published through a ReactionPublisher
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Protocol, runtime_checkable

from pyreflex.catalogue import Catalogue
from pyreflex.executor.handlers import HandlerRegistry
from pyreflex.executor.outcome import (
    Cancelled,
    ConcurrencyConflict,
    DispatchOutcome,
    HandlerError,
    HandlerFailure,
    HandlerTimeout,
    Retried,
    Succeeded,
    TerminalFailure,
    describe_failure,
)
from pyreflex.executor.retry import RetryAfter, RetryManager
from pyreflex.executor.tracker import ExecutionTracker
from pyreflex.models import Execution
from pyreflex.pipeline.mapping import DataMapper, PayloadMapper
from pyreflex.storage import WorkNotificationSource
from pyreflex.storage.base import ExecutionStore

logger = logging.getLogger(__name__)


class DispatcherError(Exception):
    """Dispatcher misconfiguration or misuse."""

    pass


@runtime_checkable
class ReactionPublisher(Protocol):
    """Receives successful results so chained reactions can re-enter the pipeline."""

    async def publish_result(self, execution: Execution, result: dict[str, Any]) -> Any:
        ...


def _poll_jitter(worker_id: str) -> float:
    # Spread idle polls of dispatchers started together
    worker_hash = sum(ord(c) for c in worker_id)
    return (1 + (worker_hash % 5)) / 1000.0


class Dispatcher:
    """Claims and runs executions from a shared store.

    Design Patterns:
    - Template Method: _run() defines fixed algorithm skeleton
    - Strategy: handlers, mapper and retry manager are interchangeable
    - Builder: with_*() methods for configuration

    Usage:
        store = SqliteExecutionStore("reflex.db")
        await store.connect()

        dispatcher = Dispatcher(store, catalogue, handlers, "dispatcher-1") \\
            .with_max_concurrent(20) \\
            .with_handler_timeout(30.0) \\
            .with_publisher(pipeline)

        handle = await dispatcher.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(
        self,
        store: ExecutionStore,
        catalogue: Catalogue,
        handlers: HandlerRegistry,
        worker_id: str,
        tracker: ExecutionTracker | None = None,
    ):
        """Initialize dispatcher with its collaborators.

        All dependencies passed explicitly, no globals.

        Args:
            store: Shared execution store
            catalogue: Source of instances (params) and links (mapping)
            handlers: Reaction capability table
            worker_id: Unique identifier, recorded as ``locked_by``
            tracker: Optional tracker (e.g. with an injected clock)
        """
        self._store = store
        self._catalogue = catalogue
        self._handlers = handlers
        self._worker_id = worker_id
        self._tracker = tracker or ExecutionTracker(store)

        self._retry = RetryManager()
        self._mapper: PayloadMapper = DataMapper()
        self._publisher: ReactionPublisher | None = None

        self._max_concurrent = 10
        self._permits = asyncio.Semaphore(self._max_concurrent)
        self._handler_timeout = 30.0
        self._stale_timeout = timedelta(minutes=5)
        self._maintenance_interval = 60.0

        self._poll_interval = 1.0
        self._poll_interval_with_jitter = self._poll_interval + _poll_jitter(worker_id)

        self._shutdown_event = asyncio.Event()
        self._running = False

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        # Claim channel (bounded to 1) so one dispatcher does not hoard work;
        # each item carries the execution whose permit is already held
        self._claim_queue: asyncio.Queue[Execution] = asyncio.Queue(maxsize=1)
        self._claim_task: asyncio.Task | None = None

        self._supports_work_notifications = isinstance(store, WorkNotificationSource)
        if self._supports_work_notifications:
            self._work_notify = store.work_notify()
            logger.debug(f"Dispatcher {worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Dispatcher {worker_id}: Polling-based work detection")

    def __repr__(self) -> str:
        return f"Dispatcher({self._worker_id!r}, store={self._store!r})"

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    @property
    def retry_manager(self) -> RetryManager:
        return self._retry

    # ========================================================================
    # Builder methods
    # ========================================================================

    def with_max_concurrent(self, max_concurrent: int) -> Dispatcher:
        """Limit concurrently running handlers (builder pattern).

        The permit is acquired BEFORE claiming, so a saturated dispatcher
        leaves due work for its peers.

        Args:
            max_concurrent: Maximum number of in-flight executions

        Returns:
            self for method chaining
        """
        if max_concurrent < 1:
            raise DispatcherError("max_concurrent must be at least 1")
        if self._running:
            raise DispatcherError("Cannot change concurrency of a running dispatcher")
        self._max_concurrent = max_concurrent
        self._permits = asyncio.Semaphore(max_concurrent)
        return self

    def with_poll_interval(self, interval: float) -> Dispatcher:
        """Configure the idle polling interval in seconds (builder pattern).

        With a notifying store this is only the fallback wake-up period.
        """
        self._poll_interval = interval
        self._poll_interval_with_jitter = interval + _poll_jitter(self._worker_id)
        return self

    def with_handler_timeout(self, timeout: float) -> Dispatcher:
        """Bound each handler invocation to ``timeout`` seconds (builder pattern)."""
        if timeout <= 0:
            raise DispatcherError("handler timeout must be positive")
        self._handler_timeout = timeout
        return self

    def with_retry_manager(self, retry_manager: RetryManager) -> Dispatcher:
        self._retry = retry_manager
        return self

    def with_mapper(self, mapper: PayloadMapper) -> Dispatcher:
        self._mapper = mapper
        return self

    def with_publisher(self, publisher: ReactionPublisher) -> Dispatcher:
        """Publish successful results for chained reactions (builder pattern)."""
        self._publisher = publisher
        return self

    def with_stale_timeout(
        self, timeout: timedelta, check_interval: float | None = None
    ) -> Dispatcher:
        """Treat RUNNING attempts older than ``timeout`` as timed out (builder pattern).

        Covers dispatchers that died mid-attempt. Should be well above the
        handler timeout.
        """
        self._stale_timeout = timeout
        if check_interval is not None:
            self._maintenance_interval = check_interval
        return self

    # ========================================================================
    # Single-shot API
    # ========================================================================

    async def process_next(self) -> DispatchOutcome | None:
        """Claim and run exactly one due execution.

        Returns:
            The outcome, or None if nothing was due
        """
        execution = await self._tracker.claim_next(self._worker_id)
        if execution is None:
            return None
        return await self.run_execution(execution)

    async def run_execution(self, execution: Execution) -> DispatchOutcome:
        """Run one execution this dispatcher has claimed and record the outcome."""
        if execution.locked_by != self._worker_id:
            raise DispatcherError(
                f"Execution {execution.id} is held by {execution.locked_by!r}, "
                f"not {self._worker_id!r}"
            )

        if not self._area_enabled(execution):
            # RUNNING -> CANCELLED is not a transition, so the attempt fails
            return await self._fail_terminal(
                execution,
                {
                    "type": "AreaDisabled",
                    "message": f"Area {execution.area_id} is disabled or removed",
                    "attempt": execution.attempt,
                },
                "area disabled",
            )

        handler = self._handlers.get(execution.provider, execution.action_type)
        if handler is None:
            return await self._fail_terminal(
                execution,
                {
                    "type": "MissingHandler",
                    "message": f"No handler registered for {execution.provider}/"
                    f"{execution.action_type}",
                    "attempt": execution.attempt,
                },
                "no handler registered",
            )

        event = await self._store.get_event(execution.triggering_event_id)
        if event is None:
            return await self._fail_terminal(
                execution,
                {
                    "type": "MissingEvent",
                    "message": f"Triggering event {execution.triggering_event_id} not found",
                    "attempt": execution.attempt,
                },
                "triggering event missing",
            )

        try:
            payload = self._build_payload(execution, event.raw_payload)
        except Exception as e:
            return await self._record_failure(execution, HandlerError(e))

        logger.debug(
            f"Dispatcher {self._worker_id} invoking {execution.provider}/"
            f"{execution.action_type} for execution {execution.id}"
        )

        try:
            result = await asyncio.wait_for(
                handler(execution.target_instance_id, payload),
                timeout=self._handler_timeout,
            )
        except TimeoutError:
            return await self._record_failure(execution, HandlerTimeout(self._handler_timeout))
        except Exception as e:
            return await self._record_failure(execution, HandlerError(e))

        if result is not None and not isinstance(result, Mapping):
            return await self._record_failure(
                execution,
                HandlerError(
                    TypeError(f"Handler returned {type(result).__name__}, expected a mapping")
                ),
            )

        return await self._record_success(execution, result)

    def _area_enabled(self, execution: Execution) -> bool:
        area = self._catalogue.get_area(execution.area_id)
        return area is not None and area.enabled

    def _build_payload(self, execution: Execution, trigger_payload: dict[str, Any]) -> dict:
        """Instance params overlaid with the mapped trigger payload."""
        link = self._catalogue.get_link(execution.action_link_id)
        mapped = self._mapper.map(trigger_payload, link.mapping if link else None)

        instance = self._catalogue.get_instance(execution.target_instance_id)
        params = dict(instance.params) if instance is not None else {}
        params.update(mapped)
        return params

    # ========================================================================
    # Outcome recording
    # ========================================================================

    async def _record_success(
        self, execution: Execution, result: Mapping[str, Any] | None
    ) -> DispatchOutcome:
        result_payload = dict(result) if result is not None else {}

        updated = await self._tracker.succeed(execution, result_payload)
        if isinstance(updated, ConcurrencyConflict):
            logger.info(
                f"Dispatcher {self._worker_id} finished execution {execution.id} "
                "but no longer holds it (recovered as stale?)"
            )
            return updated

        logger.info(
            f"Dispatcher {self._worker_id} completed execution {execution.id} "
            f"(attempt {updated.attempt})"
        )

        if self._publisher is not None:
            try:
                await self._publisher.publish_result(updated, result_payload)
            except Exception as e:
                logger.error(
                    f"Dispatcher {self._worker_id} failed to publish chained result "
                    f"of execution {execution.id}: {e}"
                )

        return Succeeded(updated)

    async def _record_failure(
        self, execution: Execution, failure: HandlerFailure
    ) -> DispatchOutcome:
        now = self._tracker.now()
        error_class = self._retry.classify(failure)
        elapsed = now - (execution.first_attempt_at or now)
        decision = self._retry.decide(execution.attempt, error_class, elapsed)

        error_detail = describe_failure(failure, execution.attempt)
        error_detail["error_class"] = str(error_class)

        if isinstance(decision, RetryAfter):
            next_retry_at = now + decision.delay
            updated = await self._tracker.schedule_retry(execution, next_retry_at, error_detail)
            if isinstance(updated, ConcurrencyConflict):
                return updated

            # The Area may have been disabled while this attempt was RUNNING
            if not self._area_enabled(updated):
                cancelled = await self._tracker.cancel(updated.id)
                if isinstance(cancelled, ConcurrencyConflict):
                    return cancelled
                logger.info(
                    f"Dispatcher {self._worker_id} cancelled execution {execution.id}: "
                    f"area {execution.area_id} disabled, error={failure}"
                )
                return Cancelled(cancelled)

            logger.info(
                f"Dispatcher {self._worker_id} retrying execution {execution.id}: "
                f"attempt={execution.attempt}, delay={decision.delay_ms}ms, error={failure}"
            )
            return Retried(updated, decision.delay_ms, failure)

        return await self._fail_terminal(execution, error_detail, decision.reason)

    async def _fail_terminal(
        self, execution: Execution, error_detail: dict[str, Any], reason: str
    ) -> DispatchOutcome:
        error_detail = {**error_detail, "reason": reason}
        updated = await self._tracker.fail(execution, error_detail)
        if isinstance(updated, ConcurrencyConflict):
            return updated

        logger.error(
            f"Dispatcher {self._worker_id} execution {execution.id} failed terminally "
            f"after {execution.attempt} attempt(s): {reason} ({error_detail.get('message')})"
        )
        return TerminalFailure(updated, reason)

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def recover_stale(self) -> list[DispatchOutcome]:
        """Record RUNNING attempts older than the stale timeout as timed out.

        Each stale execution goes through the normal failure path (retry or
        terminal), guarded by its observed attempt and lock holder, so a
        late finish by the original holder and the recovery cannot both win.
        """
        cutoff = self._tracker.now() - self._stale_timeout
        outcomes = []
        for execution in await self._tracker.find_stale(cutoff):
            logger.warning(
                f"Dispatcher {self._worker_id} recovering stale execution {execution.id} "
                f"(held by {execution.locked_by}, attempt {execution.attempt})"
            )
            timeout_s = self._stale_timeout.total_seconds()
            outcomes.append(await self._record_failure(execution, HandlerTimeout(timeout_s)))
        return outcomes

    async def _idle_wait(self) -> None:
        """Wait for new work, a due retry or the poll interval, whichever is first."""
        timeout = self._poll_interval_with_jitter
        try:
            next_retry = await self._tracker.next_retry_time()
        except Exception as e:
            logger.debug(f"Dispatcher {self._worker_id}: next retry lookup failed: {e}")
            next_retry = None

        if next_retry is not None:
            until_retry = (next_retry - self._tracker.now()).total_seconds()
            timeout = max(0.0, min(timeout, until_retry))

        if self._supports_work_notifications:
            try:
                await asyncio.wait_for(self._work_notify.wait(), timeout=timeout)
                self._work_notify.clear()
            except TimeoutError:
                pass
        else:
            # No notification support - sleep to avoid tight loop
            await asyncio.sleep(timeout)

    # ========================================================================
    # Main loop
    # ========================================================================

    async def start(self) -> DispatcherHandle:
        """Start the dispatcher main loop.

        Returns DispatcherHandle immediately, letting caller decide
        whether to await or run concurrently.
        """
        if self._handlers.is_empty():
            logger.warning(f"Dispatcher {self._worker_id} started with no handlers registered")
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return DispatcherHandle(self, task)

    async def _background_claim_loop(self) -> None:
        """Background task that claims executions and puts them in a bounded queue.

        Backpressure strategy:
        1. Acquire a permit BEFORE claiming
        2. Claim from the store
        3. Hand the execution to the main loop, which releases the permit
           when the execution finishes

        Runs until cancelled.
        """
        while self._running and not self._shutdown_event.is_set():
            holding = False
            try:
                await self._permits.acquire()
                holding = True

                execution = await self._tracker.claim_next(self._worker_id)

                if execution is not None:
                    await self._claim_queue.put(execution)
                    holding = False  # Transferred ownership to the main loop
                else:
                    self._permits.release()
                    holding = False
                    await self._idle_wait()

            except asyncio.CancelledError:
                if holding:
                    self._permits.release()
                raise
            except Exception as e:
                if holding:
                    self._permits.release()
                logger.error(f"Dispatcher {self._worker_id} claim error: {e}")
                await asyncio.sleep(0.1)

    async def _run(self) -> None:
        """Main loop using asyncio.wait with FIRST_COMPLETED.

        Concurrently waits on:
        1. Shutdown signal
        2. Claimed execution (from the background claim task)
        3. Maintenance tick (stale execution recovery)
        """
        logger.info(f"Dispatcher {self._worker_id} started")

        self._claim_task = asyncio.create_task(self._background_claim_loop())
        maintenance_task: asyncio.Task | None = None

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    # The maintenance tick outlives iterations so a busy queue cannot starve it
                    if maintenance_task is None or maintenance_task.done():
                        maintenance_task = asyncio.create_task(
                            asyncio.sleep(self._maintenance_interval)
                        )

                    pending_tasks = {
                        "shutdown": asyncio.create_task(self._shutdown_event.wait()),
                        "claim": asyncio.create_task(self._claim_queue.get()),
                        "maintenance": maintenance_task,
                    }

                    done, pending = await asyncio.wait(
                        pending_tasks.values(),
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                    for task in pending:
                        if task is maintenance_task:
                            continue
                        task.cancel()
                        try:
                            await task
                        except asyncio.CancelledError:
                            pass

                    for name, task in pending_tasks.items():
                        if task not in done:
                            continue

                        try:
                            result = task.result()
                        except Exception as task_error:
                            logger.error(
                                f"Dispatcher {self._worker_id}: Task '{name}' failed: {task_error}"
                            )
                            continue

                        if name == "shutdown":
                            logger.debug(f"Dispatcher {self._worker_id}: Shutdown signal received")

                        elif name == "claim":
                            self._claim_queue.task_done()
                            background = asyncio.create_task(self._execute(result))
                            self._background_tasks.add(background)
                            background.add_done_callback(self._background_tasks.discard)

                        elif name == "maintenance":
                            try:
                                recovered = await self.recover_stale()
                                if recovered:
                                    logger.info(
                                        f"Dispatcher {self._worker_id} recovered "
                                        f"{len(recovered)} stale execution(s)"
                                    )
                            except Exception as e:
                                logger.warning(
                                    f"Dispatcher {self._worker_id} failed to recover "
                                    f"stale executions: {e}"
                                )

                except Exception as e:
                    logger.error(f"Dispatcher {self._worker_id} error: {e}")
        finally:
            if maintenance_task is not None and not maintenance_task.done():
                maintenance_task.cancel()
                try:
                    await maintenance_task
                except asyncio.CancelledError:
                    pass
            logger.info(f"Dispatcher {self._worker_id} stopped")

    async def _execute(self, execution: Execution) -> None:
        """Run one claimed execution, releasing its permit afterwards."""
        try:
            await self.run_execution(execution)
        except Exception as e:
            # Execution stays RUNNING; stale recovery will pick it up
            logger.error(
                f"Dispatcher {self._worker_id} unexpected error: "
                f"execution={execution.id}, error={e}"
            )
        finally:
            self._permits.release()

    async def shutdown(self) -> None:
        """Gracefully shutdown the dispatcher.

        Stops claiming, then waits for in-flight executions to finish.
        Running attempts are never aborted.
        """
        logger.info(f"Dispatcher {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._claim_task and not self._claim_task.done():
            self._claim_task.cancel()
            try:
                await self._claim_task
            except asyncio.CancelledError:
                pass

        # A claim handed off but not yet picked up by the main loop still runs
        while not self._claim_queue.empty():
            execution = self._claim_queue.get_nowait()
            self._claim_queue.task_done()
            background = asyncio.create_task(self._execute(execution))
            self._background_tasks.add(background)
            background.add_done_callback(self._background_tasks.discard)

        if self._background_tasks:
            logger.info(
                f"Dispatcher {self._worker_id}: Waiting for {len(self._background_tasks)} "
                "in-flight execution(s) to complete..."
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
            logger.info(f"Dispatcher {self._worker_id}: All in-flight executions completed")


class DispatcherHandle:
    """Handle for controlling a running dispatcher.

    Composition - handle HAS-A dispatcher, not IS-A dispatcher.

    Usage:
        handle = await dispatcher.start()
        await handle.shutdown()
    """

    def __init__(self, dispatcher: Dispatcher, task: asyncio.Task):
        self._dispatcher = dispatcher
        self._task = task

    def worker_id(self) -> str:
        return self._dispatcher.worker_id

    def is_running(self) -> bool:
        """Return True if the dispatcher task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown dispatcher and wait for completion."""
        await self._dispatcher.shutdown()
        await self._task

        logger.info("Dispatcher handle closed")

    def abort(self) -> None:
        """Abort the dispatcher immediately without waiting for completion.

        In-flight executions stay RUNNING until stale recovery picks them up.
        Prefer shutdown() for normal termination.
        """
        self._task.cancel()
        self._dispatcher._running = False
        if self._dispatcher._claim_task is not None:
            self._dispatcher._claim_task.cancel()

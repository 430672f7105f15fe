"""
End-to-end tests for the Dispatcher.

Deliveries go through the Pipeline, executions are run by one or more
Dispatchers against the shared store, and outcomes are checked on the
stored executions.
"""

import asyncio
from collections import Counter
from datetime import timedelta

import pytest

from conftest import AREA_ID, DISCORD_ID, issue_payload
from pyreflex.catalogue import InMemoryCatalogue
from pyreflex.executor import (
    Cancelled,
    ConcurrencyConflict,
    Dispatcher,
    DispatcherError,
    HandlerRegistry,
    HandlerTimeout,
    Retried,
    RetryManager,
    Succeeded,
    TerminalFailure,
)
from pyreflex.models import (
    ActionDefinition,
    ActionInstance,
    ActionLink,
    Area,
    ExecutionStatus,
    RetryPolicy,
    Webhook,
)
from pyreflex.pipeline import Ingested, MalformedInput, Pipeline

IMMEDIATE_RETRY = RetryPolicy(
    max_attempts=5, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)


class Recorder:
    """Reaction handler that records calls and can fail on demand."""

    def __init__(self, result=None, failures=None, delay=0.0):
        self.calls = []
        self.result = result if result is not None else {"message_id": "m-1"}
        self.failures = list(failures or [])
        self.delay = delay

    async def __call__(self, instance_id, payload):
        self.calls.append((instance_id, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return self.result


@pytest.fixture
def pipeline(store, catalogue) -> Pipeline:
    return Pipeline(store, catalogue)


@pytest.fixture
def discord() -> Recorder:
    return Recorder()


@pytest.fixture
def slack() -> Recorder:
    return Recorder(result={"ts": "1700000000.0001"})


@pytest.fixture
def handlers(discord, slack) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("discord", "send_message", discord)
    registry.register("slack", "post_message", slack)
    return registry


def make_dispatcher(store, catalogue, handlers, worker_id="dispatcher-1", policy=IMMEDIATE_RETRY):
    return Dispatcher(store, catalogue, handlers, worker_id).with_retry_manager(
        RetryManager(policy)
    )


async def drain(dispatcher: Dispatcher, limit: int = 20) -> list:
    """Run process_next until nothing is due."""
    outcomes = []
    for _ in range(limit):
        outcome = await dispatcher.process_next()
        if outcome is None:
            break
        outcomes.append(outcome)
    return outcomes


async def wait_for_terminal(tracker, expected: int, timeout: float = 5.0) -> None:
    async def check():
        while True:
            stats = await tracker.statistics()
            done = (
                stats[ExecutionStatus.SUCCEEDED]
                + stats[ExecutionStatus.FAILED]
                + stats[ExecutionStatus.CANCELLED]
            )
            if done >= expected:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(check(), timeout=timeout)


# ==============================================================================
# Scenarios
# ==============================================================================


@pytest.mark.asyncio
async def test_fan_out_runs_each_reaction_once(
    store, catalogue, pipeline, handlers, discord, slack
):
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload(issue_id=7))

    assert isinstance(outcome, Ingested)
    assert len(outcome.executions) == 2
    assert {e.triggering_event_id for e in outcome.executions} == {outcome.event.id}

    results = await drain(make_dispatcher(store, catalogue, handlers))

    assert [type(r) for r in results] == [Succeeded, Succeeded]
    assert len(discord.calls) == 1 and len(slack.calls) == 1

    instance_id, payload = discord.calls[0]
    assert instance_id == DISCORD_ID
    assert payload == {"channel_id": "chan-42", "content": "New issue #7: Crash on start"}
    # No mapping: the trigger payload is passed through
    assert slack.calls[0][1]["issue"]["id"] == 7

    for execution in outcome.executions:
        stored = await pipeline.tracker.get(execution.id)
        assert stored.status == ExecutionStatus.SUCCEEDED
        assert stored.attempt == 1
    stored = await pipeline.tracker.find(f"{AREA_ID}:0->1", outcome.event.id)
    assert stored.result_payload == {"message_id": "m-1"}


@pytest.mark.asyncio
async def test_fail_twice_then_succeed(store, catalogue, pipeline, handlers, discord):
    discord.failures = [ConnectionError("reset"), ConnectionError("reset again")]
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    (execution,) = outcome.executions

    results = await drain(make_dispatcher(store, catalogue, handlers))

    assert [type(r) for r in results] == [Retried, Retried, Succeeded]
    stored = await pipeline.tracker.get(execution.id)
    assert stored.status == ExecutionStatus.SUCCEEDED
    assert stored.attempt == 3
    assert len(discord.calls) == 3
    # The last failure stays on record for audit
    assert stored.error_detail["message"] == "reset again"


@pytest.mark.asyncio
async def test_non_retryable_fails_on_first_attempt(store, catalogue, pipeline, handlers, discord):
    discord.failures = [ValueError("unknown channel")]
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    (execution,) = outcome.executions

    results = await drain(make_dispatcher(store, catalogue, handlers))

    assert len(results) == 1
    assert isinstance(results[0], TerminalFailure)
    stored = await pipeline.tracker.get(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.attempt == 1
    assert stored.error_detail["type"] == "ValueError"
    assert stored.error_detail["error_class"] == "NON_RETRYABLE"
    assert stored.result_payload is None


@pytest.mark.asyncio
async def test_retries_exhausted(store, catalogue, pipeline, handlers, discord):
    discord.failures = [ConnectionError("down")] * 5
    await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    policy = RetryPolicy(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0)

    results = await drain(make_dispatcher(store, catalogue, handlers, policy=policy))

    assert [type(r) for r in results] == [Retried, Retried, TerminalFailure]
    assert results[-1].execution.attempt == 3
    assert "max attempts" in results[-1].reason


@pytest.mark.asyncio
async def test_handler_timeout_is_retried(store, catalogue, pipeline, handlers, discord):
    discord.delay = 1.0
    await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    dispatcher = make_dispatcher(store, catalogue, handlers).with_handler_timeout(0.05)

    outcome = await dispatcher.process_next()

    assert isinstance(outcome, Retried)
    assert isinstance(outcome.failure, HandlerTimeout)
    assert outcome.execution.error_detail["type"] == "HandlerTimeout"


@pytest.mark.asyncio
async def test_missing_handler_is_terminal(store, catalogue, pipeline):
    await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))

    outcome = await make_dispatcher(store, catalogue, HandlerRegistry()).process_next()

    assert isinstance(outcome, TerminalFailure)
    assert outcome.reason == "no handler registered"
    assert outcome.execution.attempt == 1


@pytest.mark.asyncio
async def test_non_mapping_result_fails_without_retry(
    store, catalogue, pipeline, handlers, discord
):
    discord.result = "ok"
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    (execution,) = outcome.executions

    results = await drain(make_dispatcher(store, catalogue, handlers))

    assert [type(r) for r in results] == [TerminalFailure]
    stored = await pipeline.tracker.get(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.attempt == 1
    assert stored.error_detail["type"] == "TypeError"
    assert stored.error_detail["error_class"] == "NON_RETRYABLE"
    assert stored.result_payload is None


@pytest.mark.asyncio
async def test_area_disabled_mid_attempt_is_not_retried(store, catalogue, pipeline):
    calls = []

    async def send_message(instance_id, payload):
        calls.append(instance_id)
        catalogue.set_area_enabled(AREA_ID, False)
        raise ConnectionError("reset")

    registry = HandlerRegistry()
    registry.register("discord", "send_message", send_message)
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    (execution,) = outcome.executions
    dispatcher = make_dispatcher(store, catalogue, registry)

    first = await dispatcher.process_next()

    assert isinstance(first, Cancelled)
    assert first.execution.status == ExecutionStatus.CANCELLED
    assert await dispatcher.process_next() is None
    assert len(calls) == 1
    stored = await pipeline.tracker.get(execution.id)
    assert stored.status == ExecutionStatus.CANCELLED
    assert stored.error_detail["message"] == "reset"


@pytest.mark.asyncio
async def test_claimed_execution_of_disabled_area_skips_handler(
    store, catalogue, pipeline, handlers, discord
):
    await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    claimed = await pipeline.tracker.claim_next("dispatcher-1")
    catalogue.set_area_enabled(AREA_ID, False)

    outcome = await make_dispatcher(store, catalogue, handlers).run_execution(claimed)

    assert isinstance(outcome, TerminalFailure)
    assert outcome.reason == "area disabled"
    assert outcome.execution.status == ExecutionStatus.FAILED
    assert outcome.execution.error_detail["type"] == "AreaDisabled"
    assert discord.calls == []


@pytest.mark.asyncio
async def test_disable_area_cancels_waiting_executions(store, catalogue, pipeline, handlers):
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload())

    cancelled = await pipeline.disable_area(AREA_ID)

    assert sorted(cancelled) == sorted(e.id for e in outcome.executions)
    assert await make_dispatcher(store, catalogue, handlers).process_next() is None
    # New deliveries no longer resolve
    again = await pipeline.ingest("github", "issue_opened", issue_payload(issue_id=8))
    assert not isinstance(again, Ingested)


@pytest.mark.asyncio
async def test_run_execution_requires_lock(store, catalogue, pipeline, handlers):
    outcome = await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))
    with pytest.raises(DispatcherError):
        await make_dispatcher(store, catalogue, handlers).run_execution(outcome.executions[0])


@pytest.mark.asyncio
async def test_stale_execution_recovered_as_timeout(in_memory_store, catalogue, handlers, discord):
    pipeline = Pipeline(in_memory_store, catalogue)
    await pipeline.ingest("github", "issue_opened", issue_payload(label="question"))

    # A dispatcher that died mid-attempt
    abandoned = await pipeline.tracker.claim_next("dead-dispatcher")
    await asyncio.sleep(0.01)

    dispatcher = make_dispatcher(in_memory_store, catalogue, handlers).with_stale_timeout(
        timedelta(0)
    )
    recovered = await dispatcher.recover_stale()

    assert len(recovered) == 1
    assert isinstance(recovered[0], Retried)
    assert isinstance(recovered[0].failure, HandlerTimeout)

    outcome = await dispatcher.process_next()
    assert isinstance(outcome, Succeeded)
    assert outcome.execution.id == abandoned.id
    assert outcome.execution.attempt == 2

    # The late finish of the dead dispatcher is rejected
    late = await pipeline.tracker.succeed(abandoned, {"late": True})
    assert isinstance(late, ConcurrencyConflict)


# ==============================================================================
# Chained reactions
# ==============================================================================


def chained_catalogue() -> InMemoryCatalogue:
    """github/issue_opened -> discord/send_message -> slack/post_message"""
    area = "area-chain"
    catalogue = InMemoryCatalogue()
    catalogue.register_definition(
        ActionDefinition("github", "issue_opened", natural_key="issue.id")
    ).register_definition(
        ActionDefinition("discord", "send_message", is_trigger=False, is_executable=True)
    ).register_definition(
        ActionDefinition("slack", "post_message", is_trigger=False, is_executable=True)
    )
    catalogue.add_area(
        Area(
            area,
            instances=[
                ActionInstance("c-0", area, "github", "issue_opened", 0, activation_mode=Webhook()),
                ActionInstance("c-1", area, "discord", "send_message", 1),
                ActionInstance("c-2", area, "slack", "post_message", 2),
            ],
            links=[
                ActionLink(area, 0, 1),
                ActionLink(
                    area,
                    1,
                    2,
                    mapping={
                        "text": {
                            "type": "template",
                            "template": "posted {{trigger_result.message_id}}",
                        }
                    },
                ),
            ],
        )
    )
    return catalogue


@pytest.mark.asyncio
async def test_chained_reaction_reenters_pipeline(store, handlers, slack):
    catalogue = chained_catalogue()
    pipeline = Pipeline(store, catalogue)
    dispatcher = make_dispatcher(store, catalogue, handlers).with_publisher(pipeline)

    await pipeline.ingest("github", "issue_opened", issue_payload(issue_id=3))
    results = await drain(dispatcher)

    assert [type(r) for r in results] == [Succeeded, Succeeded]
    assert slack.calls == [("c-2", {"text": "posted m-1"})]

    chained = results[1].execution
    event = await store.get_event(chained.triggering_event_id)
    assert event.chain_depth == 1
    assert event.source_service == "discord"
    assert event.raw_payload["trigger_result"] == {"message_id": "m-1"}


@pytest.mark.asyncio
async def test_chain_depth_limit(store, handlers, slack):
    catalogue = chained_catalogue()
    pipeline = Pipeline(store, catalogue).with_max_chain_depth(0)
    dispatcher = make_dispatcher(store, catalogue, handlers).with_publisher(pipeline)

    await pipeline.ingest("github", "issue_opened", issue_payload(issue_id=3))
    results = await drain(dispatcher)

    assert [type(r) for r in results] == [Succeeded]
    assert slack.calls == []

    rejected = await pipeline.publish_result(results[0].execution, {"message_id": "m-1"})
    assert isinstance(rejected, MalformedInput)


# ==============================================================================
# Background loop
# ==============================================================================


@pytest.mark.asyncio
async def test_dispatcher_loop_processes_and_shuts_down(store, catalogue, pipeline, handlers):
    dispatcher = make_dispatcher(store, catalogue, handlers).with_poll_interval(0.05)
    handle = await dispatcher.start()
    assert handle.is_running()
    assert handle.worker_id() == "dispatcher-1"

    await pipeline.ingest("github", "issue_opened", issue_payload())
    await wait_for_terminal(pipeline.tracker, 2)

    await handle.shutdown()
    assert not handle.is_running()
    stats = await pipeline.tracker.statistics()
    assert stats[ExecutionStatus.SUCCEEDED] == 2


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_multiple_dispatchers_run_each_execution_once(store, catalogue, pipeline):
    """
    Race Condition Test: three dispatchers share one store.

    Every execution succeeds exactly once and its handler runs exactly once.
    """
    calls = Counter()

    async def send_message(instance_id, payload):
        calls[payload["content"]] += 1
        await asyncio.sleep(0.005)
        return {"message_id": payload["content"]}

    registry = HandlerRegistry()
    registry.register("discord", "send_message", send_message)

    handles = [
        await make_dispatcher(store, catalogue, registry, worker_id=f"dispatcher-{i}")
        .with_max_concurrent(3)
        .with_poll_interval(0.02)
        .start()
        for i in range(3)
    ]

    for issue_id in range(12):
        await pipeline.ingest(
            "github", "issue_opened", issue_payload(issue_id=issue_id, label="question")
        )

    try:
        await wait_for_terminal(pipeline.tracker, 12)
    finally:
        for handle in handles:
            await handle.shutdown()

    assert len(calls) == 12
    assert set(calls.values()) == {1}
    executions = await pipeline.tracker.list_for_area(AREA_ID)
    assert all(e.status == ExecutionStatus.SUCCEEDED and e.attempt == 1 for e in executions)


@pytest.mark.asyncio
async def test_stale_recovery_runs_under_steady_load(in_memory_store, catalogue, handlers):
    pipeline = Pipeline(in_memory_store, catalogue)
    await pipeline.ingest("github", "issue_opened", issue_payload(issue_id=1, label="question"))
    abandoned = await pipeline.tracker.claim_next("dead-dispatcher")
    await asyncio.sleep(0.06)

    dispatcher = (
        make_dispatcher(in_memory_store, catalogue, handlers)
        .with_poll_interval(0.01)
        .with_stale_timeout(timedelta(milliseconds=50), check_interval=0.1)
    )
    handle = await dispatcher.start()

    async def feed():
        # A new claim every 20ms keeps the main loop busy
        issue_id = 100
        while True:
            issue_id += 1
            await pipeline.ingest(
                "github", "issue_opened", issue_payload(issue_id=issue_id, label="question")
            )
            await asyncio.sleep(0.02)

    async def recovered():
        while (await pipeline.tracker.get(abandoned.id)).status != ExecutionStatus.SUCCEEDED:
            await asyncio.sleep(0.01)

    feeder = asyncio.create_task(feed())
    try:
        await asyncio.wait_for(recovered(), timeout=3.0)
    finally:
        feeder.cancel()
        try:
            await feeder
        except asyncio.CancelledError:
            pass
        await handle.shutdown()

    stored = await pipeline.tracker.get(abandoned.id)
    assert stored.attempt == 2
    assert stored.error_detail["type"] == "HandlerTimeout"

"""
Tests for the core data models.

Covers:
- ExecutionStatus transition table
- DedupStrategy validation
- RetryPolicy backoff calculation and environment configuration
- Cron activation schedule
- Execution due-ness
"""

import dataclasses
import random
from datetime import UTC, datetime, timedelta

import pytest

from conftest import T0, make_execution, seed_execution
from pyreflex.models import (
    Cron,
    DedupKind,
    DedupStrategy,
    ExecutionStatus,
    PermanentError,
    Poll,
    RetryableError,
    RetryPolicy,
)
from pyreflex.models.status import sources_for

# ==============================================================================
# ExecutionStatus
# ==============================================================================


def test_terminal_statuses_have_no_outgoing_transitions():
    for status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
        assert status.is_terminal
        for target in ExecutionStatus:
            assert not status.can_transition_to(target)


def test_running_is_only_reachable_from_claimable_states():
    assert sources_for(ExecutionStatus.RUNNING) == frozenset(
        {ExecutionStatus.PENDING, ExecutionStatus.RETRYING}
    )
    assert ExecutionStatus.PENDING.is_claimable
    assert ExecutionStatus.RETRYING.is_claimable
    assert not ExecutionStatus.RUNNING.is_claimable


def test_cancellation_sources():
    assert sources_for(ExecutionStatus.CANCELLED) == frozenset(
        {ExecutionStatus.PENDING, ExecutionStatus.RETRYING}
    )
    assert not ExecutionStatus.RUNNING.can_transition_to(ExecutionStatus.CANCELLED)


# ==============================================================================
# DedupStrategy
# ==============================================================================


def test_windowed_dedup_requires_positive_ttl():
    with pytest.raises(ValueError):
        DedupStrategy(DedupKind.BY_KEY_WINDOWED)
    with pytest.raises(ValueError):
        DedupStrategy.windowed(timedelta(0))

    strategy = DedupStrategy.windowed(timedelta(seconds=60))
    assert strategy.ttl == timedelta(seconds=60)
    assert str(strategy) == "BY_KEY_WINDOWED(60s)"


def test_unwindowed_dedup_rejects_ttl():
    with pytest.raises(ValueError):
        DedupStrategy(DedupKind.BY_KEY, ttl=timedelta(seconds=5))


# ==============================================================================
# RetryPolicy
# ==============================================================================


def test_standard_policy_defaults():
    policy = RetryPolicy.STANDARD
    assert policy.max_attempts == 10
    assert policy.initial_delay_ms == 5000
    assert policy.backoff_multiplier == 2.0
    assert policy.max_delay_ms == 300_000
    assert policy.max_elapsed_ms == 3_600_000


def test_backoff_grows_exponentially_and_caps():
    policy = RetryPolicy(
        max_attempts=20, initial_delay_ms=1000, max_delay_ms=10_000, backoff_multiplier=2.0
    )
    assert policy.delay_for_attempt(1) == 1000
    assert policy.delay_for_attempt(2) == 2000
    assert policy.delay_for_attempt(3) == 4000
    assert policy.delay_for_attempt(4) == 8000
    assert policy.delay_for_attempt(5) == 10_000
    assert policy.delay_for_attempt(15) == 10_000


def test_no_delay_once_attempts_exhausted():
    policy = RetryPolicy.with_max_attempts(3)
    assert policy.delay_for_attempt(2) is not None
    assert policy.delay_for_attempt(3) is None
    assert RetryPolicy.NONE.delay_for_attempt(1) is None


def test_jitter_stays_within_bounds():
    policy = RetryPolicy(
        max_attempts=5,
        initial_delay_ms=1000,
        max_delay_ms=10_000,
        backoff_multiplier=2.0,
        jitter=0.1,
    )
    rng = random.Random(42)
    for _ in range(200):
        delay = policy.delay_for_attempt(1, rng)
        assert 900 <= delay <= 1100


def test_invalid_policies_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0)
    with pytest.raises(ValueError):
        RetryPolicy(
            max_attempts=3, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0, jitter=1.5
        )


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("REFLEX_RETRY_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("REFLEX_RETRY_INITIAL_DELAY_MS", "250")
    monkeypatch.setenv("REFLEX_RETRY_JITTER", "0")

    policy = RetryPolicy.from_env()

    assert policy.max_attempts == 4
    assert policy.initial_delay_ms == 250
    assert policy.jitter == 0.0
    assert policy.max_delay_ms == RetryPolicy.STANDARD.max_delay_ms


def test_error_hints():
    assert RetryableError("blip").is_retryable()
    assert not PermanentError("bad config").is_retryable()


# ==============================================================================
# Activation modes
# ==============================================================================


def test_cron_next_fire_time():
    cron = Cron("0 2 * * *")
    assert cron.next_fire_time(T0) == datetime(2026, 1, 16, 2, 0, tzinfo=UTC)


def test_cron_next_fire_time_in_timezone():
    cron = Cron("0 9 * * *", timezone="Europe/Berlin")
    # 09:00 CET is 08:00 UTC in January
    assert cron.next_fire_time(T0) == datetime(2026, 1, 16, 8, 0, tzinfo=UTC)


def test_invalid_modes_rejected():
    with pytest.raises(ValueError):
        Cron("not a schedule")
    with pytest.raises(ValueError):
        Poll(interval=timedelta(0))


# ==============================================================================
# Execution
# ==============================================================================


def test_execution_due_only_after_next_retry_at():
    execution = make_execution().evolve(
        status=ExecutionStatus.RETRYING, next_retry_at=T0 + timedelta(seconds=30)
    )
    assert not execution.is_due(T0)
    assert execution.is_due(T0 + timedelta(seconds=30))

    running = execution.evolve(status=ExecutionStatus.RUNNING, next_retry_at=None)
    assert not running.is_due(T0 + timedelta(days=1))


@pytest.mark.asyncio
async def test_stored_execution_snapshots_are_immutable(in_memory_store):
    execution, _ = await in_memory_store.create_execution(
        await seed_execution(in_memory_store)
    )

    with pytest.raises(dataclasses.FrozenInstanceError):
        execution.status = ExecutionStatus.SUCCEEDED

    evolved = execution.evolve(attempt=5)
    assert evolved.attempt == 5
    stored = await in_memory_store.get_execution(execution.id)
    assert stored.status == ExecutionStatus.PENDING
    assert stored.attempt == 0

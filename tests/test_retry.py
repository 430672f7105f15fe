"""
Tests for the RetryManager classification and decisions.
"""

import random
from datetime import timedelta

import pytest

from pyreflex.executor import (
    ErrorClass,
    HandlerError,
    HandlerTimeout,
    RetryAfter,
    RetryManager,
    Terminal,
)
from pyreflex.models import PermanentError, RetryableError, RetryPolicy


class ChannelError(RetryableError):
    def __init__(self, message: str, retryable: bool):
        super().__init__(message)
        self._retryable = retryable

    def is_retryable(self) -> bool:
        return self._retryable


@pytest.fixture
def manager() -> RetryManager:
    return RetryManager(
        RetryPolicy(
            max_attempts=3,
            initial_delay_ms=1000,
            max_delay_ms=60_000,
            backoff_multiplier=2.0,
            max_elapsed_ms=10_000,
        )
    )


@pytest.mark.parametrize(
    "failure, expected",
    [
        (HandlerTimeout(30.0), ErrorClass.RETRYABLE),
        (HandlerError(TimeoutError()), ErrorClass.RETRYABLE),
        (HandlerError(ConnectionError("reset by peer")), ErrorClass.RETRYABLE),
        (HandlerError(RuntimeError("503 service unavailable")), ErrorClass.RETRYABLE),
        (HandlerError(ValueError("bad channel id")), ErrorClass.NON_RETRYABLE),
        (HandlerError(KeyError("channel_id")), ErrorClass.NON_RETRYABLE),
        (HandlerError(PermissionError("no scope")), ErrorClass.NON_RETRYABLE),
        (HandlerError(RuntimeError("401 Authentication required")), ErrorClass.NON_RETRYABLE),
        (HandlerError(RuntimeError("Forbidden")), ErrorClass.NON_RETRYABLE),
        (HandlerError(RuntimeError("channel not found")), ErrorClass.NON_RETRYABLE),
        (HandlerError(ChannelError("gateway timeout", retryable=True)), ErrorClass.RETRYABLE),
        (HandlerError(ChannelError("unknown", retryable=False)), ErrorClass.NON_RETRYABLE),
        (HandlerError(PermanentError("misconfigured")), ErrorClass.NON_RETRYABLE),
    ],
)
def test_classify(manager, failure, expected):
    assert manager.classify(failure) == expected


def test_hint_beats_type():
    class RetryableValueError(ValueError):
        def is_retryable(self) -> bool:
            return True

    assert RetryManager().classify(RetryableValueError("x")) == ErrorClass.RETRYABLE


def test_non_retryable_is_always_terminal(manager):
    decision = manager.decide(1, ErrorClass.NON_RETRYABLE)
    assert isinstance(decision, Terminal)
    assert decision.reason == "non-retryable error"


def test_retry_delays_follow_policy(manager):
    first = manager.decide(1, ErrorClass.RETRYABLE)
    second = manager.decide(2, ErrorClass.RETRYABLE)

    assert first == RetryAfter(timedelta(seconds=1))
    assert second == RetryAfter(timedelta(seconds=2))
    assert second.delay_ms == 2000


def test_max_attempts_is_terminal(manager):
    decision = manager.decide(3, ErrorClass.RETRYABLE)
    assert isinstance(decision, Terminal)
    assert "max attempts" in decision.reason


def test_elapsed_budget_is_terminal(manager):
    assert isinstance(
        manager.decide(1, ErrorClass.RETRYABLE, elapsed=timedelta(seconds=8)), RetryAfter
    )
    decision = manager.decide(2, ErrorClass.RETRYABLE, elapsed=timedelta(seconds=9))
    assert isinstance(decision, Terminal)
    assert "budget" in decision.reason


def test_standard_policy_jitter_window():
    manager = RetryManager(rng=random.Random(7))
    for _ in range(50):
        decision = manager.decide(1, ErrorClass.RETRYABLE)
        assert 4500 <= decision.delay_ms <= 5500


def test_from_env(monkeypatch):
    monkeypatch.setenv("REFLEX_RETRY_MAX_ATTEMPTS", "2")
    manager = RetryManager.from_env()
    assert manager.policy.max_attempts == 2
    assert isinstance(manager.decide(2, ErrorClass.RETRYABLE), Terminal)

"""
Retry Manager - the single place failure policy is decided.

Handlers never choose between retry and terminal failure. They raise,
optionally with a hint (``RetryableError.is_retryable()``), and the
dispatcher asks the RetryManager:

    error_class = manager.classify(failure)
    decision = manager.decide(execution.attempt, error_class, elapsed)

Classification:
    - errors exposing ``is_retryable()`` decide themselves
    - HandlerTimeout is retryable
    - ValueError, TypeError, PermissionError, LookupError and
      NotImplementedError are non-retryable (bad configuration or input)
    - messages mentioning authentication, authorization, credentials,
      access denied, forbidden, validation, bad/invalid request or
      not found are non-retryable
    - everything else is retryable (network blips, rate limits, 5xx)

Decision: NON_RETRYABLE is always Terminal. Otherwise the RetryPolicy
backoff applies until max_attempts or max_elapsed is exhausted.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from pyreflex.executor.outcome import HandlerError, HandlerFailure, HandlerTimeout
from pyreflex.models import RetryPolicy

logger = logging.getLogger(__name__)

NON_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    PermissionError,
    LookupError,
    NotImplementedError,
)

NON_RETRYABLE_MESSAGES: tuple[str, ...] = (
    "authentication",
    "authorization",
    "invalid credentials",
    "access denied",
    "forbidden",
    "validation",
    "invalid request",
    "bad request",
    "not found",
    "does not exist",
)


class ErrorClass(Enum):
    RETRYABLE = "RETRYABLE"
    NON_RETRYABLE = "NON_RETRYABLE"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryAfter:
    delay: timedelta

    @property
    def delay_ms(self) -> int:
        return int(self.delay.total_seconds() * 1000)


@dataclass(frozen=True)
class Terminal:
    reason: str


RetryDecision = RetryAfter | Terminal


class RetryManager:
    """
    Turns (attempt, error class, elapsed time) into a decision.

    Args:
        policy: Backoff curve and bounds (default RetryPolicy.STANDARD)
        rng: Optional random source for jitter (for reproducible tests)

    Example:
        manager = RetryManager(RetryPolicy.with_max_attempts(3))
        manager.decide(1, ErrorClass.RETRYABLE)      # RetryAfter(~5s)
        manager.decide(3, ErrorClass.RETRYABLE)      # Terminal
        manager.decide(1, ErrorClass.NON_RETRYABLE)  # Terminal
    """

    def __init__(self, policy: RetryPolicy | None = None, rng: random.Random | None = None):
        self._policy = policy or RetryPolicy.STANDARD
        self._rng = rng

    @classmethod
    def from_env(cls, prefix: str = "REFLEX_RETRY_") -> RetryManager:
        return cls(RetryPolicy.from_env(prefix))

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def __repr__(self) -> str:
        return f"RetryManager({self._policy!r})"

    def classify(self, failure: HandlerFailure | BaseException) -> ErrorClass:
        if isinstance(failure, HandlerTimeout):
            return ErrorClass.RETRYABLE

        error = failure.error if isinstance(failure, HandlerError) else failure

        if isinstance(error, TimeoutError):
            return ErrorClass.RETRYABLE

        hint = getattr(error, "is_retryable", None)
        if callable(hint):
            return ErrorClass.RETRYABLE if hint() else ErrorClass.NON_RETRYABLE

        if isinstance(error, NON_RETRYABLE_TYPES):
            return ErrorClass.NON_RETRYABLE

        message = str(error).lower()
        if any(marker in message for marker in NON_RETRYABLE_MESSAGES):
            return ErrorClass.NON_RETRYABLE

        return ErrorClass.RETRYABLE

    def decide(
        self,
        attempt: int,
        error_class: ErrorClass,
        elapsed: timedelta | None = None,
    ) -> RetryDecision:
        """
        Decide what happens after ``attempt`` failed.

        Args:
            attempt: The attempt that just failed (1-indexed)
            error_class: Result of classify()
            elapsed: Time since the first attempt started
        """
        if error_class == ErrorClass.NON_RETRYABLE:
            return Terminal("non-retryable error")

        delay_ms = self._policy.delay_for_attempt(attempt, self._rng)
        if delay_ms is None:
            return Terminal(f"max attempts reached ({attempt}/{self._policy.max_attempts})")

        if self._policy.max_elapsed_ms is not None and elapsed is not None:
            elapsed_ms = int(elapsed.total_seconds() * 1000)
            if elapsed_ms + delay_ms > self._policy.max_elapsed_ms:
                return Terminal(
                    f"retry budget exhausted ({elapsed_ms}ms elapsed, "
                    f"limit {self._policy.max_elapsed_ms}ms)"
                )

        return RetryAfter(timedelta(milliseconds=delay_ms))

"""
Retry policy configuration for reaction execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates the backoff curve, allowing different retry
strategies without modifying the dispatcher. The RetryManager is the
only consumer that turns a policy into a decision.

Design Rationale:
- Safe default: exponential backoff (5s base, x2), bounded at 10 attempts
- Jitter spreads retries of executions that failed together
- Policy is configuration, not mechanism: every constant is overridable
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for reaction retry behavior.

    Examples:
        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Simple: just specify max attempts (uses standard delays)
        policy = RetryPolicy.with_max_attempts(3)

        # Custom policy: full control
        policy = RetryPolicy(
            max_attempts=5,
            initial_delay_ms=1000,
            max_delay_ms=30000,
            backoff_multiplier=2.0,
        )

        # From the environment (REFLEX_RETRY_MAX_ATTEMPTS, ...)
        policy = RetryPolicy.from_env()
    """

    max_attempts: int
    """Maximum number of attempts (including the first try).

    max_attempts = 3 means:
    - Attempt 1: immediate (first claim)
    - Attempt 2: after initial_delay
    - Attempt 3: after initial_delay * backoff_multiplier
    """

    initial_delay_ms: int
    """Delay before the first retry in milliseconds."""

    max_delay_ms: int
    """Cap on a single backoff delay in milliseconds."""

    backoff_multiplier: float
    """Each retry delay is min(initial_delay * multiplier^(attempt-1), max_delay)."""

    max_elapsed_ms: int | None = None
    """Total budget since the first attempt. None means unbounded."""

    jitter: float = 0.0
    """Relative jitter in [0, 1). 0.1 spreads each delay over +/-10%."""

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must not be negative")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """Create a policy with custom max_attempts (uses standard delays)."""
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=5000,
            max_delay_ms=300_000,
            backoff_multiplier=2.0,
            max_elapsed_ms=3_600_000,
            jitter=0.1,
        )

    @classmethod
    def from_env(cls, prefix: str = "REFLEX_RETRY_") -> RetryPolicy:
        """
        Build a policy from environment variables, falling back to STANDARD.

        Reads ``{prefix}MAX_ATTEMPTS``, ``{prefix}INITIAL_DELAY_MS``,
        ``{prefix}MAX_DELAY_MS``, ``{prefix}MULTIPLIER``,
        ``{prefix}MAX_ELAPSED_MS`` and ``{prefix}JITTER``.

        Example:
            $ export REFLEX_RETRY_MAX_ATTEMPTS=4
            policy = RetryPolicy.from_env()
        """
        base = cls.STANDARD

        def _int(name: str, default: int | None) -> int | None:
            raw = os.environ.get(prefix + name)
            return int(raw) if raw else default

        def _float(name: str, default: float) -> float:
            raw = os.environ.get(prefix + name)
            return float(raw) if raw else default

        return cls(
            max_attempts=_int("MAX_ATTEMPTS", base.max_attempts),
            initial_delay_ms=_int("INITIAL_DELAY_MS", base.initial_delay_ms),
            max_delay_ms=_int("MAX_DELAY_MS", base.max_delay_ms),
            backoff_multiplier=_float("MULTIPLIER", base.backoff_multiplier),
            max_elapsed_ms=_int("MAX_ELAPSED_MS", base.max_elapsed_ms),
            jitter=_float("JITTER", base.jitter),
        )

    def base_delay_ms(self, attempt: int) -> int:
        """
        Backoff delay after ``attempt`` failed, without jitter.

        attempt=1 (first retry): multiplier^0 → initial_delay
        attempt=2: initial_delay * multiplier
        """
        exponent = max(attempt - 1, 0)
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier**exponent)
        return int(min(delay_ms, self.max_delay_ms))

    def delay_for_attempt(self, attempt: int, rng: random.Random | None = None) -> int | None:
        """
        Calculate the delay before the next attempt.

        Args:
            attempt: The attempt that just failed (1-indexed)
            rng: Optional random source for jitter (for reproducible tests)

        Returns:
            Delay in milliseconds, or None if no more attempts are allowed.

        Example:
            policy = RetryPolicy(max_attempts=3, initial_delay_ms=1000,
                                 max_delay_ms=30000, backoff_multiplier=2.0)
            policy.delay_for_attempt(1)  # 1000
            policy.delay_for_attempt(2)  # 2000
            policy.delay_for_attempt(3)  # None (max attempts)
        """
        if attempt >= self.max_attempts:
            return None

        delay_ms = self.base_delay_ms(attempt)
        if self.jitter and delay_ms:
            source = rng or random
            factor = 1.0 + source.uniform(-self.jitter, self.jitter)
            delay_ms = max(1, round(delay_ms * factor))
        return int(delay_ms)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier}, "
            f"max_elapsed_ms={self.max_elapsed_ms}, jitter={self.jitter})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=10,
    initial_delay_ms=5000,  # 5 seconds
    max_delay_ms=300_000,  # 5 minutes
    backoff_multiplier=2.0,
    max_elapsed_ms=3_600_000,  # 1 hour
    jitter=0.1,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_attempts=10,
    initial_delay_ms=100,
    max_delay_ms=10_000,
    backoff_multiplier=1.5,
    max_elapsed_ms=600_000,
    jitter=0.1,
)


# =============================================================================
# RetryableError - handler-side hint, decided on by the RetryManager
# =============================================================================


class RetryableError(Exception):
    """
    Base class for handler errors that carry a retryability hint.

    Handlers never decide retry vs. terminal themselves; they may only
    describe the failure. The RetryManager reads ``is_retryable()`` when
    classifying.

    Example:
        class ChannelError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        raise ChannelError("Gateway timeout", is_retryable=True)
        raise ChannelError("Unknown channel", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """Default: all errors are retryable."""
        return True


class PermanentError(RetryableError):
    """A failure that no amount of retrying will fix (bad configuration)."""

    def is_retryable(self) -> bool:
        return False

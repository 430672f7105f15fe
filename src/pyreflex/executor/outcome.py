"""
Dispatch outcomes and handler failure descriptions.

Design Pattern: State Machine using Union types
Handler failures are described by values (HandlerError, HandlerTimeout)
that only the RetryManager turns into a decision. The dispatcher reports
what happened to each claimed execution as a DispatchOutcome.

Example:
    ```python
    outcome = await dispatcher.process_next()

    match outcome:
        case Succeeded(execution):
            print(f"{execution.id} done after {execution.attempt} attempt(s)")
        case Retried(execution, delay_ms):
            print(f"retry in {delay_ms}ms")
        case TerminalFailure(execution, reason):
            print(f"gave up: {reason}")
        case Cancelled(execution):
            print(f"area of {execution.id} was disabled")
        case ConcurrencyConflict():
            pass  # another worker won, look for other work
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pyreflex.models import Execution

__all__ = [
    "HandlerError",
    "HandlerTimeout",
    "HandlerFailure",
    "Succeeded",
    "Retried",
    "TerminalFailure",
    "Cancelled",
    "ConcurrencyConflict",
    "DispatchOutcome",
    "describe_failure",
]


# =============================================================================
# Handler failures (input to the RetryManager)
# =============================================================================


@dataclass(frozen=True)
class HandlerError:
    """The reaction handler raised."""

    error: BaseException

    def __str__(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class HandlerTimeout:
    """The reaction handler did not finish within the per-execution timeout."""

    timeout_s: float

    def __str__(self) -> str:
        return f"HandlerTimeout: no result after {self.timeout_s:g}s"


HandlerFailure = HandlerError | HandlerTimeout


def describe_failure(failure: HandlerFailure, attempt: int) -> dict[str, Any]:
    """JSON-safe error_detail recorded on the execution."""
    if isinstance(failure, HandlerTimeout):
        return {
            "type": "HandlerTimeout",
            "message": str(failure),
            "timeout_s": failure.timeout_s,
            "attempt": attempt,
        }
    return {
        "type": type(failure.error).__name__,
        "message": str(failure.error),
        "attempt": attempt,
    }


# =============================================================================
# Dispatch outcomes
# =============================================================================


@dataclass(frozen=True)
class Succeeded:
    execution: Execution


@dataclass(frozen=True)
class Retried:
    """Attempt failed, execution is RETRYING until ``execution.next_retry_at``."""

    execution: Execution
    delay_ms: int
    failure: HandlerFailure | None = None


@dataclass(frozen=True)
class TerminalFailure:
    """
    Execution moved to FAILED.

    Operator visible: surfaced for audit and alerting.
    """

    execution: Execution
    reason: str

    def __str__(self) -> str:
        return f"TerminalFailure({self.execution.id}: {self.reason})"


@dataclass(frozen=True)
class Cancelled:
    """Execution moved to CANCELLED because its Area was disabled mid-attempt."""

    execution: Execution


@dataclass(frozen=True)
class ConcurrencyConflict:
    """A conditional update lost its race (not an error)."""

    execution_id: str | None = None
    detail: str = ""


DispatchOutcome = Succeeded | Retried | TerminalFailure | Cancelled | ConcurrencyConflict

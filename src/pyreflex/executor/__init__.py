"""
Executor module - runtime side of reaction executions.

This module contains the execution components:
- outcome: handler failures and dispatch outcomes
- retry: failure classification and backoff decisions (RetryManager)
- handlers: (provider, action_type) capability table (HandlerRegistry)
- tracker: guarded execution state transitions (ExecutionTracker)
- dispatcher: claim loop and handler invocation (Dispatcher)
"""

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
from pyreflex.executor.retry import (
    ErrorClass,
    RetryAfter,
    RetryDecision,
    RetryManager,
    Terminal,
)
from pyreflex.executor.handlers import HandlerRegistry, ReactionHandler
from pyreflex.executor.tracker import ExecutionStatistics, ExecutionTracker, InvalidTransition
from pyreflex.executor.dispatcher import (
    Dispatcher,
    DispatcherError,
    DispatcherHandle,
    ReactionPublisher,
)

__all__ = [
    # Tracker
    "ExecutionTracker",
    "ExecutionStatistics",
    "InvalidTransition",
    # Dispatcher
    "Dispatcher",
    "DispatcherHandle",
    "DispatcherError",
    "ReactionPublisher",
    "HandlerRegistry",
    "ReactionHandler",
    # Retry
    "RetryManager",
    "ErrorClass",
    "RetryAfter",
    "Terminal",
    "RetryDecision",
    # Outcomes
    "HandlerError",
    "HandlerTimeout",
    "HandlerFailure",
    "describe_failure",
    "Succeeded",
    "Retried",
    "TerminalFailure",
    "Cancelled",
    "ConcurrencyConflict",
    "DispatchOutcome",
]

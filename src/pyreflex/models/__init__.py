"""Core data models for the orchestration pipeline.

Defines events, catalogue entries, executions, lifecycle states and
retry configuration.

Design: Dependency-Free Models
These types have no dependencies on storage, pipeline or executor
modules to prevent circular imports and enable clean layering.
"""

from pyreflex.models.area import (
    ActionDefinition,
    ActionInstance,
    ActionLink,
    ActivationMode,
    Area,
    Cron,
    DedupKind,
    DedupStrategy,
    Manual,
    Poll,
    Provider,
    Webhook,
)
from pyreflex.models.event import DeliveryChannel, DeliveryMetadata, Event
from pyreflex.models.execution import Execution
from pyreflex.models.retry import PermanentError, RetryableError, RetryPolicy
from pyreflex.models.status import ExecutionStatus

__all__ = [
    "ActionDefinition",
    "ActionInstance",
    "ActionLink",
    "ActivationMode",
    "Area",
    "Cron",
    "DedupKind",
    "DedupStrategy",
    "DeliveryChannel",
    "DeliveryMetadata",
    "Event",
    "Execution",
    "ExecutionStatus",
    "Manual",
    "PermanentError",
    "Poll",
    "Provider",
    "RetryPolicy",
    "RetryableError",
    "Webhook",
]

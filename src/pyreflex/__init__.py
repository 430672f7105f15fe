"""
Reflex: Action-Reaction Automation Core for Python

Turns trigger events from external services into durably tracked,
retried reaction executions.

Design Pattern: Façade Pattern
This module provides a simplified interface to the reflex core, hiding
the wiring of normalizer, deduplicator, resolver, tracker and dispatcher.

Example:
    ```python
    import asyncio
    from pyreflex import (
        ActionDefinition, ActionInstance, ActionLink, Area, DedupStrategy,
        Dispatcher, HandlerRegistry, InMemoryCatalogue, Pipeline,
        SqliteExecutionStore, Webhook,
    )

    catalogue = InMemoryCatalogue()
    catalogue.register_definition(
        ActionDefinition("github", "issue_opened", natural_key="issue.id",
                         dedup=DedupStrategy.BY_KEY)
    )
    catalogue.register_definition(
        ActionDefinition("discord", "send_message", is_trigger=False, is_executable=True)
    )
    catalogue.add_area(
        Area("area-1", instances=[
            ActionInstance("i-1", "area-1", "github", "issue_opened", 0,
                           activation_mode=Webhook()),
            ActionInstance("i-2", "area-1", "discord", "send_message", 1,
                           params={"channel_id": "42"}),
        ], links=[ActionLink("area-1", 0, 1, mapping={"content": "issue.title"})])
    )

    handlers = HandlerRegistry()

    @handlers.handler("discord", "send_message")
    async def send_message(instance_id, payload):
        return {"message_id": "m-1"}

    async def main():
        store = SqliteExecutionStore("reflex.db")
        await store.connect()

        pipeline = Pipeline(store, catalogue)
        await pipeline.ingest("github", "issue_opened", {"issue": {"id": 7, "title": "Bug"}})

        dispatcher = Dispatcher(store, catalogue, handlers, "d-1").with_publisher(pipeline)
        await dispatcher.process_next()

        await store.close()

    asyncio.run(main())
    ```
"""

# Core types - Pure Python models
from pyreflex.models import (
    ActionDefinition,
    ActionInstance,
    ActionLink,
    ActivationMode,
    Area,
    Cron,
    DedupKind,
    DedupStrategy,
    DeliveryChannel,
    DeliveryMetadata,
    Event,
    Execution,
    ExecutionStatus,
    Manual,
    PermanentError,
    Poll,
    Provider,
    RetryableError,
    RetryPolicy,
    Webhook,
)

# Storage (Adapter pattern)
from pyreflex.storage import ExecutionStore, StorageError
from pyreflex.storage.memory import InMemoryExecutionStore
from pyreflex.storage.sqlite import SqliteExecutionStore

# Catalogue (Repository pattern)
from pyreflex.catalogue import Catalogue, CatalogueError, InMemoryCatalogue

# Ingestion
from pyreflex.pipeline import (
    Accepted,
    DataMapper,
    Duplicate,
    Ingested,
    IngestOutcome,
    MalformedInput,
    NoMatchingLink,
    PayloadMapper,
    Pipeline,
    UnrecognizedPayload,
)

# Execution
from pyreflex.executor import (
    Cancelled,
    ConcurrencyConflict,
    Dispatcher,
    DispatcherError,
    DispatcherHandle,
    DispatchOutcome,
    ErrorClass,
    ExecutionTracker,
    HandlerError,
    HandlerRegistry,
    HandlerTimeout,
    InvalidTransition,
    Retried,
    RetryManager,
    Succeeded,
    TerminalFailure,
)

# Version
__version__ = "0.1.0"

__all__ = [
    # Core types
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
    "Poll",
    "Provider",
    "Webhook",
    "RetryPolicy",
    "RetryableError",
    "PermanentError",

    # Storage (Adapter pattern)
    "ExecutionStore",
    "StorageError",
    "InMemoryExecutionStore",
    "SqliteExecutionStore",

    # Catalogue
    "Catalogue",
    "CatalogueError",
    "InMemoryCatalogue",

    # Ingestion
    "Pipeline",
    "Ingested",
    "Accepted",
    "Duplicate",
    "NoMatchingLink",
    "MalformedInput",
    "UnrecognizedPayload",
    "IngestOutcome",
    "DataMapper",
    "PayloadMapper",

    # Execution
    "ExecutionTracker",
    "InvalidTransition",
    "Dispatcher",
    "DispatcherHandle",
    "DispatcherError",
    "HandlerRegistry",
    "RetryManager",
    "ErrorClass",
    "HandlerError",
    "HandlerTimeout",
    "Succeeded",
    "Retried",
    "TerminalFailure",
    "Cancelled",
    "ConcurrencyConflict",
    "DispatchOutcome",

    # Metadata
    "__version__",
]

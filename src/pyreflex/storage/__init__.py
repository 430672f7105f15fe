"""Storage backends for events, dedup keys and execution state.

Provides multiple storage implementations behind a common interface:
    - ExecutionStore: Abstract interface
    - SqliteExecutionStore: SQLite-backed storage
    - RedisExecutionStore: Redis-backed distributed storage
    - InMemoryExecutionStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the ExecutionStore interface.
    Clients depend on the abstraction, so backends can be swapped freely.
"""

from pyreflex.storage.base import (
    ExecutionStore,
    StorageError,
    WorkNotificationSource,
)

# Backends are imported lazily so that aiosqlite/redis are only loaded
# when the corresponding store is actually used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryExecutionStore":
        from pyreflex.storage.memory import InMemoryExecutionStore

        return InMemoryExecutionStore
    elif name == "RedisExecutionStore":
        from pyreflex.storage.redis import RedisExecutionStore

        return RedisExecutionStore
    elif name == "SqliteExecutionStore":
        from pyreflex.storage.sqlite import SqliteExecutionStore

        return SqliteExecutionStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionStore",
    "StorageError",
    "WorkNotificationSource",
    "SqliteExecutionStore",
    "RedisExecutionStore",
    "InMemoryExecutionStore",
]

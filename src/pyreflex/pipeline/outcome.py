"""
Ingestion outcomes.

Every pipeline component returns an explicit outcome value instead of
raising across component boundaries. Duplicates and unmatched events are
normal results, not errors.

Example:
    ```python
    outcome = await pipeline.ingest("github", "issue_opened", body, metadata)

    match outcome:
        case Ingested(event, executions):
            print(f"{event.id}: {len(executions)} reactions queued")
        case Duplicate(event, key):
            print(f"already seen: {key}")
        case NoMatchingLink(event):
            print("nothing to do")
        case MalformedInput(reason=reason):
            print(f"rejected: {reason}")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pyreflex.models import ActionLink, Event, Execution

__all__ = [
    "Normalized",
    "MalformedInput",
    "UnrecognizedPayload",
    "Accepted",
    "Duplicate",
    "Resolved",
    "NoMatchingLink",
    "Ingested",
    "NormalizeOutcome",
    "AdmitOutcome",
    "ResolveOutcome",
    "IngestOutcome",
]


# =============================================================================
# Normalizer
# =============================================================================


@dataclass(frozen=True)
class Normalized:
    event: Event


@dataclass(frozen=True)
class MalformedInput:
    """
    The payload could not be turned into an Event.

    Operator visible: rejected, logged, never retried.
    """

    provider: str
    action_type: str
    reason: str
    payload: Any = field(default=None, repr=False)

    def __str__(self) -> str:
        return f"MalformedInput({self.provider}/{self.action_type}: {self.reason})"


@dataclass(frozen=True)
class UnrecognizedPayload(MalformedInput):
    """No known ActionDefinition matches ``(provider, action_type)``."""

    def __str__(self) -> str:
        return f"UnrecognizedPayload({self.provider}/{self.action_type}: {self.reason})"


NormalizeOutcome = Normalized | MalformedInput


# =============================================================================
# Deduplicator
# =============================================================================


@dataclass(frozen=True)
class Accepted:
    """The event is new. ``key`` is the recorded dedup key, None when nothing was recorded."""

    event: Event
    key: str | None = None


@dataclass(frozen=True)
class Duplicate:
    """The event was already admitted (not an error)."""

    event: Event
    key: str


AdmitOutcome = Accepted | Duplicate


# =============================================================================
# Link Resolver
# =============================================================================


@dataclass(frozen=True)
class Resolved:
    """Links to fire, ordered by ascending link position."""

    event: Event
    links: tuple[ActionLink, ...]


@dataclass(frozen=True)
class NoMatchingLink:
    """No enabled link fires for this event. No Execution is created."""

    event: Event


ResolveOutcome = Resolved | NoMatchingLink


# =============================================================================
# Pipeline
# =============================================================================


@dataclass(frozen=True)
class Ingested:
    """The event was admitted and one PENDING Execution exists per resolved link."""

    event: Event
    executions: tuple[Execution, ...]

    def __str__(self) -> str:
        return f"Ingested(event={self.event.id}, executions={len(self.executions)})"


IngestOutcome = Ingested | Duplicate | NoMatchingLink | MalformedInput

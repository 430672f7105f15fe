"""Catalogue types: providers, definitions, instances, links and Areas.

These are authored outside the core (Area editor, catalogue management)
and are read-only at runtime. The orchestration core only looks them up.

Design: Closed Variants
    ActivationMode is a closed union of small frozen dataclasses rather
    than a class hierarchy with behaviour spread across subclasses. The
    resolver pattern-matches on the variant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from pyreflex.models.event import DeliveryChannel


class Provider(str, Enum):
    """Closed set of external services the core knows handlers for."""

    GITHUB = "github"
    DISCORD = "discord"
    SLACK = "slack"
    GOOGLE = "google"
    SPOTIFY = "spotify"
    NOTION = "notion"
    TIMER = "timer"
    INTERNAL = "internal"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Deduplication strategy
# =============================================================================


class DedupKind(Enum):
    NONE = "NONE"
    BY_KEY = "BY_KEY"
    BY_CONTENT_HASH = "BY_CONTENT_HASH"
    BY_KEY_WINDOWED = "BY_KEY_WINDOWED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DedupStrategy:
    """How the deduplicator treats events of one ActionDefinition.

    Examples:
        DedupStrategy.NONE
        DedupStrategy.BY_KEY
        DedupStrategy.windowed(timedelta(seconds=60))
    """

    kind: DedupKind
    ttl: timedelta | None = None

    def __post_init__(self) -> None:
        if self.kind == DedupKind.BY_KEY_WINDOWED:
            if self.ttl is None or self.ttl <= timedelta(0):
                raise ValueError("BY_KEY_WINDOWED requires a positive ttl")
        elif self.ttl is not None:
            raise ValueError(f"{self.kind} does not take a ttl")

    @classmethod
    def windowed(cls, ttl: timedelta) -> DedupStrategy:
        return cls(kind=DedupKind.BY_KEY_WINDOWED, ttl=ttl)

    def __str__(self) -> str:
        if self.ttl is not None:
            return f"{self.kind}({int(self.ttl.total_seconds())}s)"
        return str(self.kind)


DedupStrategy.NONE = DedupStrategy(DedupKind.NONE)
DedupStrategy.BY_KEY = DedupStrategy(DedupKind.BY_KEY)
DedupStrategy.BY_CONTENT_HASH = DedupStrategy(DedupKind.BY_CONTENT_HASH)


# =============================================================================
# Activation modes
# =============================================================================


@dataclass(frozen=True)
class Webhook:
    """Armed by provider push; arrival itself is the trigger."""

    channel = DeliveryChannel.WEBHOOK


@dataclass(frozen=True)
class Poll:
    """Armed by an external poller that emits only on a detected delta."""

    interval: timedelta = timedelta(minutes=5)
    channel = DeliveryChannel.POLL

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            raise ValueError("Poll interval must be positive")


@dataclass(frozen=True)
class Cron:
    """Armed by a cron scheduler; each tick carries a synthetic event."""

    schedule: str
    timezone: str = "UTC"
    channel = DeliveryChannel.CRON

    def __post_init__(self) -> None:
        if not croniter.is_valid(self.schedule):
            raise ValueError(f"Invalid cron expression: {self.schedule}")

    def next_fire_time(self, after: datetime) -> datetime:
        """Compute the first tick strictly after ``after`` (returned in UTC)."""
        if after.tzinfo is None:
            after = after.replace(tzinfo=UTC)
        if self.timezone != "UTC":
            after = after.astimezone(ZoneInfo(self.timezone))
        next_run = croniter(self.schedule, after).get_next(datetime)
        return next_run.astimezone(UTC)


@dataclass(frozen=True)
class Manual:
    """Fired explicitly by a user or operator."""

    channel = DeliveryChannel.MANUAL


ActivationMode = Webhook | Poll | Cron | Manual


# =============================================================================
# Catalogue entries
# =============================================================================


@dataclass(frozen=True)
class ActionDefinition:
    """A triggerable condition or executable reaction exposed by a provider.

    required_fields and natural_key are dotted paths into the produced
    payload (``"issue.number"``). volatile_fields are top-level or dotted
    paths excluded from content hashing (timestamps of receipt and the like).
    """

    provider: str
    action_type: str
    is_trigger: bool = True
    is_executable: bool = False
    required_fields: tuple[str, ...] = ()
    natural_key: str | None = None
    volatile_fields: tuple[str, ...] = ()
    dedup: DedupStrategy = DedupStrategy.NONE
    parameter_schema: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (str(self.provider), self.action_type)


@dataclass(frozen=True)
class ActionInstance:
    """A configured occurrence of an ActionDefinition inside one Area."""

    id: str
    area_id: str
    provider: str
    action_type: str
    position: int
    params: dict[str, Any] = field(default_factory=dict)
    activation_mode: ActivationMode | None = None
    """None for pure reactions; triggers always carry a mode."""

    enabled: bool = True
    name: str = ""

    @property
    def definition_key(self) -> tuple[str, str]:
        return (str(self.provider), self.action_type)


@dataclass(frozen=True)
class ActionLink:
    """Directed edge from a trigger instance to a reaction instance.

    Identity is ``(area_id, source_position, target_position)``.
    """

    area_id: str
    source_position: int
    target_position: int
    position: int = 0
    """Ordering among links leaving the same source (ascending)."""

    condition: dict[str, Any] | None = None
    mapping: dict[str, Any] | None = None

    @property
    def link_id(self) -> str:
        return f"{self.area_id}:{self.source_position}->{self.target_position}"


@dataclass
class Area:
    """User-authored automation unit grouping triggers and reactions.

    The graph is validated at authoring time; the core assumes at least
    one trigger node and only reads the structure.
    """

    id: str
    owner_id: str | None = None
    name: str = ""
    enabled: bool = True
    instances: list[ActionInstance] = field(default_factory=list)
    links: list[ActionLink] = field(default_factory=list)

    def instance_at(self, position: int) -> ActionInstance | None:
        for instance in self.instances:
            if instance.position == position:
                return instance
        return None

    def links_from(self, position: int) -> list[ActionLink]:
        return [link for link in self.links if link.source_position == position]

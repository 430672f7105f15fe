"""Canonical trigger events and their delivery metadata.

An Event is the single representation every ingestion path (webhook,
poll, cron, manual, chained reaction) is reduced to before it enters
the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class DeliveryChannel(Enum):
    """How a trigger occurrence reached the core."""

    WEBHOOK = "webhook"
    POLL = "poll"
    CRON = "cron"
    MANUAL = "manual"
    CHAIN = "chain"
    """Published by a succeeded execution whose target is itself a trigger."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DeliveryMetadata:
    """Delivery details supplied by the producer alongside a raw payload.

    Signature verification and polling bookkeeping happen before the
    core sees a delivery; only the facts needed for normalization are
    carried here.
    """

    channel: DeliveryChannel = DeliveryChannel.WEBHOOK
    received_at: datetime | None = None
    """When the producer received the delivery. Volatile, never hashed."""

    occurred_at: datetime | None = None
    """When the provider says the event happened, if known."""

    idempotency_key: str | None = None
    """Provider-supplied delivery id (e.g. a webhook delivery GUID)."""

    nonce: str | None = None

    action_instance_id: str | None = None
    """Set when the delivery is bound to one ActionInstance (poll, cron, chain)."""

    chain_depth: int = 0


@dataclass(frozen=True)
class Event:
    """One trigger occurrence, immutable once created.

    Produced by the normalizer, admitted once by the deduplicator and
    appended to the store before any Execution references it.
    """

    id: str
    source_service: str
    source_action_type: str
    occurred_at: datetime
    raw_payload: dict[str, Any]
    dedup_key: str
    """Derived identifier used to recognize repeat deliveries."""

    content_hash: str
    """Hash of the normalized payload (volatile fields removed)."""

    channel: DeliveryChannel = DeliveryChannel.WEBHOOK
    action_instance_id: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    chain_depth: int = 0

    @property
    def handler_key(self) -> tuple[str, str]:
        """Return the ``(provider, action_type)`` pair of the trigger."""
        return (self.source_service, self.source_action_type)

    def __repr__(self) -> str:
        return (
            f"Event(id={self.id!r}, source={self.source_service}/{self.source_action_type}, "
            f"channel={self.channel}, dedup_key={self.dedup_key!r})"
        )

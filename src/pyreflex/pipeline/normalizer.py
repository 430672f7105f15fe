"""
Event Normalizer - provider payloads to canonical Events.

Every producer (webhook receiver, poller, cron scheduler, manual trigger,
chained reaction) hands the core a ``(provider, action_type, payload,
metadata)`` tuple. The normalizer validates it against the catalogue and
derives the dedup key.

Dedup key precedence:
    1. ``metadata.idempotency_key`` (provider delivery id)
    2. the definition's ``natural_key`` path into the payload
    3. content hash of the payload with volatile fields removed

Keys of deliveries bound to one ActionInstance are scoped by that
instance, so two cron instances ticking at the same second stay distinct.

Content hashing uses canonical JSON (sorted keys, compact separators) and
xxhash's 128-bit XXH3, so the same logical payload always yields the same
key regardless of key order or receipt time.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import xxhash
from uuid_extensions import uuid7

from pyreflex.catalogue import Catalogue
from pyreflex.models import ActionDefinition, DeliveryChannel, DeliveryMetadata, Event
from pyreflex.pipeline.outcome import (
    MalformedInput,
    Normalized,
    NormalizeOutcome,
    UnrecognizedPayload,
)
from pyreflex.pipeline.paths import MISSING, get_path, has_path, without_paths

logger = logging.getLogger(__name__)


def canonical_json(payload: Any) -> bytes:
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


def content_hash(payload: Mapping[str, Any], volatile_fields: tuple[str, ...] = ()) -> str:
    """128-bit hex digest of the payload without its volatile fields."""
    stable = without_paths(payload, volatile_fields)
    return xxhash.xxh3_128_hexdigest(canonical_json(stable))


def _utc_now() -> datetime:
    return datetime.now(UTC)


class EventNormalizer:
    """
    Converts raw deliveries into Events.

    Stateless apart from the catalogue reference; safe to share between
    coroutines.
    """

    def __init__(self, catalogue: Catalogue, clock: Callable[[], datetime] | None = None):
        self._catalogue = catalogue
        self._clock = clock or _utc_now

    def normalize(
        self,
        provider: str,
        action_type: str,
        payload: Any,
        metadata: DeliveryMetadata | None = None,
    ) -> NormalizeOutcome:
        """
        Build an Event, or explain why not.

        Args:
            provider: Provider name (``"github"`` or a Provider member)
            action_type: Action type within the provider
            payload: Mapping, or JSON document as ``str``/``bytes``
            metadata: Delivery details; defaults to a plain webhook delivery

        Returns:
            Normalized(event) or MalformedInput / UnrecognizedPayload
        """
        provider = str(provider)
        metadata = metadata or DeliveryMetadata()

        definition = self._catalogue.get_definition(provider, action_type)
        if definition is None:
            return self._reject(
                UnrecognizedPayload(provider, action_type, "unknown action definition", payload)
            )
        # A chained delivery is published by a reaction, so its definition
        # only has to be executable.
        if not definition.is_trigger and metadata.channel != DeliveryChannel.CHAIN:
            return self._reject(
                UnrecognizedPayload(provider, action_type, "action is not a trigger", payload)
            )

        body = self._decode(payload)
        if body is None:
            return self._reject(
                MalformedInput(provider, action_type, "payload is not a JSON object", payload)
            )

        missing = [path for path in definition.required_fields if not has_path(body, path)]
        if missing:
            return self._reject(
                MalformedInput(
                    provider,
                    action_type,
                    f"missing required fields: {', '.join(missing)}",
                    payload,
                )
            )

        digest = content_hash(body, definition.volatile_fields)
        dedup_key = self._dedup_key(definition, body, metadata, digest)

        received_at = metadata.received_at or self._clock()
        event = Event(
            id=str(uuid7()),
            source_service=provider,
            source_action_type=action_type,
            occurred_at=metadata.occurred_at or received_at,
            raw_payload=body,
            dedup_key=dedup_key,
            content_hash=digest,
            channel=metadata.channel,
            action_instance_id=metadata.action_instance_id,
            received_at=received_at,
            chain_depth=metadata.chain_depth,
        )

        logger.debug(f"Normalized {event!r}")
        return Normalized(event)

    @staticmethod
    def _decode(payload: Any) -> dict[str, Any] | None:
        if isinstance(payload, Mapping):
            return dict(payload)
        if isinstance(payload, (bytes, bytearray, str)):
            try:
                decoded = json.loads(payload)
            except (ValueError, UnicodeDecodeError):
                return None
            return decoded if isinstance(decoded, dict) else None
        return None

    @staticmethod
    def _dedup_key(
        definition: ActionDefinition,
        body: dict[str, Any],
        metadata: DeliveryMetadata,
        digest: str,
    ) -> str:
        if metadata.idempotency_key:
            key = metadata.idempotency_key
        else:
            natural = MISSING
            if definition.natural_key:
                natural = get_path(body, definition.natural_key)
            key = str(natural) if natural is not MISSING and natural is not None else digest

        if metadata.action_instance_id:
            return f"{metadata.action_instance_id}:{key}"
        return key

    @staticmethod
    def _reject(outcome: MalformedInput) -> MalformedInput:
        logger.warning(f"Rejected delivery: {outcome}")
        return outcome

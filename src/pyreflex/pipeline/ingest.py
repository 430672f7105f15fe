"""
Pipeline - ingestion façade.

Runs one delivery through the whole admission path:

    normalize -> admit (dedup) -> append event -> resolve links -> build executions

and returns an explicit outcome. Cron ticks, manual fires and chained
results are expressed as ordinary deliveries so they share the same
dedup, resolution and retry semantics.

Example:
    ```python
    pipeline = Pipeline(store, catalogue).with_max_chain_depth(8)

    outcome = await pipeline.ingest(
        "github",
        "issue_opened",
        request_body,
        DeliveryMetadata(idempotency_key=request.headers["X-GitHub-Delivery"]),
    )

    dispatcher = Dispatcher(store, catalogue, handlers, "d-1").with_publisher(pipeline)
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from uuid_extensions import uuid7

from pyreflex.catalogue import Catalogue, CatalogueError
from pyreflex.executor.tracker import ExecutionTracker
from pyreflex.models import Cron, DeliveryChannel, DeliveryMetadata, Execution
from pyreflex.pipeline.chain import ReactionChainBuilder
from pyreflex.pipeline.dedup import Deduplicator
from pyreflex.pipeline.normalizer import EventNormalizer
from pyreflex.pipeline.outcome import (
    Duplicate,
    Ingested,
    IngestOutcome,
    MalformedInput,
    NoMatchingLink,
)
from pyreflex.pipeline.resolver import LinkResolver
from pyreflex.storage.base import ExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHAIN_DEPTH = 16


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Pipeline:
    """
    Wires normalizer, deduplicator, resolver and chain builder over one store.

    Also implements the dispatcher's ReactionPublisher, so successful
    reactions with outgoing links re-enter here as chained deliveries.

    Args:
        store: Shared execution store
        catalogue: Definitions, Areas, instances and links
        clock: Injectable time source shared by every component
    """

    def __init__(
        self,
        store: ExecutionStore,
        catalogue: Catalogue,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._catalogue = catalogue
        self._clock = clock or _utc_now

        self._tracker = ExecutionTracker(store, self._clock)
        self._normalizer = EventNormalizer(catalogue, self._clock)
        self._deduplicator = Deduplicator(store, catalogue, self._clock)
        self._resolver = LinkResolver(catalogue)
        self._chain = ReactionChainBuilder(catalogue, self._tracker)

        self._max_chain_depth = DEFAULT_MAX_CHAIN_DEPTH

    def __repr__(self) -> str:
        return f"Pipeline(store={self._store!r}, catalogue={self._catalogue!r})"

    def with_max_chain_depth(self, depth: int) -> Pipeline:
        """Reject chained deliveries deeper than ``depth`` hops (builder pattern)."""
        if depth < 0:
            raise ValueError("max chain depth must be non-negative")
        self._max_chain_depth = depth
        return self

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @property
    def catalogue(self) -> Catalogue:
        return self._catalogue

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    @property
    def normalizer(self) -> EventNormalizer:
        return self._normalizer

    @property
    def deduplicator(self) -> Deduplicator:
        return self._deduplicator

    @property
    def resolver(self) -> LinkResolver:
        return self._resolver

    @property
    def chain_builder(self) -> ReactionChainBuilder:
        return self._chain

    # ========================================================================
    # Ingestion
    # ========================================================================

    async def ingest(
        self,
        provider: str,
        action_type: str,
        payload: Any,
        metadata: DeliveryMetadata | None = None,
    ) -> IngestOutcome:
        """
        Admit one delivery and create its PENDING executions.

        Returns:
            Ingested, Duplicate, NoMatchingLink or MalformedInput

        Raises:
            StorageError: If the store cannot be reached
            CatalogueError: If a resolved link has no target instance
        """
        metadata = metadata or DeliveryMetadata()

        if metadata.chain_depth > self._max_chain_depth:
            rejected = MalformedInput(
                str(provider),
                action_type,
                f"chain depth {metadata.chain_depth} exceeds {self._max_chain_depth}",
                payload,
            )
            logger.warning(f"Rejected delivery: {rejected}")
            return rejected

        outcome = self._normalizer.normalize(provider, action_type, payload, metadata)
        if isinstance(outcome, MalformedInput):
            return outcome
        event = outcome.event

        admitted = await self._deduplicator.admit(event)
        if isinstance(admitted, Duplicate):
            logger.info(f"Event {event.id} ignored as duplicate of {admitted.key}")
            return admitted

        try:
            await self._store.append_event(event)

            resolved = self._resolver.resolve(event)
            if isinstance(resolved, NoMatchingLink):
                logger.debug(f"Event {event.id}: no matching link")
                return resolved

            executions = await self._chain.build(event, resolved.links)
        except Exception as e:
            # A redelivery must be admitted again
            logger.warning(f"Ingest of event {event.id} failed after admission: {e}")
            await self._deduplicator.release(admitted)
            raise

        return Ingested(event, tuple(executions))

    async def tick(self, instance_id: str, fired_at: datetime | None = None) -> IngestOutcome:
        """
        Deliver one cron tick for a Cron-armed instance.

        The tick time is the idempotency key, so with a key-based dedup
        strategy a tick delivered twice (e.g. by two schedulers) is
        admitted once.

        Raises:
            CatalogueError: If the instance is unknown or not Cron-armed
        """
        instance = self._catalogue.get_instance(instance_id)
        if instance is None:
            raise CatalogueError(f"Unknown instance: {instance_id}")
        mode = instance.activation_mode
        if not isinstance(mode, Cron):
            raise CatalogueError(f"Instance {instance_id} is not cron-armed")

        fired_at = fired_at or self._clock()
        payload = {
            "fired_at": fired_at.isoformat(),
            "schedule": mode.schedule,
            "timezone": mode.timezone,
        }
        return await self.ingest(
            instance.provider,
            instance.action_type,
            payload,
            DeliveryMetadata(
                channel=DeliveryChannel.CRON,
                occurred_at=fired_at,
                idempotency_key=fired_at.isoformat(),
                action_instance_id=instance.id,
            ),
        )

    async def trigger_manual(
        self, instance_id: str, payload: dict[str, Any] | None = None
    ) -> IngestOutcome:
        """
        Fire a trigger instance by hand. Every call is a distinct event.

        Raises:
            CatalogueError: If the instance is unknown or not a trigger
        """
        instance = self._catalogue.get_instance(instance_id)
        if instance is None:
            raise CatalogueError(f"Unknown instance: {instance_id}")
        if instance.activation_mode is None:
            raise CatalogueError(f"Instance {instance_id} is not a trigger")

        nonce = str(uuid7())
        logger.info(f"Manual trigger of instance {instance_id} ({nonce})")
        return await self.ingest(
            instance.provider,
            instance.action_type,
            payload or {},
            DeliveryMetadata(
                channel=DeliveryChannel.MANUAL,
                idempotency_key=nonce,
                nonce=nonce,
                action_instance_id=instance.id,
            ),
        )

    def next_tick(self, instance_id: str, after: datetime | None = None) -> datetime:
        """Next fire time of a Cron-armed instance strictly after ``after``."""
        instance = self._catalogue.get_instance(instance_id)
        if instance is None or not isinstance(instance.activation_mode, Cron):
            raise CatalogueError(f"Instance {instance_id} is not cron-armed")
        return instance.activation_mode.next_fire_time(after or self._clock())

    # ========================================================================
    # Chained reactions
    # ========================================================================

    async def publish_result(
        self, execution: Execution, result: dict[str, Any]
    ) -> IngestOutcome | None:
        """
        Re-enter a successful reaction's result as a chained delivery.

        Returns:
            The ingest outcome, or None if the target has no outgoing links
        """
        event = await self._store.get_event(execution.triggering_event_id)
        if event is None:
            logger.warning(
                f"Cannot chain execution {execution.id}: "
                f"event {execution.triggering_event_id} not found"
            )
            return None

        delivery = self._chain.follow_up(execution, event, result)
        if delivery is None:
            return None

        logger.debug(
            f"Chaining execution {execution.id} into {delivery.provider}/"
            f"{delivery.action_type} (depth {delivery.metadata.chain_depth})"
        )
        return await self.ingest(
            delivery.provider, delivery.action_type, delivery.payload, delivery.metadata
        )

    # ========================================================================
    # Area lifecycle
    # ========================================================================

    async def disable_area(self, area_id: str) -> list[str]:
        """
        Disable an Area and cancel its PENDING/RETRYING executions.

        RUNNING attempts are allowed to finish. Returns the cancelled ids.
        """
        self._catalogue.set_area_enabled(area_id, False)
        cancelled = await self._tracker.cancel_area(area_id)
        logger.info(f"Area {area_id} disabled ({len(cancelled)} execution(s) cancelled)")
        return cancelled

    def enable_area(self, area_id: str) -> None:
        self._catalogue.set_area_enabled(area_id, True)
        logger.info(f"Area {area_id} enabled")

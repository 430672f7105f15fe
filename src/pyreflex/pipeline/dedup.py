"""
Deduplicator - admit each logical event once.

The decision is a single atomic check-and-set against the store; there
is no in-process "seen" cache, so restarts and multiple processes share
the same view.

Strategy dispatch (per ActionDefinition):
    NONE              always Accepted
    BY_KEY            Accepted iff dedup_key was never seen
    BY_CONTENT_HASH   Accepted iff the normalized payload hash was never seen
    BY_KEY_WINDOWED   Accepted iff dedup_key was not seen within ttl
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pyreflex.catalogue import Catalogue
from pyreflex.models import DedupKind, DedupStrategy, Event
from pyreflex.pipeline.outcome import Accepted, AdmitOutcome, Duplicate
from pyreflex.storage.base import ExecutionStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Deduplicator:
    """
    Admission gate in front of link resolution.

    Args:
        store: Store providing ``check_and_set_dedup``
        catalogue: Source of each event's DedupStrategy
        clock: Injectable time source (windowed strategies compare against it)
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

    def strategy_for(self, event: Event) -> DedupStrategy:
        definition = self._catalogue.get_definition(
            event.source_service, event.source_action_type
        )
        return definition.dedup if definition is not None else DedupStrategy.NONE

    @staticmethod
    def store_key(event: Event, strategy: DedupStrategy) -> str:
        """Namespaced store key: ``dedup:{provider}:{action_type}:{strategy}:{key}``."""
        if strategy.kind == DedupKind.BY_CONTENT_HASH:
            key = event.content_hash
            if event.action_instance_id:
                key = f"{event.action_instance_id}:{key}"
        else:
            key = event.dedup_key
        return f"dedup:{event.source_service}:{event.source_action_type}:{strategy.kind}:{key}"

    async def admit(self, event: Event) -> AdmitOutcome:
        """
        Decide whether ``event`` is new.

        Raises:
            StorageError: If the store cannot be reached (infrastructure fault)
        """
        strategy = self.strategy_for(event)
        if strategy.kind == DedupKind.NONE:
            return Accepted(event)

        key = self.store_key(event, strategy)
        accepted = await self._store.check_and_set_dedup(key, self._clock(), strategy.ttl)

        if accepted:
            return Accepted(event, key)

        logger.debug(f"Duplicate event {event.id} ({strategy}): {key}")
        return Duplicate(event, key)

    async def release(self, admitted: Accepted) -> None:
        """Undo an admission whose event could not be persisted."""
        if admitted.key is None:
            return
        await self._store.release_dedup(admitted.key)
        logger.debug(f"Released dedup key of event {admitted.event.id}: {admitted.key}")

"""
Reaction Chain Builder - resolved links to PENDING Executions.

One Execution per resolved link, each carrying the triggering Event id.
Creation is idempotent per ``(link, event)``: rebuilding for the same
event returns the executions that already exist.

Chained automation (a reaction whose instance has outgoing links of its
own) is not expanded here. When such an execution succeeds, follow_up()
describes a new delivery that re-enters the pipeline at the normalizer:

    channel          DeliveryChannel.CHAIN
    bound instance   the reaction's ActionInstance
    idempotency key  the execution id (one follow-up per success)
    payload          trigger payload + {"trigger_result": result}
    chain_depth      event.chain_depth + 1

Each hop is then deduplicated, resolved and retried on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from uuid_extensions import uuid7

from pyreflex.catalogue import Catalogue, CatalogueError
from pyreflex.executor.tracker import ExecutionTracker
from pyreflex.models import ActionLink, DeliveryChannel, DeliveryMetadata, Event, Execution

logger = logging.getLogger(__name__)

CHAIN_RESULT_FIELD = "trigger_result"


@dataclass(frozen=True)
class Delivery:
    """An ingestion tuple ``(provider, action_type, payload, metadata)``."""

    provider: str
    action_type: str
    payload: dict[str, Any]
    metadata: DeliveryMetadata = field(default_factory=DeliveryMetadata)


class ReactionChainBuilder:
    def __init__(self, catalogue: Catalogue, tracker: ExecutionTracker):
        self._catalogue = catalogue
        self._tracker = tracker

    async def build(self, event: Event, links: Sequence[ActionLink]) -> list[Execution]:
        """
        Create one PENDING execution per link, in link order.

        Raises:
            CatalogueError: If a link's target position has no instance
        """
        executions = []
        for link in links:
            area = self._catalogue.get_area(link.area_id)
            target = area.instance_at(link.target_position) if area is not None else None
            if target is None:
                raise CatalogueError(f"Link {link.link_id} has no target instance")

            execution, created = await self._tracker.create_pending(
                Execution(
                    id=str(uuid7()),
                    area_id=link.area_id,
                    action_link_id=link.link_id,
                    triggering_event_id=event.id,
                    target_instance_id=target.id,
                    provider=str(target.provider),
                    action_type=target.action_type,
                    created_at=self._tracker.now(),
                )
            )
            if not created:
                logger.debug(f"Execution for {link.link_id} / {event.id} already exists")
            executions.append(execution)

        logger.info(f"Event {event.id}: {len(executions)} execution(s) pending")
        return executions

    def follow_up(
        self, execution: Execution, event: Event, result: dict[str, Any]
    ) -> Delivery | None:
        """
        Delivery to publish after ``execution`` succeeded, if its target chains.

        Returns:
            None when the target instance has no outgoing links
        """
        target = self._catalogue.get_instance(execution.target_instance_id)
        if target is None or not self._catalogue.links_from_instance(target):
            return None

        payload = dict(event.raw_payload)
        payload[CHAIN_RESULT_FIELD] = result

        return Delivery(
            provider=str(target.provider),
            action_type=target.action_type,
            payload=payload,
            metadata=DeliveryMetadata(
                channel=DeliveryChannel.CHAIN,
                idempotency_key=execution.id,
                action_instance_id=target.id,
                chain_depth=event.chain_depth + 1,
            ),
        )

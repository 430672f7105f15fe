"""
Link Resolver - which ActionLinks fire for an accepted Event.

Candidate source instances:
    - the bound instance, when the delivery names one (poll, cron, manual,
      chain deliveries)
    - otherwise every trigger instance of ``(provider, action_type)``

A candidate fires when its Area and the instance are enabled and its
ActivationMode is satisfied by the delivery channel. External producers
have already done the mode-specific checks (poll interval elapsed and a
real change detected, cron tick due, webhook signature verified), so the
channel match is all that is left. Manual and chained deliveries bound to
an instance are always satisfied.

Fan-out is expected: every outgoing link whose condition holds is
returned, ordered by ascending link position. Order does not imply
sequential execution.
"""

from __future__ import annotations

import logging

from pyreflex.catalogue import Catalogue
from pyreflex.models import ActionInstance, ActionLink, DeliveryChannel, Event
from pyreflex.pipeline.conditions import ConditionError, evaluate_condition
from pyreflex.pipeline.outcome import NoMatchingLink, Resolved, ResolveOutcome

logger = logging.getLogger(__name__)

_ALWAYS_SATISFIED = (DeliveryChannel.MANUAL, DeliveryChannel.CHAIN)


class LinkResolver:
    def __init__(self, catalogue: Catalogue):
        self._catalogue = catalogue

    def resolve(self, event: Event) -> ResolveOutcome:
        links: list[ActionLink] = []
        for instance in self._source_instances(event):
            if not self._is_armed(instance, event):
                continue
            for link in self._catalogue.links_from_instance(instance):
                if self._condition_holds(link, event):
                    links.append(link)

        if not links:
            logger.debug(f"No matching link for event {event.id}")
            return NoMatchingLink(event)

        links.sort(key=lambda link: (link.position, link.area_id, link.target_position))
        return Resolved(event, tuple(links))

    def _source_instances(self, event: Event) -> list[ActionInstance]:
        if event.action_instance_id is None:
            return self._catalogue.find_trigger_instances(
                event.source_service, event.source_action_type
            )

        instance = self._catalogue.get_instance(event.action_instance_id)
        if instance is None:
            logger.debug(f"Event {event.id} bound to unknown instance {event.action_instance_id}")
            return []
        if instance.definition_key != event.handler_key:
            logger.warning(
                f"Event {event.id} is {event.source_service}/{event.source_action_type} "
                f"but bound instance {instance.id} is {instance.provider}/{instance.action_type}"
            )
            return []
        return [instance]

    def _is_armed(self, instance: ActionInstance, event: Event) -> bool:
        if not instance.enabled:
            return False

        area = self._catalogue.get_area(instance.area_id)
        if area is None or not area.enabled:
            return False

        if event.action_instance_id is not None and event.channel in _ALWAYS_SATISFIED:
            return True

        mode = instance.activation_mode
        return mode is not None and mode.channel == event.channel

    @staticmethod
    def _condition_holds(link: ActionLink, event: Event) -> bool:
        try:
            return evaluate_condition(event.raw_payload, link.condition)
        except ConditionError as e:
            logger.warning(f"Link {link.link_id} excluded, condition cannot be evaluated: {e}")
            return False

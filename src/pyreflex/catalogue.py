"""
Catalogue - lookup of definitions, Areas, instances and links.

Authoring (building Areas, editing the provider catalogue) happens outside
the orchestration core. The core only needs lookups and the Area enabled
flag, so the interface below is narrow and synchronous; a backend that
persists the catalogue elsewhere only has to keep an in-process snapshot
current.

Design Pattern: Repository
InMemoryCatalogue indexes Areas by instance id and link id so resolver
lookups are O(1) per hop.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pyreflex.models import ActionDefinition, ActionInstance, ActionLink, Area

logger = logging.getLogger(__name__)


class CatalogueError(Exception):
    """Catalogue misuse (unknown definition, duplicate ids, dangling links)."""

    pass


class Catalogue(ABC):
    """Read interface used by the normalizer, resolver and dispatcher."""

    @abstractmethod
    def get_definition(self, provider: str, action_type: str) -> ActionDefinition | None:
        pass

    @abstractmethod
    def get_area(self, area_id: str) -> Area | None:
        pass

    @abstractmethod
    def get_instance(self, instance_id: str) -> ActionInstance | None:
        pass

    @abstractmethod
    def get_link(self, link_id: str) -> ActionLink | None:
        pass

    @abstractmethod
    def find_trigger_instances(self, provider: str, action_type: str) -> list[ActionInstance]:
        """Return every instance of ``(provider, action_type)`` armed as a trigger."""
        pass

    @abstractmethod
    def set_area_enabled(self, area_id: str, enabled: bool) -> None:
        """Flip an Area's enabled flag. The only write the core performs."""
        pass

    def links_from_instance(self, instance: ActionInstance) -> list[ActionLink]:
        """Outgoing links of an instance inside its Area."""
        area = self.get_area(instance.area_id)
        if area is None:
            return []
        return area.links_from(instance.position)


class InMemoryCatalogue(Catalogue):
    """
    Dictionary-backed catalogue.

    Usage:
        catalogue = InMemoryCatalogue()
        catalogue.register_definition(ActionDefinition("github", "issue_opened"))
        catalogue.add_area(area)
    """

    def __init__(self):
        self._definitions: dict[tuple[str, str], ActionDefinition] = {}
        self._areas: dict[str, Area] = {}
        self._instances: dict[str, ActionInstance] = {}
        self._links: dict[str, ActionLink] = {}

    def __repr__(self) -> str:
        return (
            f"InMemoryCatalogue(definitions={len(self._definitions)}, "
            f"areas={len(self._areas)})"
        )

    # ========================================================================
    # Authoring
    # ========================================================================

    def register_definition(self, definition: ActionDefinition) -> InMemoryCatalogue:
        """Register (or replace) an ActionDefinition. Returns self for chaining."""
        self._definitions[definition.key] = definition
        return self

    def add_area(self, area: Area) -> None:
        """
        Index an Area with its instances and links.

        Raises:
            CatalogueError: If an instance references an unregistered
                definition, an id is already taken by another Area, or a
                link points at a position with no instance.
        """
        if area.id in self._areas:
            raise CatalogueError(f"Area already registered: {area.id}")

        positions = set()
        for instance in area.instances:
            if instance.area_id != area.id:
                raise CatalogueError(
                    f"Instance {instance.id} belongs to {instance.area_id}, not {area.id}"
                )
            if instance.definition_key not in self._definitions:
                raise CatalogueError(
                    f"Instance {instance.id} references unknown definition "
                    f"{instance.provider}/{instance.action_type}"
                )
            if instance.id in self._instances:
                raise CatalogueError(f"Instance id already registered: {instance.id}")
            positions.add(instance.position)

        for link in area.links:
            if link.source_position not in positions or link.target_position not in positions:
                raise CatalogueError(f"Link {link.link_id} references a missing position")

        self._areas[area.id] = area
        for instance in area.instances:
            self._instances[instance.id] = instance
        for link in area.links:
            self._links[link.link_id] = link

        logger.debug(
            f"Catalogue: added area {area.id} "
            f"({len(area.instances)} instances, {len(area.links)} links)"
        )

    def remove_area(self, area_id: str) -> Area | None:
        area = self._areas.pop(area_id, None)
        if area is None:
            return None
        for instance in area.instances:
            self._instances.pop(instance.id, None)
        for link in area.links:
            self._links.pop(link.link_id, None)
        return area

    def set_area_enabled(self, area_id: str, enabled: bool) -> None:
        area = self._areas.get(area_id)
        if area is None:
            raise CatalogueError(f"Unknown area: {area_id}")
        area.enabled = enabled

    # ========================================================================
    # Lookups
    # ========================================================================

    def get_definition(self, provider: str, action_type: str) -> ActionDefinition | None:
        return self._definitions.get((str(provider), action_type))

    def get_area(self, area_id: str) -> Area | None:
        return self._areas.get(area_id)

    def get_instance(self, instance_id: str) -> ActionInstance | None:
        return self._instances.get(instance_id)

    def get_link(self, link_id: str) -> ActionLink | None:
        return self._links.get(link_id)

    def find_trigger_instances(self, provider: str, action_type: str) -> list[ActionInstance]:
        key = (str(provider), action_type)
        return [
            instance
            for instance in self._instances.values()
            if instance.definition_key == key and instance.activation_mode is not None
        ]

"""
Tests for the LinkResolver.
"""

from datetime import timedelta

import pytest

from conftest import AREA_ID, DISCORD_ID, SLACK_ID, TRIGGER_ID, issue_payload
from pyreflex.catalogue import CatalogueError
from pyreflex.models import (
    ActionInstance,
    ActionLink,
    Area,
    DeliveryChannel,
    DeliveryMetadata,
    Poll,
    Webhook,
)
from pyreflex.pipeline import EventNormalizer, LinkResolver, NoMatchingLink, Resolved


def _resolve(catalogue, clock, payload, metadata=None, provider="github", action="issue_opened"):
    event = EventNormalizer(catalogue, clock).normalize(provider, action, payload, metadata).event
    return LinkResolver(catalogue).resolve(event)


def test_fan_out_in_link_order(catalogue, clock):
    outcome = _resolve(catalogue, clock, issue_payload(label="bug"))

    assert isinstance(outcome, Resolved)
    assert [link.target_position for link in outcome.links] == [1, 2]
    assert [link.link_id for link in outcome.links] == [
        f"{AREA_ID}:0->1",
        f"{AREA_ID}:0->2",
    ]


def test_condition_filters_links(catalogue, clock):
    outcome = _resolve(catalogue, clock, issue_payload(label="question"))

    assert isinstance(outcome, Resolved)
    assert [link.target_position for link in outcome.links] == [1]


def test_disabled_area_matches_nothing(catalogue, clock):
    catalogue.set_area_enabled(AREA_ID, False)
    outcome = _resolve(catalogue, clock, issue_payload())
    assert isinstance(outcome, NoMatchingLink)


def test_unknown_area_cannot_be_toggled(catalogue):
    with pytest.raises(CatalogueError):
        catalogue.set_area_enabled("area-missing", False)


def test_channel_must_match_activation_mode(catalogue, clock):
    # The github trigger is webhook-armed; an unbound poll delivery does not arm it
    outcome = _resolve(
        catalogue, clock, issue_payload(), DeliveryMetadata(channel=DeliveryChannel.POLL)
    )
    assert isinstance(outcome, NoMatchingLink)


def test_bound_delivery_only_considers_its_instance(catalogue, clock):
    polled_area = "area-polled"
    catalogue.add_area(
        Area(
            polled_area,
            instances=[
                ActionInstance(
                    "inst-poll",
                    polled_area,
                    "github",
                    "issue_opened",
                    0,
                    activation_mode=Poll(timedelta(minutes=1)),
                ),
                ActionInstance("inst-poll-reaction", polled_area, "slack", "post_message", 1),
            ],
            links=[ActionLink(polled_area, 0, 1)],
        )
    )

    outcome = _resolve(
        catalogue,
        clock,
        issue_payload(),
        DeliveryMetadata(channel=DeliveryChannel.POLL, action_instance_id="inst-poll"),
    )

    assert isinstance(outcome, Resolved)
    assert [link.area_id for link in outcome.links] == [polled_area]


def test_manual_delivery_fires_bound_instance(catalogue, clock):
    outcome = _resolve(
        catalogue,
        clock,
        issue_payload(label="bug"),
        DeliveryMetadata(channel=DeliveryChannel.MANUAL, action_instance_id=TRIGGER_ID),
    )
    assert isinstance(outcome, Resolved)
    assert len(outcome.links) == 2


def test_bound_instance_of_other_definition_is_ignored(catalogue, clock):
    outcome = _resolve(
        catalogue,
        clock,
        {"ref": "main"},
        DeliveryMetadata(channel=DeliveryChannel.MANUAL, action_instance_id=TRIGGER_ID),
        action="push",
    )
    assert isinstance(outcome, NoMatchingLink)


def test_malformed_condition_excludes_only_that_link(catalogue, clock):
    broken = "area-broken-links"
    catalogue.add_area(
        Area(
            broken,
            instances=[
                ActionInstance("b-0", broken, "github", "push", 0, activation_mode=Webhook()),
                ActionInstance("b-1", broken, "discord", "send_message", 1),
                ActionInstance("b-2", broken, "slack", "post_message", 2),
            ],
            links=[
                ActionLink(broken, 0, 1, position=0, condition={"operator": "bogus"}),
                ActionLink(broken, 0, 2, position=1),
            ],
        )
    )

    outcome = _resolve(catalogue, clock, {"ref": "main"}, action="push")

    assert isinstance(outcome, Resolved)
    assert [link.link_id for link in outcome.links] == [f"{broken}:0->2"]


def test_catalogue_rejects_dangling_links(catalogue):
    with pytest.raises(CatalogueError):
        catalogue.add_area(
            Area(
                "area-dangling",
                instances=[
                    ActionInstance("d-0", "area-dangling", "github", "issue_opened", 0),
                ],
                links=[ActionLink("area-dangling", 0, 3)],
            )
        )


def test_catalogue_lookups(catalogue):
    assert catalogue.get_instance(DISCORD_ID).params == {"channel_id": "chan-42"}
    assert catalogue.get_link(f"{AREA_ID}:0->2").target_position == 2
    assert catalogue.links_from_instance(catalogue.get_instance(SLACK_ID)) == []

"""
Tests for the Deduplicator.

The store's check-and-set is the only admission authority, so these tests
exercise it under concurrency and with a controllable clock.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import TRIGGER_ID, issue_payload
from pyreflex.models import ActionDefinition, DedupStrategy, DeliveryChannel, DeliveryMetadata
from pyreflex.pipeline import Accepted, Deduplicator, Duplicate, EventNormalizer


def _event(catalogue, clock, provider, action_type, payload, metadata=None):
    outcome = EventNormalizer(catalogue, clock).normalize(provider, action_type, payload, metadata)
    return outcome.event


@pytest.mark.asyncio
async def test_second_delivery_is_duplicate(store, catalogue, clock):
    dedup = Deduplicator(store, catalogue, clock)
    first = _event(catalogue, clock, "github", "issue_opened", issue_payload(issue_id=1))
    second = _event(catalogue, clock, "github", "issue_opened", issue_payload(issue_id=1))

    assert isinstance(await dedup.admit(first), Accepted)
    outcome = await dedup.admit(second)

    assert isinstance(outcome, Duplicate)
    assert outcome.key == "dedup:github:issue_opened:BY_KEY:1"


@pytest.mark.asyncio
async def test_none_strategy_admits_everything(store, catalogue, clock):
    catalogue.register_definition(ActionDefinition("github", "comment"))
    dedup = Deduplicator(store, catalogue, clock)

    for _ in range(3):
        event = _event(catalogue, clock, "github", "comment", {"body": "same"})
        assert isinstance(await dedup.admit(event), Accepted)


@pytest.mark.asyncio
async def test_content_hash_strategy(store, catalogue, clock):
    dedup = Deduplicator(store, catalogue, clock)
    a = _event(catalogue, clock, "github", "push", {"ref": "main", "after": "abc"})
    b = _event(catalogue, clock, "github", "push", {"after": "abc", "ref": "main"})
    c = _event(catalogue, clock, "github", "push", {"ref": "main", "after": "def"})

    assert isinstance(await dedup.admit(a), Accepted)
    assert isinstance(await dedup.admit(b), Duplicate)
    assert isinstance(await dedup.admit(c), Accepted)


@pytest.mark.asyncio
async def test_instance_bound_keys_are_independent(store, catalogue, clock):
    dedup = Deduplicator(store, catalogue, clock)
    webhook = _event(catalogue, clock, "github", "issue_opened", issue_payload(issue_id=5))
    polled = _event(
        catalogue,
        clock,
        "github",
        "issue_opened",
        issue_payload(issue_id=5),
        DeliveryMetadata(channel=DeliveryChannel.POLL, action_instance_id=TRIGGER_ID),
    )

    assert isinstance(await dedup.admit(webhook), Accepted)
    assert isinstance(await dedup.admit(polled), Accepted)


@pytest.mark.asyncio
async def test_windowed_dedup(store, catalogue, clock):
    """A 60s window rejects a repeat at 30s and admits it again at 61s."""
    catalogue.register_definition(
        ActionDefinition(
            "github",
            "workflow_failed",
            natural_key="run",
            dedup=DedupStrategy.windowed(timedelta(seconds=60)),
        )
    )
    dedup = Deduplicator(store, catalogue, clock)

    def delivery():
        return _event(catalogue, clock, "github", "workflow_failed", {"run": "ci-1"})

    assert isinstance(await dedup.admit(delivery()), Accepted)

    clock.advance(30)
    assert isinstance(await dedup.admit(delivery()), Duplicate)

    clock.advance(31)
    assert isinstance(await dedup.admit(delivery()), Accepted)


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_concurrent_identical_admissions_single_accept(store, catalogue, clock):
    """
    Race Condition Test: N identical deliveries admitted concurrently.

    Exactly one is Accepted, the rest are Duplicate.
    """
    dedup = Deduplicator(store, catalogue, clock)
    events = [
        _event(catalogue, clock, "github", "issue_opened", issue_payload(issue_id=77))
        for _ in range(25)
    ]

    outcomes = await asyncio.gather(*[dedup.admit(event) for event in events])

    accepted = [o for o in outcomes if isinstance(o, Accepted)]
    duplicates = [o for o in outcomes if isinstance(o, Duplicate)]
    assert len(accepted) == 1
    assert len(duplicates) == 24

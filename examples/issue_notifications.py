"""
Issue notifications: a GitHub webhook fans out to Discord and Slack.

The Discord reaction fails once with a transient error and is retried;
its result then chains into a Slack thread reply. A redelivery of the
same webhook is recognized as a duplicate.

Run with:
    python examples/issue_notifications.py
"""

import asyncio
import logging
from itertools import count

from pyreflex import (
    ActionDefinition,
    ActionInstance,
    ActionLink,
    Area,
    DedupStrategy,
    DeliveryMetadata,
    Dispatcher,
    HandlerRegistry,
    InMemoryCatalogue,
    Pipeline,
    RetryManager,
    RetryPolicy,
    SqliteExecutionStore,
    Webhook,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

handlers = HandlerRegistry()
message_ids = count(1)
discord_calls = 0
thread_posted = asyncio.Event()


@handlers.handler("discord", "send_message")
async def send_message(instance_id, payload):
    global discord_calls
    discord_calls += 1
    if discord_calls == 1:
        raise ConnectionError("discord gateway reset")
    message_id = f"m-{next(message_ids)}"
    print(f"[discord] {payload['channel_id']}: {payload['content']} ({message_id})")
    return {"message_id": message_id}


@handlers.handler("slack", "post_message")
async def post_message(instance_id, payload):
    print(f"[slack] {payload}")
    thread_posted.set()
    return {"ts": "1718000000.000100"}


def build_catalogue() -> InMemoryCatalogue:
    catalogue = InMemoryCatalogue()
    catalogue.register_definition(
        ActionDefinition(
            "github",
            "issue_opened",
            required_fields=("issue.number",),
            natural_key="issue.number",
            dedup=DedupStrategy.BY_KEY,
        )
    ).register_definition(
        ActionDefinition("discord", "send_message", is_trigger=False, is_executable=True)
    ).register_definition(
        ActionDefinition("slack", "post_message", is_trigger=False, is_executable=True)
    )

    catalogue.add_area(
        Area(
            "area-issues",
            owner_id="user-1",
            name="Issue notifications",
            instances=[
                ActionInstance(
                    "gh", "area-issues", "github", "issue_opened", 0, activation_mode=Webhook()
                ),
                ActionInstance(
                    "dc",
                    "area-issues",
                    "discord",
                    "send_message",
                    1,
                    params={"channel_id": "chan-42"},
                ),
                ActionInstance("sl", "area-issues", "slack", "post_message", 2),
            ],
            links=[
                ActionLink(
                    "area-issues",
                    0,
                    1,
                    mapping={
                        "content": {
                            "type": "template",
                            "template": "New issue #{{issue.number}}: {{issue.title}}",
                        }
                    },
                ),
                ActionLink(
                    "area-issues",
                    1,
                    2,
                    mapping={
                        "text": {
                            "type": "template",
                            "template": "Posted {{trigger_result.message_id}}",
                        }
                    },
                ),
            ],
        )
    )
    return catalogue


async def main():
    store = SqliteExecutionStore(":memory:")
    await store.connect()

    catalogue = build_catalogue()
    pipeline = Pipeline(store, catalogue)

    dispatcher = (
        Dispatcher(store, catalogue, handlers, "dispatcher-1")
        .with_retry_manager(
            RetryManager(
                RetryPolicy(
                    max_attempts=3,
                    initial_delay_ms=200,
                    max_delay_ms=1000,
                    backoff_multiplier=2.0,
                )
            )
        )
        .with_poll_interval(0.05)
        .with_publisher(pipeline)
    )
    handle = await dispatcher.start()

    payload = {"issue": {"number": 7, "title": "Crash on start"}}
    delivery = DeliveryMetadata(idempotency_key="delivery-7")
    print(await pipeline.ingest("github", "issue_opened", payload, delivery))
    print(await pipeline.ingest("github", "issue_opened", payload, delivery))

    await asyncio.wait_for(thread_posted.wait(), timeout=10)
    while (await pipeline.tracker.statistics()).active:
        await asyncio.sleep(0.05)

    stats = await pipeline.tracker.statistics()
    print(f"Done: {stats.as_dict()}")

    await handle.shutdown()
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())

"""
Reaction handler capability table.

Provider-specific behaviour lives in external handlers; the core only
needs a uniform contract looked up by ``(provider, action_type)``:

    async def handler(action_instance_id: str, payload: dict) -> Mapping | None

The returned mapping becomes the execution's ``result_payload`` (None is
recorded as ``{}``). Raising signals failure; the RetryManager decides
what happens next.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

ReactionHandler = Callable[[str, dict[str, Any]], Awaitable[Mapping[str, Any] | None]]


class HandlerRegistry:
    """Registry mapping ``(provider, action_type)`` to reaction handlers.

    Example:
        ```python
        handlers = HandlerRegistry()

        @handlers.handler("discord", "send_message")
        async def send_message(instance_id, payload):
            message = await discord.post(payload["channel_id"], payload["content"])
            return {"message_id": message.id}

        # Or register explicitly
        handlers.register("slack", "post_message", post_message)
        ```
    """

    def __init__(self):
        """Create a new empty handler registry."""
        self._handlers: dict[tuple[str, str], ReactionHandler] = {}

    def register(
        self, provider: str, action_type: str, handler: ReactionHandler
    ) -> HandlerRegistry:
        """Register (or replace) the handler for ``(provider, action_type)``."""
        key = (str(provider), action_type)
        if key in self._handlers:
            logger.warning(f"Replacing handler for {key[0]}/{action_type}")
        self._handlers[key] = handler
        logger.debug(f"Registered handler: {key[0]}/{action_type}")
        return self

    def handler(
        self, provider: str, action_type: str
    ) -> Callable[[ReactionHandler], ReactionHandler]:
        """Decorator form of register()."""

        def decorator(fn: ReactionHandler) -> ReactionHandler:
            self.register(provider, action_type, fn)
            return fn

        return decorator

    def get(self, provider: str, action_type: str) -> ReactionHandler | None:
        """Get the handler for a key.

        Returns:
            Handler if registered, None otherwise
        """
        return self._handlers.get((str(provider), action_type))

    def __contains__(self, key: tuple[str, str]) -> bool:
        return (str(key[0]), key[1]) in self._handlers

    def __len__(self) -> int:
        """Returns the number of registered handlers."""
        return len(self._handlers)

    def is_empty(self) -> bool:
        """Returns True if no handlers are registered."""
        return len(self._handlers) == 0

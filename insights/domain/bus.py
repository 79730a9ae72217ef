"""Simple in-process async event bus."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """Publish/subscribe bus for domain events.

    Handlers are awaited in registration order. A failing handler does not
    stop the others; its exception is returned to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._subscribers[event_type].append(handler)

    async def publish(self, event: Any) -> list[Exception]:
        errors: list[Exception] = []
        for handler in self._subscribers.get(type(event), []):
            try:
                await handler(event)
            except Exception as exc:
                logger.warning(
                    "Handler %s failed for %s: %s",
                    getattr(handler, "__name__", handler),
                    type(event).__name__,
                    exc,
                )
                errors.append(exc)
        return errors

"""Publish/subscribe channel for session change notifications.

Usage:
    bus = EventBus()

    async def on_session_changed(event):
        render(event.data["state"])

    bus.subscribe(SESSION_CHANGED, on_session_changed)
    await bus.publish(SESSION_CHANGED, {"reason": "messages", "state": snapshot})
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

SESSION_CHANGED = "session.changed"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Deliver named events to sync or async handlers in subscription order.

    A failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[Event], Any]]] = {}

    def subscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug("Subscribed to event: %s", event_name)

    def unsubscribe(self, event_name: str, handler: Callable[[Event], Any]) -> None:
        handlers = self._subscribers.get(event_name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to every current subscriber."""
        handlers = list(self._subscribers.get(event_name, []))
        if not handlers:
            return

        event = Event(name=event_name, data=data, source=source)
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception(
                    "events.handler.failed",
                    extra={"event": "events.handler.failed", "event_name": event_name},
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()

"""Tracking for detached background coroutines such as connection checks."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundTasks:
    """Own fire-and-forget tasks so they can be awaited or cancelled on shutdown."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, T], name: str | None = None
    ) -> asyncio.Task[T]:
        """Schedule ``coro`` on the running loop and track it.

        Spawning under a name that is still running keeps the earlier task
        tracked anonymously; it is not cancelled.
        """
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._log_failure)
        if name is None:
            self._track_anonymous(task)
            return task

        previous = self._named.get(name)
        if previous is not None and not previous.done():
            self._track_anonymous(previous)
        self._named[name] = task
        return task

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    @property
    def pending(self) -> int:
        tasks = list(self._named.values()) + list(self._anonymous)
        return sum(1 for task in tasks if not task.done())

    async def wait_idle(self) -> None:
        """Await every tracked task, including ones spawned while waiting."""
        while True:
            outstanding = [
                task
                for task in list(self._named.values()) + list(self._anonymous)
                if not task.done()
            ]
            if not outstanding:
                return
            await asyncio.gather(*outstanding, return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [
            task
            for task in list(self._named.values()) + list(self._anonymous)
            if not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._named.clear()
        self._anonymous.clear()

    def _track_anonymous(self, task: asyncio.Task[Any]) -> None:
        self._anonymous.add(task)
        task.add_done_callback(self._anonymous.discard)

    @staticmethod
    def _log_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "tasks.failed",
                extra={"event": "tasks.failed", "task": task.get_name()},
                exc_info=exc,
            )

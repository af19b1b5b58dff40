"""Lifecycle tracking for in-flight generation tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named asyncio tasks so they can be awaited or torn down together.

    Finished tasks drop out on their own; a failed task's exception is logged
    rather than left unretrieved.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def add(self, name: str, task: asyncio.Task[Any]) -> None:
        """Track ``task`` under ``name``; the name frees up once the task ends."""
        self._tasks[name] = task
        task.add_done_callback(lambda done: self._on_done(name, done))

    def _on_done(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task": name,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    @property
    def names(self) -> list[str]:
        return list(self._tasks)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def await_all(self) -> None:
        """Await all tracked tasks without cancelling them."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

"""Lifecycle tracking for background asyncio work.

Named tasks are keyed by the id of the message they produce, so a request can
be abandoned without touching unrelated requests. Anonymous tasks (persistence
writes) clean themselves up when they finish.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous background tasks on the owner loop."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return sum(1 for task in self._all() if not task.done())

    def _all(self) -> list[asyncio.Task[Any]]:
        return list(self._named.values()) + list(self._anonymous)

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Track ``task``; a named task drops its entry once it finishes."""
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done: self._forget(name, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
        task.add_done_callback(self._log_exception)

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    def _log_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task": task.get_name(),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    async def cancel(self, name: str) -> bool:
        """Cancel a named task and wait for it; return False if nothing was running."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    async def wait_all(self) -> None:
        """Wait for every tracked task, including ones added while waiting."""
        while True:
            pending = [task for task in self._all() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        pending = [task for task in self._all() if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._named.clear()
        self._anonymous.clear()

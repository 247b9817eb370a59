"""BackgroundDispatcher: fire-and-forget tasks with failure logging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Holds strong references to background tasks and logs their failures.

    ``dispatched`` counts every task ever submitted, ``failed`` those that
    raised. ``drain()`` waits for everything still pending.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.dispatched = 0
        self.failed = 0

    def dispatch(self, coro: Coroutine[Any, Any, Any], name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        self.dispatched += 1
        task.add_done_callback(lambda t: self._on_done(t, name))
        return task

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task %s cancelled", name)
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.error("Background task %s failed: %s", name, exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

"""SummarizationLockManager: per-conversation join-or-start for compression work."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class SummarizationLockManager:
    """Keyed in-process lock whose value is the in-flight compression task.

    A second caller for the same conversation receives the existing task
    instead of starting new work. Entries are removed ``release_delay``
    seconds after the task finishes, so a trailing duplicate request inside
    that window still joins. Not persisted; scoped to one event loop.
    """

    def __init__(self, release_delay: float = 2.0) -> None:
        self.release_delay = release_delay
        self._inflight: dict[str, asyncio.Task] = {}

    def is_locked(self, conversation_id: str) -> bool:
        return conversation_id in self._inflight

    def acquire_or_join(
        self,
        conversation_id: str,
        work: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task:
        """Return the in-flight task for ``conversation_id`` or start ``work()``."""
        existing = self._inflight.get(conversation_id)
        if existing is not None:
            logger.info("Joining in-flight summarization for %s", conversation_id)
            return existing

        task = asyncio.ensure_future(work())
        self._inflight[conversation_id] = task
        task.add_done_callback(lambda t: self._schedule_release(conversation_id, t))
        logger.info("Acquired summarization lock for %s", conversation_id)
        return task

    def release(self, conversation_id: str, handle: asyncio.Task | None = None) -> bool:
        """Drop the entry for ``conversation_id``.

        With ``handle``, only drops it if it is still that task, so a delayed
        release never removes a newer lock. Returns True if an entry was removed.
        """
        current = self._inflight.get(conversation_id)
        if current is None:
            return False
        if handle is not None and current is not handle:
            return False
        del self._inflight[conversation_id]
        logger.debug("Released summarization lock for %s", conversation_id)
        return True

    def _schedule_release(self, conversation_id: str, task: asyncio.Task) -> None:
        if self.release_delay <= 0:
            self.release(conversation_id, task)
            return
        task.get_loop().call_later(self.release_delay, self.release, conversation_id, task)

    def __len__(self) -> int:
        return len(self._inflight)

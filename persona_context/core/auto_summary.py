"""AutoSummarizer: lock, generate and store an automatic summary with bounded retry."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from ..types import Character, Conversation, DurableSummary, SummaryOutcome, SummaryTrigger
from .locks import SummarizationLockManager
from .store import ConversationStore
from .summarizer import SummaryGenerator

logger = logging.getLogger(__name__)


class AutoSummarizer:
    """Runs a triggered compression under the per-conversation lock.

    The lock manager never retries. The caller that started the work retries
    up to ``max_attempts`` times, clearing the failed lock and waiting
    ``retry_backoff`` seconds before re-acquiring. Callers that joined someone
    else's work share its result or failure and do not retry.
    """

    def __init__(
        self,
        store: ConversationStore,
        generator: SummaryGenerator,
        locks: SummarizationLockManager,
        max_attempts: int = 3,
        retry_backoff: float = 2.0,
    ) -> None:
        self.store = store
        self.generator = generator
        self.locks = locks
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    async def run(
        self,
        trigger: SummaryTrigger,
        conversation: Conversation,
        character: Character,
    ) -> SummaryOutcome | None:
        """Returns the stored summary outcome, or None if compression gave up."""
        if not trigger.triggered:
            return None

        cid = conversation.id
        for attempt in range(1, self.max_attempts + 1):
            owner = not self.locks.is_locked(cid)
            task = self.locks.acquire_or_join(
                cid, lambda: self._compress(trigger, conversation, character)
            )
            try:
                # shield: a cancelled turn must not cancel work other turns joined
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Summary attempt %d/%d for %s failed: %s",
                    attempt, self.max_attempts, cid, e,
                )
                if not owner:
                    return None
                self.locks.release(cid, task)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_backoff)

        logger.error("Giving up on summary for %s after %d attempts", cid, self.max_attempts)
        return None

    async def _compress(
        self,
        trigger: SummaryTrigger,
        conversation: Conversation,
        character: Character,
    ) -> SummaryOutcome:
        cid = conversation.id

        boundary = await asyncio.to_thread(self.store.get_boundary, cid)
        if boundary >= trigger.range_end:
            existing = await asyncio.to_thread(self.store.get_automatic_summary, cid)
            if existing is not None:
                logger.info("Range %s of %s already summarized, skipping", trigger.range_label, cid)
                return SummaryOutcome(summary=existing, created=False, note="already summarized")

        parsed = await self.generator.generate(
            trigger.messages, character.name, trigger.range_label
        )

        now = datetime.now(timezone.utc)
        summary = DurableSummary(
            conversation_id=cid,
            character_id=conversation.character_id,
            user_id=conversation.user_id,
            title=f"{parsed.title} - {now:%Y-%m-%d} (AI: {trigger.range_label})",
            prose=parsed.prose,
            keywords=parsed.keywords,
            boundary=trigger.range_end,
            is_automatic=True,
            created_at=now,
            updated_at=now,
        )
        stored, created = await asyncio.to_thread(self.store.upsert_on_conflict, summary)
        logger.info(
            "%s automatic summary for %s covering AI %s (parse: %s)",
            "Created" if created else "Updated", cid, trigger.range_label, parsed.source,
        )
        return SummaryOutcome(summary=stored, created=created, note=parsed.source)

"""MemoryService: on-demand (manual) memories of the not-yet-summarized tail."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from ..types import DurableSummary, Message, TurnValidationError
from .billing import BillingService, memory_cost
from .store import ConversationStore
from .summarizer import MAX_KEYWORDS, SummaryGenerator, normalize_keywords
from .trigger import ai_sequence_numbers

logger = logging.getLogger(__name__)


def date_keywords(now: datetime) -> list[str]:
    """ISO date and long-form date, e.g. ``2025-07-21`` and ``July 21, 2025``."""
    return [now.date().isoformat(), f"{now:%B} {now.day}, {now.year}"]


def unsummarized_messages(history: list[Message], boundary: int) -> list[Message]:
    """Finished messages after the AI message that closes the automatic summary."""
    finished = [m for m in history if not m.is_placeholder and m.content.strip()]
    if boundary <= 0:
        return finished
    cutoff = 0
    for seq, message in ai_sequence_numbers(history):
        if seq == boundary:
            cutoff = message.ordinal
            break
    return [m for m in finished if m.ordinal > cutoff]


class MemoryService:
    def __init__(
        self,
        store: ConversationStore,
        generator: SummaryGenerator,
        billing: BillingService,
    ) -> None:
        self.store = store
        self.generator = generator
        self.billing = billing

    async def create_memory(self, conversation_id: str, user_id: str) -> DurableSummary:
        conversation = await asyncio.to_thread(self.store.get_conversation, conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise TurnValidationError(f"Conversation not found: {conversation_id}")
        character = await asyncio.to_thread(self.store.get_character, conversation.character_id)
        if character is None:
            raise TurnValidationError(f"Character not found: {conversation.character_id}")

        history, boundary = await asyncio.gather(
            asyncio.to_thread(self.store.get_history, conversation_id),
            asyncio.to_thread(self.store.get_boundary, conversation_id),
        )
        pending = unsummarized_messages(history, boundary)
        if not pending:
            raise TurnValidationError(
                "No new messages to summarize - all messages are already covered by existing summaries"
            )

        cost = memory_cost("".join(m.content for m in pending))
        await self.billing.charge(user_id, cost, reason="manual memory")

        try:
            parsed = await self.generator.generate(pending, character.name, f"{pending[0].ordinal}-{pending[-1].ordinal}")
        except Exception:
            await asyncio.to_thread(self.store.add_credits, user_id, cost)
            logger.warning("Refunded %d credits to %s after failed memory generation", cost, user_id)
            raise

        now = datetime.now(timezone.utc)
        summary = DurableSummary(
            conversation_id=conversation_id,
            character_id=conversation.character_id,
            user_id=user_id,
            title=parsed.title,
            prose=parsed.prose,
            keywords=normalize_keywords(parsed.keywords + date_keywords(now), limit=MAX_KEYWORDS + 2),
            boundary=boundary,
            is_automatic=False,
            created_at=now,
            updated_at=now,
        )
        stored = await asyncio.to_thread(self.store.save_summary, summary)
        logger.info(
            "Manual memory for %s covers %d messages, cost %d credits",
            conversation_id, len(pending), cost,
        )
        return stored

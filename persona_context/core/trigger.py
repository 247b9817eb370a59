"""SummaryTriggerEvaluator: decides when a conversation is due for compression."""

from __future__ import annotations

import logging

from ..types import Message, SummaryTrigger
from .locks import SummarizationLockManager

logger = logging.getLogger(__name__)


def ai_sequence_numbers(history: list[Message]) -> list[tuple[int, Message]]:
    """Pair each countable AI message with its 1-based AI-sequence number.

    Placeholders, blank AI messages and the placeholder sentinel are skipped.
    """
    ordered = sorted(history, key=lambda m: m.ordinal)
    numbered: list[tuple[int, Message]] = []
    for message in ordered:
        if message.is_countable_ai:
            numbered.append((len(numbered) + 1, message))
    return numbered


class SummaryTriggerEvaluator:
    """Fire exactly once per ``interval`` AI messages past the stored boundary."""

    def __init__(
        self,
        interval: int = 15,
        locks: SummarizationLockManager | None = None,
    ) -> None:
        self.interval = interval
        self.locks = locks

    def evaluate(
        self,
        conversation_id: str,
        history: list[Message],
        last_boundary: int = 0,
    ) -> SummaryTrigger:
        next_at = last_boundary + self.interval

        if self.locks is not None and self.locks.is_locked(conversation_id):
            logger.info("Summary already in progress for %s, skipping trigger", conversation_id)
            return SummaryTrigger(
                triggered=False,
                last_boundary=last_boundary,
                next_summary_at=next_at,
                lock_prevented=True,
            )

        numbered = ai_sequence_numbers(history)
        current = numbered[-1][0] if numbered else 0

        # Equality, not >=: the trigger must not refire on every later turn.
        if current != next_at:
            return SummaryTrigger(
                triggered=False,
                current_ai_count=current,
                last_boundary=last_boundary,
                next_summary_at=next_at,
            )

        targets = [m for seq, m in numbered if last_boundary < seq <= next_at]
        first_ordinal = targets[0].ordinal
        last_ordinal = targets[-1].ordinal
        in_range = [
            m for m in sorted(history, key=lambda m: m.ordinal)
            if first_ordinal <= m.ordinal <= last_ordinal
            and (m.is_countable_ai if m.is_ai else bool(m.content.strip()))
        ]

        logger.info(
            "Summary triggered for %s: AI messages %d-%d (%d messages)",
            conversation_id, last_boundary + 1, next_at, len(in_range),
        )
        return SummaryTrigger(
            triggered=True,
            current_ai_count=current,
            last_boundary=last_boundary,
            next_summary_at=next_at,
            messages=in_range,
            range_start=last_boundary + 1,
            range_end=next_at,
        )

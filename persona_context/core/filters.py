"""Keyword filters selecting world info and memories relevant to the current turn."""

from __future__ import annotations

import logging
from typing import TypeVar

from ..types import MemoryEntry, Message, WorldInfoEntry

logger = logging.getLogger(__name__)

MAX_ENTRIES = 3
RECENT_MESSAGES = 5

E = TypeVar("E", WorldInfoEntry, MemoryEntry)


def conversation_text(user_message: str, recent: list[Message], lookback: int = RECENT_MESSAGES) -> str:
    """User message plus the last ``lookback`` history messages, lower-cased."""
    window = recent[-lookback:] if lookback > 0 else []
    return " ".join([user_message, *(m.content or "" for m in window)]).lower()


def _matches(keywords: list[str], text: str) -> bool:
    for keyword in keywords:
        normalized = keyword.strip().lower()
        if normalized and normalized in text:
            return True
    return False


def _keep_matching(entries: list[E], text: str) -> list[E]:
    return [e for e in entries if e.keywords and _matches(e.keywords, text)]


def filter_world_info(
    entries: list[WorldInfoEntry],
    user_message: str,
    recent: list[Message],
    limit: int = MAX_ENTRIES,
    lookback: int = RECENT_MESSAGES,
) -> list[WorldInfoEntry]:
    """World-info entries whose keywords occur in the recent conversation, in stored order."""
    if not entries:
        return []
    matched = _keep_matching(entries, conversation_text(user_message, recent, lookback))
    logger.debug("World info: %d of %d entries relevant", len(matched), len(entries))
    return matched[:limit]


def filter_memories(
    entries: list[MemoryEntry],
    user_message: str,
    recent: list[Message],
    limit: int = MAX_ENTRIES,
    lookback: int = RECENT_MESSAGES,
) -> list[MemoryEntry]:
    """Memories whose keywords occur in the recent conversation, newest first."""
    if not entries:
        return []
    matched = _keep_matching(entries, conversation_text(user_message, recent, lookback))
    matched.sort(key=lambda m: m.created_at, reverse=True)
    logger.debug("Memories: %d of %d entries relevant", len(matched), len(entries))
    return matched[:limit]

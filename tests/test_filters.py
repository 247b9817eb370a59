"""Tests for world-info and memory keyword filters."""

from datetime import datetime, timedelta, timezone

from persona_context.core.filters import conversation_text, filter_memories, filter_world_info
from persona_context.types import MemoryEntry, Message, WorldInfoEntry


def _recent(*texts: str) -> list[Message]:
    return [Message("conv-1", i + 1, "user" if i % 2 == 0 else "ai", t) for i, t in enumerate(texts)]


class TestConversationText:
    def test_lowercases_and_limits_lookback(self):
        recent = _recent("one", "two", "THREE")
        text = conversation_text("Hello", recent, lookback=2)
        assert text == "hello two three"

    def test_zero_lookback(self):
        assert conversation_text("Hi", _recent("x"), lookback=0) == "hi"


class TestFilterWorldInfo:
    def test_matches_keywords_case_insensitively(self):
        entries = [
            WorldInfoEntry(["Harbor"], "The harbor."),
            WorldInfoEntry(["castle"], "The castle."),
            WorldInfoEntry([], "No keywords."),
        ]
        result = filter_world_info(entries, "Let's walk to the HARBOR", [])
        assert [e.text for e in result] == ["The harbor."]

    def test_matches_recent_history(self):
        entries = [WorldInfoEntry(["lighthouse"], "Lighthouse lore.")]
        result = filter_world_info(entries, "What now?", _recent("the lighthouse is dark"))
        assert len(result) == 1

    def test_limit_keeps_stored_order(self):
        entries = [WorldInfoEntry(["sea"], f"entry {i}") for i in range(5)]
        result = filter_world_info(entries, "the sea", [], limit=3)
        assert [e.text for e in result] == ["entry 0", "entry 1", "entry 2"]

    def test_blank_keywords_ignored(self):
        entries = [WorldInfoEntry(["  ", ""], "never")]
        assert filter_world_info(entries, "anything", []) == []

    def test_empty(self):
        assert filter_world_info([], "sea", []) == []


class TestFilterMemories:
    def test_newest_first(self):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        memories = [
            MemoryEntry(["storm"], "old", created_at=base),
            MemoryEntry(["storm"], "newest", created_at=base + timedelta(days=2)),
            MemoryEntry(["storm"], "middle", created_at=base + timedelta(days=1)),
            MemoryEntry(["picnic"], "unrelated", created_at=base + timedelta(days=3)),
        ]
        result = filter_memories(memories, "remember the storm?", [], limit=2)
        assert [m.text for m in result] == ["newest", "middle"]

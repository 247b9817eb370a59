"""Tests for the system prompt assembler."""

from datetime import datetime, timezone

import pytest

from persona_context.core.prompt import (
    SystemPromptAssembler,
    delay_category,
    format_delay,
    format_local_time,
    replace_templates,
)
from persona_context.types import (
    NO_CONTEXT,
    AddonSettings,
    ChatMode,
    DurableSummary,
    MemoryEntry,
    Persona,
    PromptInputs,
    SituationalContext,
    TimeAwareness,
    WorldInfoEntry,
)

NOW = datetime(2026, 10, 17, 19, 4, tzinfo=timezone.utc)


@pytest.fixture
def assembler():
    return SystemPromptAssembler(delay_threshold=30)


def _inputs(character, **kw) -> PromptInputs:
    return PromptInputs(character=character, addons=kw.pop("addons", AddonSettings()), user_name="Sam", **kw)


class TestHelpers:
    def test_replace_templates(self):
        assert replace_templates("{{user}} meets {{char}}", "Sam", "Aria") == "Sam meets Aria"
        assert replace_templates("", "Sam", "Aria") == ""

    def test_format_delay(self):
        assert format_delay(45) == "45 seconds"
        assert format_delay(600) == "10 minutes"
        assert format_delay(7200) == "2 hours"
        assert format_delay(3 * 86400) == "3 days"

    def test_delay_category(self):
        assert delay_category(60) == "short"
        assert delay_category(600) == "medium"
        assert delay_category(3600) == "long"
        assert delay_category(86400) == "very_long"

    def test_format_local_time(self):
        assert format_local_time(NOW, "UTC") == "Sat, Oct 17, 7:04 PM"
        assert format_local_time(NOW, "America/New_York") == "Sat, Oct 17, 3:04 PM"

    def test_unknown_timezone_falls_back_to_utc(self):
        assert format_local_time(NOW, "Mars/Olympus") == "Sat, Oct 17, 7:04 PM"


class TestBuild:
    def test_minimal_prompt(self, assembler, character):
        prompt = assembler.build(_inputs(character))
        assert prompt.startswith(
            "You are Aria, a cheerful lighthouse keeper who loves talking to Sam."
        )
        assert "Description: Aria keeps the old lighthouse" in prompt
        assert "Scenario: Sam visits Aria at dusk." in prompt
        assert "STORYTELLING MODE ACTIVE" in prompt
        assert "[CURRENT CONTEXT]" not in prompt
        assert "[TIME AWARENESS ACTIVE]" not in prompt
        assert "[CONVERSATION SUMMARY]" not in prompt

    def test_deterministic(self, assembler, character):
        inputs = _inputs(character, latest_summary=None)
        assert assembler.build(inputs) == assembler.build(inputs)

    def test_companion_mode(self, assembler, character):
        prompt = assembler.build(_inputs(character, chat_mode=ChatMode.COMPANION))
        assert "COMPANION MODE" in prompt
        assert "ONLY what Aria says" in prompt
        assert "STORYTELLING MODE" not in prompt

    def test_user_persona(self, assembler, character):
        prompt = assembler.build(_inputs(character, persona=Persona(name="Cap", bio="A sailor", lore="")))
        assert "[USER PERSONA INFORMATION]" in prompt
        assert "User Bio: A sailor" in prompt
        assert "User Background" not in prompt

    def test_situational_lines_follow_flags(self, assembler, character):
        ctx = SituationalContext(mood="calm", clothing="raincoat", location=NO_CONTEXT)
        addons = AddonSettings(mood_tracking=True, location_tracking=True)
        prompt = assembler.build(_inputs(character, addons=addons, situational_context=ctx))
        assert "Current Mood: calm" in prompt
        assert "Current Clothing" not in prompt
        assert "Current Location" not in prompt
        assert "Pay attention to emotional context" in prompt

    def test_time_awareness_without_delay(self, assembler, character):
        ta = TimeAwareness(now=NOW, timezone="UTC", delay_seconds=10)
        prompt = assembler.build(_inputs(character, time_awareness=ta))
        assert "Current time: Sat, Oct 17, 7:04 PM" in prompt
        assert "Time since your last message" not in prompt

    def test_time_awareness_with_delay(self, assembler, character):
        ta = TimeAwareness(now=NOW, timezone="UTC", delay_seconds=7200)
        prompt = assembler.build(_inputs(character, time_awareness=ta))
        assert "Time since your last message: 2 hours" in prompt
        assert "Delay category: very_long" in prompt
        assert "react appropriately to this delay" in prompt

    def test_world_info_requires_flag(self, assembler, character):
        entries = [WorldInfoEntry(["harbor"], "The harbor is old.")]
        off = assembler.build(_inputs(character, world_info=entries))
        on = assembler.build(_inputs(character, world_info=entries, addons=AddonSettings(dynamic_world_info=True)))
        assert "[WORLD INFORMATION]" not in off
        assert "Content: The harbor is old." in on

    def test_memories_require_flag(self, assembler, character):
        memories = [MemoryEntry(["storm"], "The storm night.", created_at=NOW)]
        on = assembler.build(_inputs(character, memories=memories, addons=AddonSettings(enhanced_memory=True)))
        assert "[MEMORY BANK]" in on
        assert "- Date: October 17, 2026" in on
        assert "Remember details from previous conversations" in on
        off = assembler.build(_inputs(character, memories=memories))
        assert "[MEMORY BANK]" not in off

    def test_summary_section_is_last(self, assembler, character):
        summary = DurableSummary("conv-1", "char-1", "user-1", "T", "They met at the pier.")
        prompt = assembler.build(_inputs(character, latest_summary=summary))
        assert prompt.rstrip().endswith("Use this summary to maintain continuity with previous conversations.")
        assert "They met at the pier." in prompt

    def test_blank_summary_omitted(self, assembler, character):
        summary = DurableSummary("conv-1", "char-1", "user-1", "T", "   ")
        assert "[CONVERSATION SUMMARY]" not in assembler.build(_inputs(character, latest_summary=summary))

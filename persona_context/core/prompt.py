"""SystemPromptAssembler: builds the system prompt from persona, mode and addon context."""

from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..types import (
    NO_CONTEXT,
    AddonSettings,
    ChatMode,
    DurableSummary,
    MemoryEntry,
    PromptInputs,
    SituationalContext,
    TimeAwareness,
    WorldInfoEntry,
)

logger = logging.getLogger(__name__)

DIALOGUE_GUIDELINES = """\
IMPORTANT DIALOGUE GUIDELINES:
- You are ONLY the character, never speak for the user
- NEVER write the user's responses or actions
- NEVER continue the conversation for the user
- STOP your response when it's the user's turn to speak"""

COMPANION_RULES = """\
## CRITICAL COMPANION MODE RULES - HIGHEST PRIORITY

YOU ARE IN COMPANION MODE. THESE RULES OVERRIDE ALL OTHER INSTRUCTIONS:

1. **RESPOND ONLY WITH DIALOGUE** - Your response must contain ONLY what {name} says. Nothing else.

2. **ABSOLUTELY FORBIDDEN**:
   - NO descriptions of actions, emotions, or movements
   - NO text between asterisks (*) or tildes (~)
   - NO narration or scene-setting
   - NO descriptions of clothing, appearance, or environment
   - NO parenthetical statements
   - NO third-person observations
   - NO stage directions

3. **IGNORE CONTEXT IN EXAMPLES** - Even if the character's greeting or example messages contain descriptions, actions, or narration, you MUST NOT include any in your responses.

4. **CORRECT FORMAT**:
   "Hello! How are you today?"
   "That's interesting. Tell me more about it."

5. **INCORRECT FORMAT**:
   "*smiles* Hello! How are you today?"
   "Hello! *waves enthusiastically* How are you today?"
   "(Speaking softly) Hello! How are you today?"

REMEMBER: You are having a text conversation. Respond as if you're texting or instant messaging - pure dialogue only."""

STORYTELLING_RULES = """\
## STORYTELLING MODE ACTIVE

You are in STORYTELLING MODE. You should:
- Include rich descriptions of actions, emotions, and environment
- Use asterisks (*) for actions and descriptions
- Set the scene and create atmosphere
- Describe {name}'s appearance, movements, and emotional state when relevant
- Create an immersive narrative experience
- Focus primarily on dialogue and conversation as the character
- Use direct speech frequently with quotation marks
- Keep narrative descriptions brief and essential
- Respond with natural, engaging conversation as your character
- Express emotions and thoughts through words and dialogue
- Avoid lengthy descriptive paragraphs
- Make your character feel alive through speech

Balance dialogue with descriptive elements to create an engaging story."""

CHARACTER_ONLY_REMINDER = """\
CRITICAL: You must ONLY play your character. Never write what the user says, thinks, or does. Stop your response when it's the user's turn to speak.

Stay in character and engage in natural dialogue with the user."""

DELAY_REACTION_GUIDANCE = """\
Based on your character's personality, react appropriately to this delay:
- Consider the time gap when crafting your response
- Take into account the current time (are they likely sleeping, working, etc.)
- Factor in the conversation tone and urgency level
- React authentically based on your personality traits (patient vs impatient, understanding vs demanding, etc.)
- You may acknowledge the delay if it fits your character, but don't always mention it
- When discussing time, remember you both share the same current time"""

ENHANCED_MEMORY_HINT = "Remember details from previous conversations and reference them naturally."
MOOD_TRACKING_HINT = "Pay attention to emotional context and respond appropriately to the user's mood."

# (addon flag, context attribute, label), in prompt order
SITUATIONAL_LINES = [
    ("mood_tracking", "mood", "Current Mood"),
    ("clothing_inventory", "clothing", "Current Clothing"),
    ("location_tracking", "location", "Current Location"),
    ("time_and_weather", "time_weather", "Time & Weather"),
    ("relationship_status", "relationship", "Relationship Status"),
    ("character_position", "position", "Character Position"),
]


def _has_value(value: str | None) -> bool:
    return bool(value) and value.strip() != "" and value != NO_CONTEXT


def format_delay(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{seconds // 60} minutes"
    if seconds < 86400:
        return f"{seconds // 3600} hours"
    return f"{seconds // 86400} days"


def delay_category(seconds: int) -> str:
    if seconds < 300:
        return "short"
    if seconds < 1800:
        return "medium"
    if seconds < 7200:
        return "long"
    return "very_long"


def format_local_time(now: datetime, tz_name: str) -> str:
    """e.g. ``Sat, Oct 18, 3:04 PM`` in the given IANA timezone (UTC if unknown)."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", tz_name)
        tz = ZoneInfo("UTC")
    local = now.astimezone(tz)
    hour = local.hour % 12 or 12
    return f"{local:%a}, {local:%b} {local.day}, {hour}:{local:%M} {local:%p}"


def replace_templates(text: str, user_name: str, char_name: str) -> str:
    if not text:
        return ""
    return text.replace("{{user}}", user_name).replace("{{char}}", char_name)


class SystemPromptAssembler:
    """Deterministic system-prompt builder.

    Sections, in order: persona framing, user persona, mode rules, current
    context, time awareness, addon hints, world info, memory bank, latest
    summary. Optional sections appear only when their flag is on and there
    is content to show. World info and memories are expected pre-filtered.
    """

    def __init__(self, delay_threshold: int = 30) -> None:
        self.delay_threshold = delay_threshold

    def build(self, inputs: PromptInputs) -> str:
        char_name = inputs.character.name or "Character"

        def tpl(text: str) -> str:
            return replace_templates(text, inputs.user_name, char_name)

        sections = [self._persona_section(inputs, tpl)]

        if inputs.persona and (inputs.persona.bio or inputs.persona.lore):
            sections.append(self._user_persona_section(inputs))

        sections.append(DIALOGUE_GUIDELINES)
        if inputs.chat_mode == ChatMode.COMPANION:
            sections.append(COMPANION_RULES.format(name=char_name))
        else:
            sections.append(STORYTELLING_RULES.format(name=char_name))
        sections.append(CHARACTER_ONLY_REMINDER)

        situational = self._situational_section(inputs.addons, inputs.situational_context)
        if situational:
            sections.append(situational)

        if inputs.time_awareness is not None:
            sections.append(self._time_section(inputs.time_awareness))

        if inputs.addons.enhanced_memory:
            sections.append(ENHANCED_MEMORY_HINT)
        if inputs.addons.mood_tracking:
            sections.append(MOOD_TRACKING_HINT)

        if inputs.addons.dynamic_world_info and inputs.world_info:
            sections.append(self._world_info_section(inputs.world_info))

        if inputs.addons.enhanced_memory and inputs.memories:
            sections.append(self._memory_section(inputs.memories))

        if inputs.latest_summary is not None and inputs.latest_summary.prose.strip():
            sections.append(self._summary_section(inputs.latest_summary))

        prompt = "\n\n".join(sections)
        logger.debug("System prompt built: %d chars, %d sections", len(prompt), len(sections))
        return prompt

    # -- sections --

    @staticmethod
    def _persona_section(inputs: PromptInputs, tpl) -> str:
        character = inputs.character
        lines = [f"You are {tpl(character.personality_summary or 'a helpful assistant')}."]
        if character.description:
            lines.append(f"Description: {tpl(character.description)}")
        if character.scenario:
            lines.append(f"Scenario: {tpl(character.scenario)}")
        return "\n".join(lines)

    @staticmethod
    def _user_persona_section(inputs: PromptInputs) -> str:
        persona = inputs.persona
        lines = ["[USER PERSONA INFORMATION]"]
        if persona.bio:
            lines.append(f"User Bio: {persona.bio}")
        if persona.lore:
            lines.append(f"User Background & Lore: {persona.lore}")
        lines.append("Respond to the user accordingly, taking their persona traits and background into consideration.")
        lines.append("[/USER PERSONA INFORMATION]")
        return "\n".join(lines)

    @staticmethod
    def _situational_section(addons: AddonSettings, ctx: SituationalContext | None) -> str:
        if ctx is None:
            return ""
        parts = [
            f"{label}: {getattr(ctx, attr)}"
            for flag, attr, label in SITUATIONAL_LINES
            if getattr(addons, flag) and _has_value(getattr(ctx, attr))
        ]
        if not parts:
            return ""
        return "[CURRENT CONTEXT]\n" + "\n".join(parts) + "\n[/CURRENT CONTEXT]"

    def _time_section(self, ta: TimeAwareness) -> str:
        local_time = format_local_time(ta.now, ta.timezone)
        delayed = ta.delay_seconds is not None and ta.delay_seconds > self.delay_threshold

        lines = [
            "[TIME AWARENESS ACTIVE]",
            f"Current time: {local_time}",
            f"Timezone: {ta.timezone} (we share the same timezone)",
        ]
        if delayed:
            lines.append(f"Time since your last message: {format_delay(ta.delay_seconds)}")
            lines.append(f"Delay category: {delay_category(ta.delay_seconds)}")

        text = "\n".join(lines)
        text += (
            f"\n\nIMPORTANT: You and the user are in the same timezone ({ta.timezone}). "
            f"When asked about time, respond with the actual current time ({local_time}), "
            "not a placeholder like {current_time}."
        )
        if delayed:
            text += "\n\n" + DELAY_REACTION_GUIDANCE
        return text + "\n[/TIME AWARENESS]"

    @staticmethod
    def _world_info_section(entries: list[WorldInfoEntry]) -> str:
        lines = [
            "[WORLD INFORMATION]",
            "Use this world information to enhance your responses when relevant:",
        ]
        for entry in entries:
            lines.append("")
            lines.append(f"- Keywords: {', '.join(entry.keywords)}")
            lines.append(f"  Content: {entry.text}")
        lines.append("[/WORLD INFORMATION]")
        lines.append("Reference this world information naturally when it's relevant to the conversation.")
        return "\n".join(lines)

    @staticmethod
    def _memory_section(memories: list[MemoryEntry]) -> str:
        lines = ["[MEMORY BANK]", "Previous interactions with this user:"]
        for memory in memories:
            date = f"{memory.created_at:%B} {memory.created_at.day}, {memory.created_at.year}"
            lines.append("")
            lines.append(f"- Date: {date}")
            lines.append(f"  Summary: {memory.text}")
            lines.append(f"  Keywords: {', '.join(memory.keywords)}")
        lines.append("[/MEMORY BANK]")
        lines.append("Reference these memories naturally when relevant keywords appear in the conversation.")
        return "\n".join(lines)

    @staticmethod
    def _summary_section(summary: DurableSummary) -> str:
        return (
            "[CONVERSATION SUMMARY]\n"
            "Most recent conversation summary:\n"
            f"{summary.prose}\n"
            "[/CONVERSATION SUMMARY]\n"
            "Use this summary to maintain continuity with previous conversations."
        )

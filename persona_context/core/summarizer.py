"""SummaryGenerator: compresses a message range into a titled, keyworded summary."""

from __future__ import annotations

import json
import logging
import re
from collections import Counter

from ..types import LLMProvider, Message, ParsedSummary, SummaryGenerationError

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 10

SUMMARY_SYSTEM_PROMPT = """\
You are a professional conversation analyst. Create a detailed summary of the following roleplay conversation."""

SUMMARY_PROMPT = """\
CRITICAL: You MUST respond with ONLY a valid JSON object in this EXACT format (no other text):
{{
  "title": "Brief descriptive title (5-10 words)",
  "summary": "Your 4-paragraph summary text goes here. Write exactly 4 detailed paragraphs with at least 500 words total. First paragraph: Set the scene and introduce the main participants. Second paragraph: Describe the key events and interactions in detail. Third paragraph: Detail emotional developments and relationship dynamics. Fourth paragraph: Highlight important revelations and future implications.",
  "keywords": ["keyword1", "keyword2", "keyword3", "keyword4", "keyword5"]
}}

Keywords MUST be:
- 5-10 specific, meaningful words from THIS conversation
- Include character names, locations, objects, emotions, activities
- NO generic terms like: chat, roleplay, character, conversation, talk, discussion
- Extract from the actual dialogue content

Character: {character_name}
Message Range: AI messages {range_label}

CONVERSATION TO SUMMARIZE:
{conversation_text}

REMEMBER: Return ONLY the JSON object, no additional text or formatting."""

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "been", "being", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "may", "might", "must",
    "can", "this", "that", "these", "those", "i", "you", "he", "she", "it", "we", "they",
    "what", "which", "who", "when", "where", "why", "how", "all", "each", "every", "some",
    "few", "more", "most", "other", "into", "through", "during", "before", "after", "above",
    "below", "up", "down", "out", "off", "over", "under", "again", "then", "there", "here",
    "conversation", "chat", "talk", "speaking", "discussion", "roleplay", "character",
})

_WORD_RE = re.compile(r"\b[a-z]{3,}\b")
_SUMMARY_FIELD_RE = re.compile(r'"summary"\s*:\s*"([^"]+)"')


def extract_keywords(messages: list[Message], character_name: str) -> list[str]:
    """Deterministic keywords: character name first, then frequent content words."""
    keywords: list[str] = []
    name = character_name.strip().lower()
    if name:
        keywords.append(name)

    text = " ".join(m.content for m in messages).lower()
    freq = Counter(w for w in _WORD_RE.findall(text) if w not in STOPWORDS)
    # most_common keeps first-seen order among equal counts
    for word, _count in freq.most_common(MAX_KEYWORDS - 1):
        if word not in keywords:
            keywords.append(word)
    return keywords[:MAX_KEYWORDS]


def normalize_keywords(raw: list, limit: int = MAX_KEYWORDS) -> list[str]:
    """Trim, lower-case, drop empties and duplicates, cap at ``limit``."""
    seen: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        kw = item.strip().lower()
        if kw and kw not in seen:
            seen.append(kw)
    return seen[:limit]


def format_transcript(messages: list[Message], character_name: str) -> str:
    lines = []
    for m in sorted(messages, key=lambda m: m.ordinal):
        speaker = (character_name or "Character") if m.is_ai else "User"
        lines.append(f"{speaker}: {m.content}")
    return "\n\n".join(lines)


class SummaryGenerator:
    """Summarize a message range with an LLM, degrading through a parse ladder.

    The ladder yields ``source="parsed"`` for a valid JSON object with a
    summary and keyword list, ``"partial"`` when only the summary field can be
    pulled out, and ``"fallback"`` when the raw text is used as prose.
    """

    def __init__(self, llm_provider: LLMProvider, max_tokens: int = 2500) -> None:
        self.llm = llm_provider
        self.max_tokens = max_tokens

    async def generate(
        self,
        messages: list[Message],
        character_name: str,
        range_label: str = "",
    ) -> ParsedSummary:
        if not messages:
            raise SummaryGenerationError("No messages to summarize")

        prompt = SUMMARY_PROMPT.format(
            character_name=character_name,
            range_label=range_label or "?",
            conversation_text=format_transcript(messages, character_name),
        )
        # LLMProviderError propagates to the caller's retry loop
        response = await self.llm.complete(
            system=SUMMARY_SYSTEM_PROMPT,
            user=prompt,
            max_tokens=self.max_tokens,
        )
        if not response or not response.strip():
            raise SummaryGenerationError("Summary model returned an empty response")

        return self.parse_response(response, messages, character_name)

    def parse_response(
        self,
        response: str,
        messages: list[Message],
        character_name: str,
    ) -> ParsedSummary:
        default_title = f"{character_name} Conversation Summary"
        parsed = self._parse_json(response)

        if parsed is not None:
            prose = parsed.get("summary")
            raw_keywords = parsed.get("keywords")
            if isinstance(prose, str) and prose.strip() and isinstance(raw_keywords, list):
                keywords = normalize_keywords(raw_keywords)
                if not keywords:
                    keywords = [character_name.lower(), "conversation"]
                title = parsed.get("title")
                return ParsedSummary(
                    title=title.strip() if isinstance(title, str) and title.strip() else default_title,
                    prose=prose.strip(),
                    keywords=keywords,
                    source="parsed",
                )
            if isinstance(prose, str) and prose.strip():
                logger.warning("Summary JSON had no keyword list, deriving keywords from messages")
                return ParsedSummary(
                    title=default_title,
                    prose=prose.strip(),
                    keywords=extract_keywords(messages, character_name),
                    source="partial",
                )

        keywords = extract_keywords(messages, character_name)
        match = _SUMMARY_FIELD_RE.search(response)
        if match:
            logger.warning("Summary response was not valid JSON, extracted summary field")
            return ParsedSummary(
                title=default_title,
                prose=match.group(1).strip(),
                keywords=keywords,
                source="partial",
            )

        logger.warning("Summary response unparseable, using raw text as summary")
        return ParsedSummary(
            title=default_title,
            prose=response.strip(),
            keywords=keywords,
            source="fallback",
        )

    @staticmethod
    def _parse_json(response: str) -> dict | None:
        text = response.strip()

        # Strip markdown fences if present
        if text.startswith("```"):
            lines = text.split("\n")[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines)

        # Strip thinking tags
        if "<think>" in text:
            text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            return None
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

"""All dataclasses, Protocols, and exceptions for persona-context."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Protocol, runtime_checkable

NO_CONTEXT = "No context"
PLACEHOLDER_SENTINEL = "[PLACEHOLDER]"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class SituationalContext:
    """Current narrative state of a conversation, owned by the extractor."""
    mood: str | None = None
    clothing: str | None = None
    location: str | None = None
    time_weather: str | None = None
    relationship: str | None = None
    position: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {
            k: v
            for k, v in {
                "mood": self.mood,
                "clothing": self.clothing,
                "location": self.location,
                "time_weather": self.time_weather,
                "relationship": self.relationship,
                "position": self.position,
            }.items()
            if v and v != NO_CONTEXT
        }

    @classmethod
    def from_dict(cls, raw: dict | None) -> SituationalContext:
        raw = raw or {}
        return cls(
            mood=raw.get("mood"),
            clothing=raw.get("clothing"),
            location=raw.get("location"),
            time_weather=raw.get("time_weather"),
            relationship=raw.get("relationship"),
            position=raw.get("position") or raw.get("character_position"),
        )


@dataclass
class Message:
    conversation_id: str
    ordinal: int
    role: str  # "user" or "ai"
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    is_placeholder: bool = False
    situational_context: SituationalContext | None = None

    @property
    def is_ai(self) -> bool:
        return self.role == "ai"

    @property
    def is_countable_ai(self) -> bool:
        """AI message that takes part in AI-sequence numbering."""
        if not self.is_ai or self.is_placeholder:
            return False
        text = self.content.strip()
        return bool(text) and PLACEHOLDER_SENTINEL not in text


# ---------------------------------------------------------------------------
# Characters, personas, settings
# ---------------------------------------------------------------------------

@dataclass
class Character:
    id: str
    name: str = "Character"
    personality_summary: str = ""
    description: str = ""
    scenario: str = ""


@dataclass
class Persona:
    name: str = ""
    bio: str = ""
    lore: str = ""


@dataclass
class UserProfile:
    user_id: str
    username: str = "User"
    timezone: str = "UTC"
    plan: str | None = None  # None falls back to the configured default plan


@dataclass
class Conversation:
    id: str
    user_id: str
    character_id: str
    addons: AddonSettings = field(default_factory=lambda: AddonSettings())
    context_ceiling_warned: bool = False
    last_activity_at: datetime | None = None


class ChatMode(str, Enum):
    COMPANION = "companion"        # dialogue only
    STORYTELLING = "storytelling"  # dialogue plus narrated action


@dataclass
class CharacterSettings:
    chat_mode: ChatMode = ChatMode.STORYTELLING
    time_awareness: bool = False


@dataclass
class AddonSettings:
    dynamic_world_info: bool = False
    enhanced_memory: bool = False
    mood_tracking: bool = False
    clothing_inventory: bool = False
    location_tracking: bool = False
    time_and_weather: bool = False
    relationship_status: bool = False
    character_position: bool = False
    time_awareness: bool = False

    @classmethod
    def from_dict(cls, raw: dict | None) -> AddonSettings:
        raw = raw or {}
        known = cls.__dataclass_fields__
        return cls(**{k: bool(v) for k, v in raw.items() if k in known})

    def to_dict(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class WorldInfoEntry:
    keywords: list[str]
    text: str


@dataclass
class MemoryEntry:
    keywords: list[str]
    text: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PlanTier:
    name: str
    model: str
    credit_cost: int
    max_context_tokens: int = 12_000


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

@dataclass
class DurableSummary:
    """Compressed record of a contiguous AI-sequence range of one conversation."""
    conversation_id: str
    character_id: str
    user_id: str
    title: str
    prose: str
    keywords: list[str] = field(default_factory=list)
    boundary: int = 0
    is_automatic: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def as_memory(self) -> MemoryEntry:
        return MemoryEntry(keywords=list(self.keywords), text=self.prose, created_at=self.created_at)


@dataclass
class ParsedSummary:
    """Normalized output of the summary parse ladder."""
    title: str
    prose: str
    keywords: list[str]
    source: Literal["parsed", "partial", "fallback"]


# ---------------------------------------------------------------------------
# Context planning
# ---------------------------------------------------------------------------

@dataclass
class RecencyWindow:
    messages: list[Message] = field(default_factory=list)
    dropped_count: int = 0
    tokens_used: int = 0
    ceiling_reached: bool = False  # token budget, not the pair cap, stopped selection


@dataclass
class ConversationPlan:
    """Final model payload: system prompt, windowed history, current user message."""
    messages: list[dict] = field(default_factory=list)
    total_tokens: int = 0
    dropped_count: int = 0
    trimmed_count: int = 0  # removed by the final fit-to-context pass


@dataclass
class SummaryTrigger:
    triggered: bool
    current_ai_count: int = 0
    last_boundary: int = 0
    next_summary_at: int = 0
    messages: list[Message] = field(default_factory=list)
    range_start: int = 0  # first AI sequence number in range
    range_end: int = 0    # last AI sequence number in range (new boundary)
    lock_prevented: bool = False

    @property
    def range_label(self) -> str:
        return f"{self.range_start}-{self.range_end}"


@dataclass
class SummaryOutcome:
    summary: DurableSummary
    created: bool
    note: str = ""


@dataclass
class TimeAwareness:
    now: datetime
    timezone: str = "UTC"
    delay_seconds: int | None = None  # None when there is no previous AI message


@dataclass
class PromptInputs:
    character: Character
    addons: AddonSettings
    user_name: str = "User"
    persona: Persona | None = None
    situational_context: SituationalContext | None = None
    chat_mode: ChatMode = ChatMode.STORYTELLING
    time_awareness: TimeAwareness | None = None
    world_info: list[WorldInfoEntry] = field(default_factory=list)
    memories: list[MemoryEntry] = field(default_factory=list)
    latest_summary: DurableSummary | None = None


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

class TurnState(str, Enum):
    GATHER = "gather"
    BILL = "bill"
    RESERVE = "reserve"
    PLAN = "plan"
    COMPRESS = "compress"
    GENERATE = "generate"
    FINALIZE = "finalize"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TurnRequest:
    conversation_id: str
    user_id: str
    character_id: str
    message: str
    persona_id: str | None = None
    world_info_id: str | None = None


@dataclass
class TurnEvent:
    kind: Literal["chunk", "done"]
    content: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class TurnOutcome:
    state: TurnState
    message: Message | None = None
    error: str | None = None
    auto_summary_triggered: bool = False
    context_ceiling_reached: bool = False


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PersonaContextError(Exception):
    """Base class for errors raised by persona-context."""


class TurnValidationError(PersonaContextError):
    pass


class BillingError(PersonaContextError):
    def __init__(self, required: int):
        super().__init__(f"Insufficient credits. Required: {required} credits")
        self.required = required


class LLMProviderError(PersonaContextError):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class SummaryGenerationError(PersonaContextError):
    pass


class StoreError(PersonaContextError):
    pass


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class LLMProvider(Protocol):
    async def complete(self, system: str, user: str, max_tokens: int) -> str: ...


@runtime_checkable
class ChatModel(Protocol):
    def stream_chat(
        self,
        messages: list[dict],
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]: ...


@runtime_checkable
class ContextExtractor(Protocol):
    async def extract(
        self,
        conversation_id: str,
        character_id: str,
        user_id: str,
        addons: AddonSettings,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ContextConfig:
    max_pairs: int = 5
    window_token_budget: int = 8_000
    safety_margin: int = 1_000
    recent_message_lookback: int = 5
    max_addon_entries: int = 3


@dataclass
class SummarizationConfig:
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    model: str = "mistralai/mistral-7b-instruct"
    interval: int = 15
    max_tokens: int = 2_500
    temperature: float = 0.3
    max_attempts: int = 3
    retry_backoff: float = 2.0
    lock_release_delay: float = 2.0


@dataclass
class ChatConfig:
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    temperature: float = 0.7
    max_tokens: int = 1_000
    generation_timeout: float = 120.0
    persist_attempts: int = 3
    persist_backoff: float = 0.2


@dataclass
class StorageConfig:
    sqlite_path: str = ".persona-context/store.db"


@dataclass
class ExtractorConfig:
    url: str = ""
    timeout: float = 30.0


@dataclass
class TimeAwarenessConfig:
    delay_threshold: int = 30


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5858


@dataclass
class PersonaContextConfig:
    version: str = "0.1"
    token_counter: str = "estimate"
    context: ContextConfig = field(default_factory=ContextConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    plans: dict[str, PlanTier] = field(default_factory=dict)
    default_plan: str = "Guest Pass"
    storage: StorageConfig = field(default_factory=StorageConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    time_awareness: TimeAwarenessConfig = field(default_factory=TimeAwarenessConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

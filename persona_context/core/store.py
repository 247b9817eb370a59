"""ConversationStore abstract base class: persistence interface for the engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from ..types import (
    AddonSettings,
    Character,
    CharacterSettings,
    Conversation,
    DurableSummary,
    Message,
    Persona,
    SituationalContext,
    UserProfile,
    WorldInfoEntry,
)


class ConversationStore(ABC):
    """Pluggable storage backend for conversations, messages and summaries.

    Implementations are synchronous; async callers run them through
    ``asyncio.to_thread``.
    """

    # -- profiles and settings --

    @abstractmethod
    def save_user(self, profile: UserProfile, credits: int = 0) -> None:
        """Create or replace a user profile with a starting credit balance."""

    @abstractmethod
    def get_user(self, user_id: str) -> UserProfile | None:
        """Retrieve a user profile. None if not found."""

    @abstractmethod
    def get_credits(self, user_id: str) -> int:
        """Current credit balance. 0 for unknown users."""

    @abstractmethod
    def add_credits(self, user_id: str, amount: int) -> int:
        """Increase the balance. Returns the new balance."""

    @abstractmethod
    def consume_credits(self, user_id: str, amount: int) -> bool:
        """Atomically deduct ``amount`` if the balance covers it.

        Returns False and leaves the balance untouched otherwise.
        """

    @abstractmethod
    def save_character(self, character: Character, settings: CharacterSettings | None = None) -> None:
        """Create or replace a character and its settings."""

    @abstractmethod
    def get_character(self, character_id: str) -> Character | None:
        """Retrieve a character. None if not found."""

    @abstractmethod
    def get_character_settings(self, character_id: str) -> CharacterSettings:
        """Character settings, defaults when none were saved."""

    @abstractmethod
    def save_persona(self, persona_id: str, user_id: str, persona: Persona) -> None:
        """Create or replace a user persona."""

    @abstractmethod
    def get_persona(self, persona_id: str) -> Persona | None:
        """Retrieve a persona. None if not found."""

    @abstractmethod
    def save_world_info(self, world_info_id: str, entries: list[WorldInfoEntry]) -> None:
        """Replace all entries of a world-info set."""

    @abstractmethod
    def get_world_info(self, world_info_id: str) -> list[WorldInfoEntry]:
        """All entries of a world-info set, empty if unknown."""

    # -- conversations --

    @abstractmethod
    def create_conversation(
        self,
        conversation_id: str,
        user_id: str,
        character_id: str,
        addons: AddonSettings | None = None,
    ) -> Conversation:
        """Create a conversation, or return the existing one unchanged."""

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Retrieve a conversation. None if not found."""

    @abstractmethod
    def set_addon_settings(self, conversation_id: str, addons: AddonSettings) -> None:
        """Replace the addon flags of a conversation."""

    @abstractmethod
    def mark_ceiling_warned(self, conversation_id: str) -> bool:
        """Set the context-ceiling flag. Returns True only if it was unset."""

    @abstractmethod
    def touch_activity(self, conversation_id: str, character_id: str, at: datetime) -> None:
        """Update last-activity timestamps of the conversation and character."""

    # -- messages --

    @abstractmethod
    def get_history(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in ordinal order."""

    @abstractmethod
    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        """Append one finished message with the next ordinal."""

    @abstractmethod
    def reserve_turn(self, conversation_id: str, user_content: str) -> tuple[Message, Message]:
        """Persist the user message and an empty AI placeholder in one transaction.

        Returns ``(user_message, placeholder)`` with consecutive ordinals.
        """

    @abstractmethod
    def finalize_message(
        self,
        message_id: str,
        content: str,
        situational_context: SituationalContext | None = None,
    ) -> Message:
        """Convert a placeholder into a final message in place."""

    @abstractmethod
    def get_latest_situational_context(self, conversation_id: str) -> SituationalContext | None:
        """Snapshot attached to the newest message that carries one."""

    @abstractmethod
    def set_situational_context(self, message_id: str, context: SituationalContext) -> None:
        """Attach a situational-context snapshot to a message."""

    # -- summaries --

    @abstractmethod
    def upsert_on_conflict(self, summary: DurableSummary) -> tuple[DurableSummary, bool]:
        """Insert an automatic summary, or update the existing one in place.

        Returns ``(stored_summary, created)``.
        """

    @abstractmethod
    def save_summary(self, summary: DurableSummary) -> DurableSummary:
        """Insert a non-automatic (manual) summary."""

    @abstractmethod
    def get_automatic_summary(self, conversation_id: str) -> DurableSummary | None:
        """The automatic summary of a conversation. None if not created yet."""

    @abstractmethod
    def get_latest(self, character_id: str, user_id: str | None = None) -> DurableSummary | None:
        """Most recently updated summary for a character (optionally one user)."""

    @abstractmethod
    def get_summaries(self, character_id: str, user_id: str) -> list[DurableSummary]:
        """All summaries for a (character, user) pair, newest first."""

    @abstractmethod
    def get_boundary(self, conversation_id: str) -> int:
        """AI-sequence end covered by the automatic summary. 0 if none."""

    def close(self) -> None:
        """Release resources. Default: no-op."""

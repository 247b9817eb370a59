"""Shared fixtures for persona-context tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from persona_context.config import load_config
from persona_context.storage.sqlite import SQLiteStore
from persona_context.types import (
    AddonSettings,
    Character,
    CharacterSettings,
    ChatMode,
    LLMProviderError,
    Message,
    PersonaContextConfig,
    UserProfile,
)

CONVERSATION_ID = "conv-1"
USER_ID = "user-1"
CHARACTER_ID = "char-1"

SUMMARY_JSON = json.dumps({
    "title": "Moonlit Harbor Reunion",
    "summary": "Aria and the user met again at the harbor and talked about the lighthouse.",
    "keywords": ["Aria", "harbor", "lighthouse", "reunion", "moonlight"],
})


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_sqlite_db(tmp_path):
    return tmp_path / "test_store.db"


@pytest.fixture
def store(tmp_sqlite_db):
    s = SQLiteStore(db_path=tmp_sqlite_db)
    yield s
    s.close()


@pytest.fixture
def sample_config(tmp_sqlite_db) -> PersonaContextConfig:
    return load_config(config_dict={
        "summarization": {
            "interval": 3,
            "retry_backoff": 0,
            "lock_release_delay": 0,
        },
        "chat": {
            "generation_timeout": 5,
            "persist_backoff": 0,
        },
        "storage": {"sqlite_path": str(tmp_sqlite_db)},
    })


@pytest.fixture
def character() -> Character:
    return Character(
        id=CHARACTER_ID,
        name="Aria",
        personality_summary="Aria, a cheerful lighthouse keeper who loves talking to {{user}}",
        description="{{char}} keeps the old lighthouse on the northern cliffs.",
        scenario="{{user}} visits {{char}} at dusk.",
    )


@pytest.fixture
def seeded_store(store, character):
    """Store with a user (100 credits), a character and an empty conversation."""
    store.save_user(UserProfile(user_id=USER_ID, username="Sam", timezone="UTC"), credits=100)
    store.save_character(character, CharacterSettings(chat_mode=ChatMode.STORYTELLING))
    store.create_conversation(CONVERSATION_ID, USER_ID, CHARACTER_ID, AddonSettings())
    return store


def add_pairs(store, count: int, conversation_id: str = CONVERSATION_ID) -> list[Message]:
    """Append ``count`` finished user/AI pairs."""
    added = []
    for i in range(1, count + 1):
        added.append(store.append_message(conversation_id, "user", f"User line {i} about the harbor"))
        added.append(store.append_message(conversation_id, "ai", f"Aria reply {i} about the lighthouse"))
    return added


def make_history(
    pairs: int,
    conversation_id: str = CONVERSATION_ID,
    content_size: int = 0,
) -> list[Message]:
    """In-memory history of user/AI pairs with gapless ordinals."""
    history = []
    ordinal = 0
    for i in range(1, pairs + 1):
        pad = " x" * content_size
        ordinal += 1
        history.append(Message(conversation_id, ordinal, "user", f"user {i}{pad}"))
        ordinal += 1
        history.append(Message(conversation_id, ordinal, "ai", f"ai {i}{pad}"))
    return history


class MockLLMProvider:
    """Summary model returning canned responses (no API calls)."""

    def __init__(self, response: str | None = None, failures: int = 0, delay: float = 0.0):
        self.calls: list[dict] = []
        self.response = SUMMARY_JSON if response is None else response
        self.failures = failures
        self.delay = delay

    async def complete(self, system: str, user: str, max_tokens: int) -> str:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise LLMProviderError("HTTP 503: unavailable", provider="mock", status_code=503)
        return self.response


class FakeChatModel:
    """Chat model streaming a canned reply word by word."""

    def __init__(
        self,
        reply: str = "Hello there, traveler.",
        error_after: int | None = None,
        delay: float = 0.0,
    ):
        self.reply = reply
        self.error_after = error_after
        self.delay = delay
        self.calls: list[dict] = []

    async def stream_chat(self, messages: list[dict], model: str | None = None, max_tokens: int | None = None):
        self.calls.append({"messages": messages, "model": model, "max_tokens": max_tokens})
        words = self.reply.split(" ")
        for i, word in enumerate(words):
            if self.error_after is not None and i >= self.error_after:
                raise LLMProviderError("HTTP 502: upstream failed", provider="fake", status_code=502)
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word + (" " if i < len(words) - 1 else "")


class RecordingExtractor:
    def __init__(self):
        self.calls: list[tuple] = []

    async def extract(self, conversation_id, character_id, user_id, addons):
        self.calls.append((conversation_id, character_id, user_id, addons))


@pytest.fixture
def mock_llm() -> MockLLMProvider:
    return MockLLMProvider()


@pytest.fixture
def chat_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def extractor() -> RecordingExtractor:
    return RecordingExtractor()

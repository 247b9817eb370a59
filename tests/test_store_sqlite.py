"""Tests for the SQLite conversation store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from conftest import CHARACTER_ID, CONVERSATION_ID, USER_ID, add_pairs

from persona_context.storage.sqlite import SQLiteStore
from persona_context.types import (
    AddonSettings,
    Character,
    CharacterSettings,
    ChatMode,
    DurableSummary,
    Persona,
    SituationalContext,
    StoreError,
    UserProfile,
    WorldInfoEntry,
)


def _summary(boundary: int = 15, prose: str = "First summary", automatic: bool = True, **kw) -> DurableSummary:
    return DurableSummary(
        conversation_id=kw.get("conversation_id", CONVERSATION_ID),
        character_id=CHARACTER_ID,
        user_id=USER_ID,
        title="Title",
        prose=prose,
        keywords=["aria", "harbor"],
        boundary=boundary,
        is_automatic=automatic,
        created_at=kw.get("created_at", datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)),
        updated_at=kw.get("created_at", datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)),
    )


class TestProfiles:
    def test_user_roundtrip(self, store):
        store.save_user(UserProfile(user_id="u", username="Sam", timezone="Europe/Paris", plan="True Fan"), credits=40)
        user = store.get_user("u")
        assert user.username == "Sam"
        assert user.timezone == "Europe/Paris"
        assert user.plan == "True Fan"
        assert store.get_credits("u") == 40
        assert store.get_user("missing") is None

    def test_consume_credits_is_conditional(self, store):
        store.save_user(UserProfile(user_id="u"), credits=10)
        assert store.consume_credits("u", 8)
        assert not store.consume_credits("u", 8)
        assert store.get_credits("u") == 2
        assert store.add_credits("u", 5) == 7

    def test_character_and_settings(self, store, character):
        store.save_character(character, CharacterSettings(chat_mode=ChatMode.COMPANION, time_awareness=True))
        assert store.get_character(CHARACTER_ID).name == "Aria"
        settings = store.get_character_settings(CHARACTER_ID)
        assert settings.chat_mode == ChatMode.COMPANION
        assert settings.time_awareness
        assert store.get_character_settings("missing") == CharacterSettings()

    def test_persona_and_world_info(self, store):
        store.save_persona("p1", "u", Persona(name="Captain", bio="Sailor", lore="Lost at sea"))
        assert store.get_persona("p1").lore == "Lost at sea"
        entries = [WorldInfoEntry(["harbor"], "The harbor is old."), WorldInfoEntry(["tower"], "Tall.")]
        store.save_world_info("w1", entries)
        assert store.get_world_info("w1") == entries
        store.save_world_info("w1", entries[:1])
        assert len(store.get_world_info("w1")) == 1


class TestConversations:
    def test_create_is_idempotent(self, store):
        addons = AddonSettings(mood_tracking=True)
        first = store.create_conversation("c", "u", "ch", addons)
        second = store.create_conversation("c", "other", "other")
        assert second.user_id == "u"
        assert second.addons.mood_tracking
        assert first.id == second.id

    def test_ceiling_warned_once(self, seeded_store):
        assert seeded_store.mark_ceiling_warned(CONVERSATION_ID)
        assert not seeded_store.mark_ceiling_warned(CONVERSATION_ID)
        assert seeded_store.get_conversation(CONVERSATION_ID).context_ceiling_warned

    def test_touch_activity(self, seeded_store, ts):
        seeded_store.touch_activity(CONVERSATION_ID, CHARACTER_ID, ts)
        assert seeded_store.get_conversation(CONVERSATION_ID).last_activity_at == ts


class TestMessages:
    def test_ordinals_are_gapless(self, seeded_store):
        add_pairs(seeded_store, 3)
        history = seeded_store.get_history(CONVERSATION_ID)
        assert [m.ordinal for m in history] == [1, 2, 3, 4, 5, 6]
        assert [m.role for m in history[:2]] == ["user", "ai"]

    def test_append_to_unknown_conversation_fails(self, store):
        with pytest.raises(StoreError):
            store.append_message("nope", "user", "hi")

    def test_reserve_and_finalize(self, seeded_store):
        user_msg, placeholder = seeded_store.reserve_turn(CONVERSATION_ID, "Hello Aria")
        assert (user_msg.ordinal, placeholder.ordinal) == (1, 2)
        assert placeholder.is_placeholder
        assert placeholder.content == ""

        ctx = SituationalContext(mood="happy")
        final = seeded_store.finalize_message(placeholder.id, "Hi there!", ctx)
        assert final.id == placeholder.id
        assert not final.is_placeholder
        assert final.content == "Hi there!"

        history = seeded_store.get_history(CONVERSATION_ID)
        assert len(history) == 2
        assert seeded_store.get_latest_situational_context(CONVERSATION_ID).mood == "happy"

    def test_finalize_missing_message(self, seeded_store):
        with pytest.raises(StoreError):
            seeded_store.finalize_message("nope", "text")

    def test_set_situational_context(self, seeded_store):
        msgs = add_pairs(seeded_store, 1)
        assert seeded_store.get_latest_situational_context(CONVERSATION_ID) is None
        seeded_store.set_situational_context(msgs[1].id, SituationalContext(location="Pier"))
        assert seeded_store.get_latest_situational_context(CONVERSATION_ID).location == "Pier"

    def test_concurrent_appends_unique_ordinals(self, seeded_store):
        def worker(n):
            for i in range(10):
                seeded_store.append_message(CONVERSATION_ID, "user", f"{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ordinals = [m.ordinal for m in seeded_store.get_history(CONVERSATION_ID)]
        assert ordinals == list(range(1, 41))


class TestSummaries:
    def test_upsert_creates_then_updates(self, seeded_store):
        stored, created = seeded_store.upsert_on_conflict(_summary(15, "First summary"))
        assert created
        assert seeded_store.get_boundary(CONVERSATION_ID) == 15

        updated, created = seeded_store.upsert_on_conflict(_summary(30, "Second summary"))
        assert not created
        assert updated.id == stored.id
        assert updated.prose == "Second summary"
        assert seeded_store.get_boundary(CONVERSATION_ID) == 30
        assert len(seeded_store.get_summaries(CHARACTER_ID, USER_ID)) == 1

    def test_manual_summaries_do_not_collide(self, seeded_store):
        seeded_store.upsert_on_conflict(_summary(15))
        seeded_store.save_summary(_summary(0, "Manual one", automatic=False))
        seeded_store.save_summary(_summary(0, "Manual two", automatic=False))
        assert len(seeded_store.get_summaries(CHARACTER_ID, USER_ID)) == 3
        assert seeded_store.get_automatic_summary(CONVERSATION_ID).prose == "First summary"
        assert seeded_store.get_boundary(CONVERSATION_ID) == 15

    def test_boundary_defaults_to_zero(self, seeded_store):
        assert seeded_store.get_boundary(CONVERSATION_ID) == 0
        assert seeded_store.get_automatic_summary(CONVERSATION_ID) is None

    def test_get_latest_and_ordering(self, seeded_store, ts):
        seeded_store.save_summary(_summary(0, "older", automatic=False, created_at=ts))
        seeded_store.save_summary(_summary(0, "newer", automatic=False, created_at=ts + timedelta(days=1)))
        assert seeded_store.get_latest(CHARACTER_ID, USER_ID).prose == "newer"
        assert seeded_store.get_latest(CHARACTER_ID).prose == "newer"
        assert seeded_store.get_latest(CHARACTER_ID, "someone-else") is None
        assert [s.prose for s in seeded_store.get_summaries(CHARACTER_ID, USER_ID)] == ["newer", "older"]

    def test_two_stores_same_file_keep_one_automatic(self, seeded_store, tmp_sqlite_db):
        other = SQLiteStore(db_path=tmp_sqlite_db)
        try:
            seeded_store.upsert_on_conflict(_summary(15, "from A"))
            _, created = other.upsert_on_conflict(_summary(15, "from B"))
            assert not created
            assert seeded_store.get_automatic_summary(CONVERSATION_ID).prose == "from B"
        finally:
            other.close()


def test_memory_database():
    store = SQLiteStore(db_path=":memory:")
    store.save_character(Character(id="c", name="Nyx"))
    assert store.get_character("c").name == "Nyx"
    store.close()

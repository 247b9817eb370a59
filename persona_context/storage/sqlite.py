"""SQLiteStore: primary storage backend using stdlib sqlite3."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from ..core.store import ConversationStore
from ..types import (
    AddonSettings,
    Character,
    CharacterSettings,
    ChatMode,
    Conversation,
    DurableSummary,
    Message,
    Persona,
    SituationalContext,
    StoreError,
    UserProfile,
    WorldInfoEntry,
)
from .helpers import dt_to_str, str_to_dt

logger = logging.getLogger(__name__)

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    username TEXT NOT NULL DEFAULT 'User',
    timezone TEXT NOT NULL DEFAULT 'UTC',
    plan TEXT,
    credits INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS characters (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    personality_summary TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    scenario TEXT NOT NULL DEFAULT '',
    chat_mode TEXT NOT NULL DEFAULT 'storytelling',
    time_awareness INTEGER NOT NULL DEFAULT 0,
    last_activity_at TEXT
);

CREATE TABLE IF NOT EXISTS personas (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    bio TEXT NOT NULL DEFAULT '',
    lore TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS world_info_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    world_info_id TEXT NOT NULL,
    keywords_json TEXT NOT NULL DEFAULT '[]',
    text TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    character_id TEXT NOT NULL,
    addons_json TEXT NOT NULL DEFAULT '{}',
    context_ceiling_warned INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_activity_at TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    is_placeholder INTEGER NOT NULL DEFAULT 0,
    situational_context_json TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (conversation_id, ordinal),
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS summaries (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    character_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    prose TEXT NOT NULL DEFAULT '',
    keywords_json TEXT NOT NULL DEFAULT '[]',
    boundary INTEGER NOT NULL DEFAULT 0,
    is_automatic INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_summaries_one_automatic
    ON summaries(conversation_id) WHERE is_automatic = 1;
CREATE INDEX IF NOT EXISTS idx_summaries_character_user ON summaries(character_id, user_id);
CREATE INDEX IF NOT EXISTS idx_world_info_entries_set ON world_info_entries(world_info_id);
"""

# Appends a row with the next gapless ordinal in a single statement.
INSERT_NEXT_MESSAGE_SQL = """\
INSERT INTO messages
    (id, conversation_id, ordinal, role, content, is_placeholder, created_at)
SELECT ?, ?, COALESCE(MAX(ordinal), 0) + 1, ?, ?, ?, ?
FROM messages WHERE conversation_id = ?
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ctx_to_json(ctx: SituationalContext | None) -> str | None:
    if ctx is None:
        return None
    return json.dumps(ctx.to_dict())


def _row_to_message(row: sqlite3.Row) -> Message:
    ctx_raw = row["situational_context_json"]
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        ordinal=row["ordinal"],
        role=row["role"],
        content=row["content"],
        is_placeholder=bool(row["is_placeholder"]),
        situational_context=SituationalContext.from_dict(json.loads(ctx_raw)) if ctx_raw else None,
        created_at=str_to_dt(row["created_at"]),
    )


def _row_to_summary(row: sqlite3.Row) -> DurableSummary:
    return DurableSummary(
        id=row["id"],
        conversation_id=row["conversation_id"],
        character_id=row["character_id"],
        user_id=row["user_id"],
        title=row["title"],
        prose=row["prose"],
        keywords=json.loads(row["keywords_json"]),
        boundary=row["boundary"],
        is_automatic=bool(row["is_automatic"]),
        created_at=str_to_dt(row["created_at"]),
        updated_at=str_to_dt(row["updated_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        character_id=row["character_id"],
        addons=AddonSettings.from_dict(json.loads(row["addons_json"])),
        context_ceiling_warned=bool(row["context_ceiling_warned"]),
        last_activity_at=str_to_dt(row["last_activity_at"]) if row["last_activity_at"] else None,
    )


class SQLiteStore(ConversationStore):
    """SQLite-based storage with atomic ordinals and one automatic summary per conversation."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    # -- profiles and settings --

    def save_user(self, profile: UserProfile, credits: int = 0) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO users (user_id, username, timezone, plan, credits)
                VALUES (?, ?, ?, ?, ?)""",
                (profile.user_id, profile.username, profile.timezone, profile.plan, credits),
            )

    def get_user(self, user_id: str) -> UserProfile | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UserProfile(
            user_id=row["user_id"],
            username=row["username"],
            timezone=row["timezone"],
            plan=row["plan"],
        )

    def get_credits(self, user_id: str) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT credits FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["credits"] if row else 0

    def add_credits(self, user_id: str, amount: int) -> int:
        with self._lock, self._get_conn() as conn:
            conn.execute(
                "UPDATE users SET credits = credits + ? WHERE user_id = ?",
                (amount, user_id),
            )
            row = conn.execute(
                "SELECT credits FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["credits"] if row else 0

    def consume_credits(self, user_id: str, amount: int) -> bool:
        with self._lock, self._get_conn() as conn:
            cursor = conn.execute(
                "UPDATE users SET credits = credits - ? WHERE user_id = ? AND credits >= ?",
                (amount, user_id, amount),
            )
        return cursor.rowcount == 1

    def save_character(self, character: Character, settings: CharacterSettings | None = None) -> None:
        settings = settings or CharacterSettings()
        with self._lock, self._get_conn() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO characters
                (id, name, personality_summary, description, scenario, chat_mode, time_awareness)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    character.id,
                    character.name,
                    character.personality_summary,
                    character.description,
                    character.scenario,
                    ChatMode(settings.chat_mode).value,
                    int(settings.time_awareness),
                ),
            )

    def get_character(self, character_id: str) -> Character | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM characters WHERE id = ?", (character_id,)
            ).fetchone()
        if not row:
            return None
        return Character(
            id=row["id"],
            name=row["name"],
            personality_summary=row["personality_summary"],
            description=row["description"],
            scenario=row["scenario"],
        )

    def get_character_settings(self, character_id: str) -> CharacterSettings:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT chat_mode, time_awareness FROM characters WHERE id = ?", (character_id,)
            ).fetchone()
        if not row:
            return CharacterSettings()
        try:
            mode = ChatMode(row["chat_mode"])
        except ValueError:
            mode = ChatMode.STORYTELLING
        return CharacterSettings(chat_mode=mode, time_awareness=bool(row["time_awareness"]))

    def save_persona(self, persona_id: str, user_id: str, persona: Persona) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO personas (id, user_id, name, bio, lore) VALUES (?, ?, ?, ?, ?)",
                (persona_id, user_id, persona.name, persona.bio, persona.lore),
            )

    def get_persona(self, persona_id: str) -> Persona | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM personas WHERE id = ?", (persona_id,)
            ).fetchone()
        if not row:
            return None
        return Persona(name=row["name"], bio=row["bio"], lore=row["lore"])

    def save_world_info(self, world_info_id: str, entries: list[WorldInfoEntry]) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute("DELETE FROM world_info_entries WHERE world_info_id = ?", (world_info_id,))
            for entry in entries:
                conn.execute(
                    "INSERT INTO world_info_entries (world_info_id, keywords_json, text) VALUES (?, ?, ?)",
                    (world_info_id, json.dumps(entry.keywords), entry.text),
                )

    def get_world_info(self, world_info_id: str) -> list[WorldInfoEntry]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT keywords_json, text FROM world_info_entries WHERE world_info_id = ? ORDER BY id",
                (world_info_id,),
            ).fetchall()
        return [WorldInfoEntry(keywords=json.loads(r["keywords_json"]), text=r["text"]) for r in rows]

    # -- conversations --

    def create_conversation(
        self,
        conversation_id: str,
        user_id: str,
        character_id: str,
        addons: AddonSettings | None = None,
    ) -> Conversation:
        addons = addons or AddonSettings()
        with self._lock, self._get_conn() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO conversations
                (id, user_id, character_id, addons_json, created_at)
                VALUES (?, ?, ?, ?, ?)""",
                (conversation_id, user_id, character_id, json.dumps(addons.to_dict()), dt_to_str(_now())),
            )
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _row_to_conversation(row)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def set_addon_settings(self, conversation_id: str, addons: AddonSettings) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute(
                "UPDATE conversations SET addons_json = ? WHERE id = ?",
                (json.dumps(addons.to_dict()), conversation_id),
            )

    def mark_ceiling_warned(self, conversation_id: str) -> bool:
        with self._lock, self._get_conn() as conn:
            cursor = conn.execute(
                "UPDATE conversations SET context_ceiling_warned = 1 "
                "WHERE id = ? AND context_ceiling_warned = 0",
                (conversation_id,),
            )
        return cursor.rowcount == 1

    def touch_activity(self, conversation_id: str, character_id: str, at: datetime) -> None:
        stamp = dt_to_str(at)
        with self._lock, self._get_conn() as conn:
            conn.execute(
                "UPDATE conversations SET last_activity_at = ? WHERE id = ?",
                (stamp, conversation_id),
            )
            conn.execute(
                "UPDATE characters SET last_activity_at = ? WHERE id = ?",
                (stamp, character_id),
            )

    # -- messages --

    def get_history(self, conversation_id: str) -> list[Message]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY ordinal",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def _insert_next(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        role: str,
        content: str,
        is_placeholder: bool,
    ) -> Message:
        message_id = str(uuid.uuid4())
        conn.execute(
            INSERT_NEXT_MESSAGE_SQL,
            (message_id, conversation_id, role, content, int(is_placeholder), dt_to_str(_now()), conversation_id),
        )
        row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return _row_to_message(row)

    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        try:
            with self._lock, self._get_conn() as conn:
                return self._insert_next(conn, conversation_id, role, content, False)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to append message to {conversation_id}: {e}") from e

    def reserve_turn(self, conversation_id: str, user_content: str) -> tuple[Message, Message]:
        try:
            with self._lock, self._get_conn() as conn:
                user_msg = self._insert_next(conn, conversation_id, "user", user_content, False)
                placeholder = self._insert_next(conn, conversation_id, "ai", "", True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to reserve turn in {conversation_id}: {e}") from e
        return user_msg, placeholder

    def finalize_message(
        self,
        message_id: str,
        content: str,
        situational_context: SituationalContext | None = None,
    ) -> Message:
        try:
            with self._lock, self._get_conn() as conn:
                cursor = conn.execute(
                    """UPDATE messages SET content = ?, is_placeholder = 0,
                    situational_context_json = COALESCE(?, situational_context_json)
                    WHERE id = ?""",
                    (content, _ctx_to_json(situational_context), message_id),
                )
                if cursor.rowcount == 0:
                    raise StoreError(f"Message not found: {message_id}")
                row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to finalize message {message_id}: {e}") from e
        return _row_to_message(row)

    def get_latest_situational_context(self, conversation_id: str) -> SituationalContext | None:
        with self._lock:
            row = self._get_conn().execute(
                """SELECT situational_context_json FROM messages
                WHERE conversation_id = ? AND situational_context_json IS NOT NULL
                ORDER BY ordinal DESC LIMIT 1""",
                (conversation_id,),
            ).fetchone()
        if not row:
            return None
        return SituationalContext.from_dict(json.loads(row["situational_context_json"]))

    def set_situational_context(self, message_id: str, context: SituationalContext) -> None:
        with self._lock, self._get_conn() as conn:
            conn.execute(
                "UPDATE messages SET situational_context_json = ? WHERE id = ?",
                (_ctx_to_json(context), message_id),
            )

    # -- summaries --

    def _insert_summary(self, conn: sqlite3.Connection, summary: DurableSummary) -> None:
        conn.execute(
            """INSERT INTO summaries
            (id, conversation_id, character_id, user_id, title, prose, keywords_json,
             boundary, is_automatic, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                summary.id,
                summary.conversation_id,
                summary.character_id,
                summary.user_id,
                summary.title,
                summary.prose,
                json.dumps(summary.keywords),
                summary.boundary,
                int(summary.is_automatic),
                dt_to_str(summary.created_at),
                dt_to_str(summary.updated_at),
            ),
        )

    def upsert_on_conflict(self, summary: DurableSummary) -> tuple[DurableSummary, bool]:
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    self._insert_summary(conn, summary)
                return summary, True
            except sqlite3.IntegrityError:
                logger.info(
                    "Automatic summary already exists for %s, updating in place",
                    summary.conversation_id,
                )
            with conn:
                conn.execute(
                    """UPDATE summaries SET title = ?, prose = ?, keywords_json = ?,
                    boundary = ?, updated_at = ?
                    WHERE conversation_id = ? AND is_automatic = 1""",
                    (
                        summary.title,
                        summary.prose,
                        json.dumps(summary.keywords),
                        summary.boundary,
                        dt_to_str(summary.updated_at),
                        summary.conversation_id,
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM summaries WHERE conversation_id = ? AND is_automatic = 1",
                    (summary.conversation_id,),
                ).fetchone()
        if not row:
            raise StoreError(f"Automatic summary vanished during upsert: {summary.conversation_id}")
        return _row_to_summary(row), False

    def save_summary(self, summary: DurableSummary) -> DurableSummary:
        summary.is_automatic = False
        with self._lock, self._get_conn() as conn:
            self._insert_summary(conn, summary)
        return summary

    def get_automatic_summary(self, conversation_id: str) -> DurableSummary | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM summaries WHERE conversation_id = ? AND is_automatic = 1",
                (conversation_id,),
            ).fetchone()
        return _row_to_summary(row) if row else None

    def get_latest(self, character_id: str, user_id: str | None = None) -> DurableSummary | None:
        sql = "SELECT * FROM summaries WHERE character_id = ?"
        params: list = [character_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY updated_at DESC, created_at DESC LIMIT 1"
        with self._lock:
            row = self._get_conn().execute(sql, params).fetchone()
        return _row_to_summary(row) if row else None

    def get_summaries(self, character_id: str, user_id: str) -> list[DurableSummary]:
        with self._lock:
            rows = self._get_conn().execute(
                """SELECT * FROM summaries WHERE character_id = ? AND user_id = ?
                ORDER BY created_at DESC""",
                (character_id, user_id),
            ).fetchall()
        return [_row_to_summary(r) for r in rows]

    def get_boundary(self, conversation_id: str) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT boundary FROM summaries WHERE conversation_id = ? AND is_automatic = 1",
                (conversation_id,),
            ).fetchone()
        return row["boundary"] if row else 0

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

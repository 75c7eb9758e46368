"""PostgreSQL client for thread and message persistence."""

import json
import asyncpg
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

from chorus_models import (
    Agent,
    AgentInstructions,
    ChatModelRef,
    MessageRecord,
    ServerCustomization,
    Thread,
    UserPreferences,
)
from chorus.config import settings


# SQL schema for chat tables
SCHEMA_SQL = """
-- Threads (one owner, immutable)
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    user_preferences JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_threads_user_id ON threads(user_id);

-- Messages (upserted by id)
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    parts JSONB NOT NULL DEFAULT '[]',
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id);

-- Agents
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    icon TEXT,
    visibility TEXT NOT NULL DEFAULT 'private',
    chat_model JSONB,
    instructions JSONB DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_agents_user_id ON agents(user_id);

-- Per-user notes for remote tool servers
CREATE TABLE IF NOT EXISTS server_customizations (
    user_id TEXT NOT NULL,
    server_id TEXT NOT NULL,
    server_name TEXT NOT NULL,
    prompt TEXT,
    tools JSONB DEFAULT '{}',
    PRIMARY KEY (user_id, server_id)
);
"""


def _json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class Database:
    """PostgreSQL database client for threads and messages."""

    def __init__(self):
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        if not settings.database_url:
            return
        self._pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=10,
        )

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        async with self._pool.acquire() as conn:
            yield conn

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        if not self._pool:
            return
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    # ============= Thread Operations =============

    async def create_thread(self, thread_id: str, user_id: str, title: str = "") -> Thread:
        """Create a new thread owned by user_id."""
        now = datetime.now(timezone.utc)
        thread = Thread(id=thread_id, user_id=user_id, title=title, created_at=now, updated_at=now)
        if not self._pool:
            return thread
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO threads (id, user_id, title, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO NOTHING
                """,
                thread.id,
                thread.user_id,
                thread.title,
                thread.created_at,
                thread.updated_at,
            )
        return thread

    async def get_thread(self, thread_id: str) -> Thread | None:
        """Get a thread by ID."""
        if not self._pool:
            return None
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM threads WHERE id = $1", thread_id)
        if not row:
            return None
        prefs = _json(row["user_preferences"])
        return Thread(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            user_preferences=UserPreferences.model_validate(prefs) if prefs else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============= Message Operations =============

    async def get_messages(self, thread_id: str) -> list[MessageRecord]:
        """Get all messages for a thread in creation order."""
        if not self._pool:
            return []
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE thread_id = $1
                ORDER BY created_at ASC
                """,
                thread_id,
            )
        return [self._row_to_message(row) for row in rows]

    async def upsert_message(self, message: MessageRecord) -> None:
        """Insert a message, or overwrite role, parts and metadata of an existing id."""
        if not self._pool:
            return
        wire = message.to_wire()
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO messages (id, thread_id, role, parts, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE
                SET role = EXCLUDED.role,
                    parts = EXCLUDED.parts,
                    metadata = EXCLUDED.metadata
                """,
                message.id,
                message.thread_id,
                message.role,
                json.dumps(wire.get("parts", [])),
                json.dumps(wire["metadata"]) if "metadata" in wire else None,
                message.created_at,
            )
            await conn.execute(
                "UPDATE threads SET updated_at = $1 WHERE id = $2",
                datetime.now(timezone.utc),
                message.thread_id,
            )

    def _row_to_message(self, row: asyncpg.Record) -> MessageRecord:
        return MessageRecord.model_validate(
            {
                "id": row["id"],
                "threadId": row["thread_id"],
                "role": row["role"],
                "parts": _json(row["parts"]) or [],
                "metadata": _json(row["metadata"]),
                "createdAt": row["created_at"],
            }
        )

    # ============= Agent Operations =============

    async def get_agent(self, agent_id: str, user_id: str) -> Agent | None:
        """Get an agent the user owns or that is shared with everyone."""
        if not self._pool:
            return None
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM agents
                WHERE id = $1 AND (user_id = $2 OR visibility IN ('public', 'readonly'))
                """,
                agent_id,
                user_id,
            )
        if not row:
            return None
        chat_model = _json(row["chat_model"])
        return Agent(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            icon=row["icon"],
            visibility=row["visibility"],
            chat_model=ChatModelRef.model_validate(chat_model) if chat_model else None,
            instructions=AgentInstructions.model_validate(_json(row["instructions"]) or {}),
            created_at=row["created_at"],
        )

    async def get_server_customizations(self, user_id: str) -> list[ServerCustomization]:
        """Get the user's notes for remote tool servers."""
        if not self._pool:
            return []
        async with self.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM server_customizations WHERE user_id = $1", user_id
            )
        return [
            ServerCustomization(
                server_id=row["server_id"],
                server_name=row["server_name"],
                prompt=row["prompt"],
                tools=_json(row["tools"]) or {},
            )
            for row in rows
        ]


# Global database instance
db = Database()

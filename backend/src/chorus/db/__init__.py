"""Thread/message store."""

from typing import Protocol

from chorus_models import Agent, MessageRecord, ServerCustomization, Thread
from chorus.db.memory import InMemoryStore
from chorus.db.postgres import Database, db


class ChatStore(Protocol):
    """Operations the orchestrator needs from the durable store."""

    async def get_thread(self, thread_id: str) -> Thread | None: ...

    async def create_thread(self, thread_id: str, user_id: str, title: str = "") -> Thread: ...

    async def get_messages(self, thread_id: str) -> list[MessageRecord]: ...

    async def upsert_message(self, message: MessageRecord) -> None: ...

    async def get_agent(self, agent_id: str, user_id: str) -> Agent | None: ...

    async def get_server_customizations(self, user_id: str) -> list[ServerCustomization]: ...


__all__ = ["ChatStore", "Database", "InMemoryStore", "db"]

"""In-process store with the same interface as the PostgreSQL client.

Used for local runs without a database (``STORE_BACKEND=memory``) and in tests.
"""

import asyncio
import logging
from datetime import datetime, timezone

from chorus_models import Agent, MessageRecord, ServerCustomization, Thread

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Keeps threads, messages and agents in dictionaries."""

    def __init__(self):
        self.threads: dict[str, Thread] = {}
        self.messages: dict[str, MessageRecord] = {}
        self.agents: dict[str, Agent] = {}
        self.customizations: dict[str, list[ServerCustomization]] = {}
        self._lock = asyncio.Lock()

    async def create_thread(self, thread_id: str, user_id: str, title: str = "") -> Thread:
        async with self._lock:
            if thread_id not in self.threads:
                self.threads[thread_id] = Thread(id=thread_id, user_id=user_id, title=title)
                logger.debug(f"Created thread {thread_id} for user {user_id}")
            return self.threads[thread_id]

    async def get_thread(self, thread_id: str) -> Thread | None:
        return self.threads.get(thread_id)

    async def get_messages(self, thread_id: str) -> list[MessageRecord]:
        rows = [m for m in self.messages.values() if m.thread_id == thread_id]
        return [m.model_copy(deep=True) for m in sorted(rows, key=lambda m: m.created_at)]

    async def upsert_message(self, message: MessageRecord) -> None:
        async with self._lock:
            existing = self.messages.get(message.id)
            if existing:
                # Same row: content is replaced, position in the thread is kept
                message = message.model_copy(
                    update={"thread_id": existing.thread_id, "created_at": existing.created_at}
                )
            self.messages[message.id] = message.model_copy(deep=True)
            thread = self.threads.get(message.thread_id)
            if thread:
                thread.updated_at = datetime.now(timezone.utc)

    async def get_agent(self, agent_id: str, user_id: str) -> Agent | None:
        agent = self.agents.get(agent_id)
        if agent and (agent.user_id == user_id or agent.visibility != "private"):
            return agent
        return None

    async def get_server_customizations(self, user_id: str) -> list[ServerCustomization]:
        return list(self.customizations.get(user_id, []))

    # Seeding helpers for local runs

    def add_agent(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent
        return agent

    def add_customization(self, user_id: str, customization: ServerCustomization) -> None:
        self.customizations.setdefault(user_id, []).append(customization)

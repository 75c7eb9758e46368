"""Persistence finalizer: commits a finished turn to the store."""

import logging
from dataclasses import dataclass
from functools import reduce
from typing import Any

from chorus_models import (
    AgentRunMetadata,
    ChatMessage,
    ChatModelRef,
    EventType,
    MessageMetadata,
    MessageRecord,
    StreamEvent,
    Usage,
)
from chorus.db import ChatStore
from chorus.errors import PersistenceError
from chorus.services.message_builder import to_save_parts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentRunResult:
    """What one generation task reports once its stream is closed."""

    agent_id: str
    agent_name: str
    chat_model: ChatModelRef | None = None
    tool_count: int = 0
    usage: Usage | None = None
    correlation_id: str | None = None
    error: str | None = None
    aborted: bool = False

    def to_metadata(self) -> AgentRunMetadata:
        return AgentRunMetadata(
            agent_id=self.agent_id,
            agent_name=self.agent_name,
            chat_model=self.chat_model,
            tool_count=self.tool_count,
            usage=self.usage,
            correlation_id=self.correlation_id,
            error=self.error,
        )


def _provider_conversation_id(event: StreamEvent) -> str | None:
    metadata: dict[str, Any] = event.get("providerMetadata") or {}
    for provider_data in metadata.values():
        if isinstance(provider_data, dict) and provider_data.get("conversationId"):
            return provider_data["conversationId"]
    return None


def extract_correlation_id(events: list[StreamEvent]) -> str | None:
    """Provider session id observed during a generation.

    Looked up in priority order: provider metadata of ``finish-step`` events,
    then of the ``finish`` event, then a root-level ``conversationId`` field.
    Within a level the latest event wins.
    """
    for kind in (EventType.FINISH_STEP, EventType.FINISH):
        for event in reversed(events):
            if event.get("type") == kind:
                found = _provider_conversation_id(event)
                if found:
                    return found
    for event in reversed(events):
        if event.get("conversationId"):
            return event["conversationId"]
    return None


def build_metadata(seed: MessageMetadata, results: list[AgentRunResult]) -> MessageMetadata:
    """Fold per-agent results into the metadata persisted with the response.

    A single agent's usage and correlation id go to the top level. A multi-agent
    turn keeps one entry per agent under ``agents``; the top-level usage is the
    sum over the agents that reported one.
    """
    if len(results) == 1:
        result = results[0]
        return seed.model_copy(
            update={
                "usage": result.usage,
                "correlation_id": result.correlation_id,
                "tool_count": result.tool_count,
            }
        )

    usages = [r.usage for r in results if r.usage is not None]
    return seed.model_copy(
        update={
            "agent_id": None,
            "agent_name": None,
            "chat_model": None,
            "tool_count": sum(r.tool_count for r in results),
            "usage": reduce(lambda a, b: a + b, usages) if usages else None,
            "correlation_id": None,
            "agents": {r.agent_id: r.to_metadata() for r in results},
        }
    )


class PersistenceFinalizer:
    """Upserts the user message and the assistant response of a turn."""

    def __init__(self, store: ChatStore):
        self.store = store

    async def persist_turn(
        self,
        thread_id: str,
        user_message: ChatMessage,
        response: ChatMessage,
        metadata: MessageMetadata,
    ) -> bool:
        """Save the turn. Returns False (after logging) when the store fails."""
        try:
            if response.id == user_message.id:
                # The response continued the incoming message: one row
                await self.store.upsert_message(
                    MessageRecord(
                        thread_id=thread_id,
                        id=response.id,
                        role=response.role,
                        parts=to_save_parts(response.parts),
                        metadata=metadata,
                    )
                )
            else:
                await self.store.upsert_message(
                    MessageRecord(
                        thread_id=thread_id,
                        id=user_message.id,
                        role=user_message.role,
                        parts=to_save_parts(user_message.parts),
                        metadata=user_message.metadata,
                    )
                )
                await self.store.upsert_message(
                    MessageRecord(
                        thread_id=thread_id,
                        id=response.id,
                        role=response.role,
                        parts=to_save_parts(response.parts),
                        metadata=metadata,
                    )
                )
        except Exception as e:
            error = PersistenceError(f"Failed to persist turn on thread {thread_id}: {e}")
            logger.error(error.message)
            return False

        logger.info(f"Persisted response {response.id} on thread {thread_id}")
        return True

"""Fan-in of several agents' event streams into one tagged stream."""

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import AsyncGenerator, AsyncIterator

from chorus_models import EventType, StreamEvent, Usage, is_taggable
from chorus.services.channel import Channel
from chorus.services.message_builder import usage_from_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagState:
    """Cursor of one source: the block and tool call its events belong to."""

    current_block_id: str | None = None
    current_tool_call_id: str | None = None
    usage: Usage | None = None


@dataclass
class AgentSource:
    agent_id: str
    agent_name: str
    events: AsyncIterator[StreamEvent]


def tag_step(
    state: TagState,
    event: StreamEvent,
    agent_id: str,
    agent_name: str,
) -> tuple[TagState, StreamEvent | None]:
    """Advance a source's state by one event.

    Returns the new state and the ``data-agent-tag`` event to put right before
    ``event`` (None when the event is not a block boundary).
    """
    kind = event.get("type", "")
    if kind == EventType.FINISH.value:
        state = replace(state, usage=usage_from_event(event) or state.usage)

    if not is_taggable(kind):
        return state, None

    event_id = event.get("id")
    tool_call_id = event.get("toolCallId")
    state = replace(
        state,
        current_block_id=event_id or state.current_block_id,
        current_tool_call_id=tool_call_id or state.current_tool_call_id,
    )
    tag = {
        "type": EventType.AGENT_TAG.value,
        "id": f"{agent_id}-{event_id or tool_call_id or uuid.uuid4().hex}",
        "data": {
            "agentId": agent_id,
            "agentName": agent_name,
            "blockId": state.current_block_id,
            "toolCallId": state.current_tool_call_id,
            "kind": kind,
        },
    }
    return state, tag


def agent_finish_event(agent_id: str, agent_name: str, usage: Usage | None) -> StreamEvent:
    data = {"agentId": agent_id, "agentName": agent_name}
    if usage is not None:
        data["usage"] = usage.to_wire()
    return {"type": EventType.AGENT_FINISH.value, "data": data}


async def merge_agent_streams(sources: list[AgentSource]) -> AsyncGenerator[StreamEvent, None]:
    """Interleave the sources as their events arrive.

    Each source keeps its own order. A tag and the event it describes are sent
    as one item, so they come out adjacent. A source that ends normally closes
    with ``data-agent-finish``; one that raises closes with a tagged ``error``.
    The output ends once every source has ended.
    """
    channel: Channel[list[StreamEvent]] = Channel(producers=len(sources))

    async def pump(source: AgentSource) -> None:
        state = TagState()
        try:
            async with aclosing(source.events) as events:
                async for event in events:
                    state, tag = tag_step(state, event, source.agent_id, source.agent_name)
                    channel.send([tag, event] if tag else [event])
            channel.send([agent_finish_event(source.agent_id, source.agent_name, state.usage)])
        except Exception as e:
            logger.error(f"Stream of agent {source.agent_name} failed: {e}")
            error = {"type": EventType.ERROR.value, "errorText": str(e) or type(e).__name__}
            state, tag = tag_step(state, error, source.agent_id, source.agent_name)
            channel.send([tag, error])
        finally:
            channel.close()

    pumps = [asyncio.create_task(pump(source)) for source in sources]
    try:
        async for batch in channel:
            for event in batch:
                yield event
    finally:
        for task in pumps:
            if not task.done():
                task.cancel()

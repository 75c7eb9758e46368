"""Materializes a response message from its event stream."""

import logging

from chorus_models import (
    AgentFinishPart,
    AgentTagPart,
    ChatMessage,
    ErrorPart,
    EventType,
    Part,
    ReasoningPart,
    StepStartPart,
    StreamEvent,
    TextPart,
    ToolApproval,
    ToolInvocationPart,
    Usage,
)

logger = logging.getLogger(__name__)


class MessageAccumulator:
    """Applies stream events, in order, to the parts of one message.

    Text and reasoning blocks are located by their block id, tool invocations by
    their tool call id, so events of several agents interleaved in one stream land
    in the right parts.
    """

    def __init__(self, message: ChatMessage):
        self.message = message
        self._blocks: dict[str, TextPart | ReasoningPart] = {}
        self._tags: dict[str, AgentTagPart] = {}
        self._tools: dict[str, ToolInvocationPart] = {
            p.tool_call_id: p for p in message.parts if isinstance(p, ToolInvocationPart)
        }

    def _append(self, part: Part) -> None:
        self.message.parts.append(part)

    def _block(self, event: StreamEvent, kind: type[TextPart] | type[ReasoningPart]):
        block_id = event.get("id", "")
        block = self._blocks.get(block_id)
        if block is None:
            block = kind(text="")
            self._blocks[block_id] = block
            self._append(block)
        return block

    def _tool(self, event: StreamEvent) -> ToolInvocationPart | None:
        tool_call_id = event.get("toolCallId")
        part = self._tools.get(tool_call_id)
        if part is None and event.get("toolName"):
            part = ToolInvocationPart(
                tool_call_id=tool_call_id,
                tool_name=event["toolName"],
                state="input-streaming",
                provider_executed=event.get("providerExecuted"),
            )
            self._tools[tool_call_id] = part
            self._append(part)
        return part

    def apply(self, event: StreamEvent) -> None:
        kind = event.get("type")

        if kind == EventType.STEP_START:
            self._append(StepStartPart())
        elif kind == EventType.TEXT_START:
            self._block(event, TextPart)
        elif kind == EventType.TEXT_DELTA:
            self._block(event, TextPart).text += event.get("delta", "")
        elif kind == EventType.REASONING_START:
            self._block(event, ReasoningPart)
        elif kind == EventType.REASONING_DELTA:
            self._block(event, ReasoningPart).text += event.get("delta", "")
        elif kind in (EventType.TOOL_INPUT_START, EventType.TOOL_INPUT_AVAILABLE):
            part = self._tool(event)
            if part is not None and kind == EventType.TOOL_INPUT_AVAILABLE:
                part.input = event.get("input")
                part.state = "input-available"
        elif kind == EventType.TOOL_APPROVAL_REQUEST:
            part = self._tool(event)
            if part is not None:
                part.state = "approval-requested"
                part.approval = ToolApproval(id=event.get("approvalId"))
        elif kind == EventType.TOOL_OUTPUT_AVAILABLE:
            part = self._tool(event)
            if part is None:
                logger.warning(f"Output for unknown tool call {event.get('toolCallId')}")
                return
            part.output = event.get("output")
            part.error_text = None
            part.state = "output-available"
        elif kind == EventType.TOOL_OUTPUT_ERROR:
            part = self._tool(event)
            if part is None:
                logger.warning(f"Error for unknown tool call {event.get('toolCallId')}")
                return
            part.error_text = event.get("errorText", "Tool call failed")
            part.state = "output-error"
        elif kind == EventType.AGENT_TAG:
            # Tags sharing an id describe the same block: keep one part
            tag = AgentTagPart.model_validate(event.get("data", {}))
            existing = self._tags.get(event.get("id"))
            if existing is None:
                self._tags[event.get("id") or str(id(tag))] = tag
                self._append(tag)
            else:
                existing.block_id = tag.block_id
                existing.tool_call_id = tag.tool_call_id
                existing.kind = tag.kind
        elif kind == EventType.AGENT_FINISH:
            data = dict(event.get("data", {}))
            self._append(AgentFinishPart.model_validate(data))
        elif kind == EventType.ERROR:
            self._append(ErrorPart(error_text=event.get("errorText", "Unknown error")))


def usage_from_event(event: StreamEvent, key: str = "usage") -> Usage | None:
    usage = event.get(key)
    return Usage.model_validate(usage) if usage else None


def to_save_parts(parts: list[Part]) -> list[Part]:
    """Storage form of a part list: empty text blocks dropped, parts copied."""
    saved: list[Part] = []
    for part in parts:
        if isinstance(part, (TextPart, ReasoningPart)) and not part.text:
            continue
        saved.append(part.model_copy(deep=True))
    return saved

"""Claude Agent SDK backend.

Claude agents keep their own session state. The session id reported on the
result message is the turn's correlation id; passing it back on the next turn
resumes the session instead of replaying the history.
"""

import logging
import uuid
from typing import AsyncGenerator

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)

from chorus_models import ChatMessage, EventType, StreamEvent, TextPart
from chorus.config import settings
from chorus.errors import GenerationError
from chorus.services.model_resolver import ModelRequest

logger = logging.getLogger(__name__)

PROVIDER_KEY = "claude-agent"


def message_text(message: ChatMessage) -> str:
    return "\n".join(p.text for p in message.parts if isinstance(p, TextPart))


def format_conversation_history(messages: list[ChatMessage]) -> str:
    """Format conversation history for inclusion in prompt."""
    lines = []
    for msg in messages:
        text = message_text(msg)
        if not text:
            continue
        role = "User" if msg.role == "user" else "Assistant"
        lines.append(f"{role}: {text}")
    return "\n\n".join(lines)


def build_context_prompt(messages: list[ChatMessage], resumed: bool) -> str:
    """Build the prompt for a turn.

    A resumed session already holds the history, so only the latest user
    message is sent. A fresh session gets the recent conversation inline.
    """
    # The response being generated trails the history; anchor on the last user turn
    user_turns = [i for i, m in enumerate(messages) if m.role == "user"]
    if not user_turns:
        return ""
    last = user_turns[-1]
    latest = message_text(messages[last])
    if resumed or last == 0:
        return latest

    history = format_conversation_history(messages[:last])
    return f"""Continue this conversation naturally, taking into account the context below.

[Recent conversation]
{history}

User: {latest}

Respond to the user's latest message."""


def _usage(result: ResultMessage) -> dict[str, int] | None:
    usage = result.usage or {}
    if not usage:
        return None
    input_tokens = usage.get("input_tokens", 0) + usage.get("cache_read_input_tokens", 0)
    output_tokens = usage.get("output_tokens", 0)
    return {
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "totalTokens": input_tokens + output_tokens,
    }


def _tool_result_events(block: ToolResultBlock) -> StreamEvent:
    if block.is_error:
        return {
            "type": EventType.TOOL_OUTPUT_ERROR.value,
            "toolCallId": block.tool_use_id,
            "errorText": str(block.content),
            "providerExecuted": True,
        }
    return {
        "type": EventType.TOOL_OUTPUT_AVAILABLE.value,
        "toolCallId": block.tool_use_id,
        "output": block.content,
        "providerExecuted": True,
    }


class ClaudeAgentModel:
    """Streams one Claude agent session turn as step events."""

    provider = PROVIDER_KEY

    def __init__(self, model_id: str = "sonnet"):
        self.model_id = model_id

    def _options(self, request: ModelRequest) -> ClaudeAgentOptions:
        env = {}
        if settings.claude_oauth_token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = settings.claude_oauth_token
        return ClaudeAgentOptions(
            model=self.model_id,
            system_prompt=request.system or None,
            resume=request.correlation_id,
            permission_mode=settings.claude_permission_mode,
            max_turns=settings.claude_max_turns,
            env=env,
        )

    async def stream(self, request: ModelRequest) -> AsyncGenerator[StreamEvent, None]:
        prompt = build_context_prompt(request.messages, resumed=bool(request.correlation_id))
        compaction_count = 0

        async for msg in query(prompt=prompt, options=self._options(request)):
            if isinstance(msg, AssistantMessage):
                for block in msg.content:
                    if isinstance(block, TextBlock):
                        block_id = str(uuid.uuid4())
                        yield {"type": EventType.TEXT_START.value, "id": block_id}
                        yield {"type": EventType.TEXT_DELTA.value, "id": block_id, "delta": block.text}
                        yield {"type": EventType.TEXT_END.value, "id": block_id}
                    elif isinstance(block, ThinkingBlock):
                        block_id = str(uuid.uuid4())
                        yield {"type": EventType.REASONING_START.value, "id": block_id}
                        yield {
                            "type": EventType.REASONING_DELTA.value,
                            "id": block_id,
                            "delta": block.thinking,
                        }
                        yield {"type": EventType.REASONING_END.value, "id": block_id}
                    elif isinstance(block, ToolUseBlock):
                        yield {
                            "type": EventType.TOOL_INPUT_START.value,
                            "toolCallId": block.id,
                            "toolName": block.name,
                            "providerExecuted": True,
                        }
                        yield {
                            "type": EventType.TOOL_INPUT_AVAILABLE.value,
                            "toolCallId": block.id,
                            "toolName": block.name,
                            "input": block.input,
                            "providerExecuted": True,
                        }
                    elif isinstance(block, ToolResultBlock):
                        yield _tool_result_events(block)
            elif isinstance(msg, UserMessage) and isinstance(msg.content, list):
                # Tool results of provider-executed calls come back as user content
                for block in msg.content:
                    if isinstance(block, ToolResultBlock):
                        yield _tool_result_events(block)
            elif isinstance(msg, SystemMessage):
                if msg.subtype == "compact_boundary":
                    compaction_count += 1
                    data = msg.data or {}
                    logger.info(
                        f"Claude session compacted ({data.get('trigger', 'unknown')}): "
                        f"{data.get('pre_tokens', 0)} tokens summarized"
                    )
            elif isinstance(msg, ResultMessage):
                if msg.is_error:
                    raise GenerationError(f"Claude agent error: {msg.result or 'Unknown error'}")
                finish: StreamEvent = {
                    "type": EventType.FINISH_STEP.value,
                    "finishReason": "stop",
                    "providerMetadata": {
                        PROVIDER_KEY: {
                            "conversationId": msg.session_id,
                            "costUsd": msg.total_cost_usd,
                            "compactions": compaction_count,
                        }
                    },
                }
                usage = _usage(msg)
                if usage:
                    finish["usage"] = usage
                yield finish
                return

        raise GenerationError("Claude agent session ended without a result", retryable=True)

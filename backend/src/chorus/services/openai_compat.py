"""Streaming client for OpenAI-compatible chat completion APIs."""

import json
import logging
import uuid
from typing import Any, AsyncGenerator

import httpx

from chorus_models import (
    ChatMessage,
    EventType,
    FilePart,
    StepStartPart,
    StreamEvent,
    TextPart,
    ToolInvocationPart,
)
from chorus.config import settings
from chorus.errors import GenerationError
from chorus.services.model_resolver import ModelRequest

logger = logging.getLogger(__name__)

FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def usage_from_openai(usage: dict[str, Any] | None) -> dict[str, int] | None:
    if not usage:
        return None
    input_tokens = usage.get("prompt_tokens", 0)
    output_tokens = usage.get("completion_tokens", 0)
    return {
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "totalTokens": usage.get("total_tokens", input_tokens + output_tokens),
    }


def _split_steps(parts: list) -> list[list]:
    steps: list[list] = [[]]
    for part in parts:
        if isinstance(part, StepStartPart):
            if steps[-1]:
                steps.append([])
            continue
        steps[-1].append(part)
    return [s for s in steps if s]


def to_openai_messages(system: str, messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert chat history to chat-completions messages."""
    converted: list[dict[str, Any]] = []
    if system:
        converted.append({"role": "system", "content": system})

    for message in messages:
        if message.role in ("user", "system"):
            content: list[dict[str, Any]] = []
            for part in message.parts:
                if isinstance(part, TextPart):
                    content.append({"type": "text", "text": part.text})
                elif isinstance(part, FilePart) and part.media_type.startswith("image/"):
                    content.append({"type": "image_url", "image_url": {"url": part.url}})
                elif isinstance(part, FilePart):
                    content.append(
                        {"type": "text", "text": f"[Attached file: {part.filename or part.url}]"}
                    )
            if content:
                converted.append({"role": message.role, "content": content})
            continue

        for step in _split_steps(message.parts):
            text = "".join(p.text for p in step if isinstance(p, TextPart))
            calls = [
                p
                for p in step
                if isinstance(p, ToolInvocationPart)
                and not p.provider_executed
                and (p.output is not None or p.error_text is not None)
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": p.tool_call_id,
                        "type": "function",
                        "function": {"name": p.tool_name, "arguments": json.dumps(p.input or {})},
                    }
                    for p in calls
                ]
            if text or calls:
                converted.append(entry)
            for p in calls:
                result = p.output if p.error_text is None else {"error": p.error_text}
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": p.tool_call_id,
                        "content": json.dumps(result, default=str),
                    }
                )
    return converted


class OpenAICompatibleModel:
    """One model behind a /chat/completions endpoint."""

    def __init__(
        self,
        model_id: str,
        base_url: str,
        api_key: str = "",
        provider: str = "openai",
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model_id = model_id
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.request_timeout
        self.transport = transport

    def _payload(self, request: ModelRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_id,
            "messages": to_openai_messages(request.system, request.messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [
                {"type": "function", "function": tool.spec()} for tool in request.tools.values()
            ]
            payload["tool_choice"] = "auto"
        if request.correlation_id:
            payload["conversation_id"] = request.correlation_id
        return payload

    async def stream(self, request: ModelRequest) -> AsyncGenerator[StreamEvent, None]:
        """Run one completion and translate its deltas into step events."""
        headers = dict(request.headers)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        text_id: str | None = None
        reasoning_id: str | None = None
        tool_calls: dict[int, dict[str, Any]] = {}
        finish_reason = "stop"
        usage: dict[str, int] | None = None
        conversation_id: str | None = None

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=self._payload(request),
                    headers=headers,
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode(errors="replace")
                        raise GenerationError(
                            f"HTTP {response.status_code}: {body[:300]}",
                            retryable=response.status_code >= 500 or response.status_code == 429,
                        )
                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data = line[6:]
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            continue

                        conversation_id = chunk.get("conversation_id") or conversation_id
                        if chunk.get("usage"):
                            usage = usage_from_openai(chunk["usage"])

                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}

                            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                            if reasoning:
                                if reasoning_id is None:
                                    reasoning_id = str(uuid.uuid4())
                                    yield {"type": EventType.REASONING_START.value, "id": reasoning_id}
                                yield {
                                    "type": EventType.REASONING_DELTA.value,
                                    "id": reasoning_id,
                                    "delta": reasoning,
                                }

                            if delta.get("content"):
                                if reasoning_id is not None:
                                    yield {"type": EventType.REASONING_END.value, "id": reasoning_id}
                                    reasoning_id = None
                                if text_id is None:
                                    text_id = str(uuid.uuid4())
                                    yield {"type": EventType.TEXT_START.value, "id": text_id}
                                yield {
                                    "type": EventType.TEXT_DELTA.value,
                                    "id": text_id,
                                    "delta": delta["content"],
                                }

                            for call in delta.get("tool_calls") or []:
                                index = call.get("index", 0)
                                function = call.get("function") or {}
                                if index not in tool_calls:
                                    tool_calls[index] = {
                                        "id": call.get("id") or str(uuid.uuid4()),
                                        "name": function.get("name", ""),
                                        "arguments": "",
                                    }
                                    yield {
                                        "type": EventType.TOOL_INPUT_START.value,
                                        "toolCallId": tool_calls[index]["id"],
                                        "toolName": tool_calls[index]["name"],
                                    }
                                if function.get("arguments"):
                                    tool_calls[index]["arguments"] += function["arguments"]
                                    yield {
                                        "type": EventType.TOOL_INPUT_DELTA.value,
                                        "toolCallId": tool_calls[index]["id"],
                                        "inputTextDelta": function["arguments"],
                                    }

                            if choice.get("finish_reason"):
                                finish_reason = FINISH_REASONS.get(
                                    choice["finish_reason"], choice["finish_reason"]
                                )
        except httpx.TransportError as e:
            raise GenerationError(f"{self.provider} request failed: {e}", retryable=True) from e

        if reasoning_id is not None:
            yield {"type": EventType.REASONING_END.value, "id": reasoning_id}
        if text_id is not None:
            yield {"type": EventType.TEXT_END.value, "id": text_id}

        for call in tool_calls.values():
            try:
                arguments = json.loads(call["arguments"]) if call["arguments"] else {}
            except json.JSONDecodeError:
                logger.warning(f"Unparseable arguments for tool {call['name']}: {call['arguments'][:200]}")
                arguments = {}
            yield {
                "type": EventType.TOOL_INPUT_AVAILABLE.value,
                "toolCallId": call["id"],
                "toolName": call["name"],
                "input": arguments,
            }

        finish: StreamEvent = {"type": EventType.FINISH_STEP.value, "finishReason": finish_reason}
        if usage:
            finish["usage"] = usage
        if conversation_id:
            finish["providerMetadata"] = {self.provider: {"conversationId": conversation_id}}
        yield finish

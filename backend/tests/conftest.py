"""Shared fixtures: scripted model backends, tools and an in-memory store."""

import asyncio
from typing import Any

import pytest
from tenacity import wait_none

from chorus_models import ChatMessage, ChatModelRef, TextPart
from chorus.auth import Session
from chorus.db import InMemoryStore
from chorus.errors import GenerationError
from chorus.models import ChatRequest
from chorus.services.model_resolver import ModelRequest, ModelResolver
from chorus.services.orchestrator import ChatOrchestrator
from chorus.services.tools import Tool, ToolProviderRegistry


class ScriptedModel:
    """Model backend that replays one scripted list of events per step.

    A step may be an exception (raised before any event), and an exception
    inside a step is raised at that point of the stream.
    """

    provider = "fake"

    def __init__(self, model_id: str, steps: list, delay: float = 0.0):
        self.model_id = model_id
        self.steps = list(steps)
        self.delay = delay
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest):
        self.requests.append(request)
        step = self.steps.pop(0) if self.steps else finish_step()
        if isinstance(step, BaseException):
            raise step
        for event in step:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if isinstance(event, BaseException):
                raise event
            yield event


class HangingModel:
    """Emits one text delta, then waits until cancelled."""

    provider = "fake"

    def __init__(self, model_id: str = "hanging"):
        self.model_id = model_id
        self.started = asyncio.Event()

    async def stream(self, request: ModelRequest):
        yield {"type": "text-start", "id": "h1"}
        yield {"type": "text-delta", "id": "h1", "delta": "thinking"}
        self.started.set()
        await asyncio.Event().wait()


def finish_step(
    usage: dict[str, int] | None = None,
    finish_reason: str = "stop",
    conversation_id: str | None = None,
) -> list[dict[str, Any]]:
    event: dict[str, Any] = {"type": "finish-step", "finishReason": finish_reason}
    if usage:
        event["usage"] = usage
    if conversation_id:
        event["providerMetadata"] = {"fake": {"conversationId": conversation_id}}
    return [event]


def text_step(
    text: str,
    block_id: str = "t1",
    usage: dict[str, int] | None = None,
    conversation_id: str | None = None,
) -> list[dict[str, Any]]:
    return [
        {"type": "text-start", "id": block_id},
        {"type": "text-delta", "id": block_id, "delta": text},
        {"type": "text-end", "id": block_id},
        *finish_step(usage, conversation_id=conversation_id),
    ]


def tool_call_step(tool_call_id: str, tool_name: str, arguments: dict) -> list[dict[str, Any]]:
    return [
        {"type": "tool-input-start", "toolCallId": tool_call_id, "toolName": tool_name},
        {
            "type": "tool-input-available",
            "toolCallId": tool_call_id,
            "toolName": tool_name,
            "input": arguments,
        },
        *finish_step(finish_reason="tool-calls"),
    ]


def usage(input_tokens: int, output_tokens: int) -> dict[str, int]:
    return {
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "totalTokens": input_tokens + output_tokens,
    }


def retryable_failure() -> GenerationError:
    return GenerationError("HTTP 503: overloaded", retryable=True)


class EchoRecorder:
    """Tool executor that records its calls."""

    def __init__(self):
        self.calls: list[dict] = []

    async def __call__(self, arguments, ctx):
        self.calls.append(arguments)
        return {"echo": arguments.get("text", "")}


def make_message(text: str = "Hello", message_id: str = "m-user", role: str = "user") -> ChatMessage:
    return ChatMessage(id=message_id, role=role, parts=[TextPart(text=text)])


def make_request(
    thread_id: str = "thread-1",
    message: ChatMessage | None = None,
    chat_model: str | None = "fake/primary",
    **kwargs,
) -> ChatRequest:
    ref = None
    if chat_model:
        provider, model = chat_model.split("/", 1)
        ref = ChatModelRef(provider=provider, model=model)
    return ChatRequest(id=thread_id, message=message or make_message(), chat_model=ref, **kwargs)


async def collect(events) -> list[dict[str, Any]]:
    return [event async for event in events]


def types_of(events: list[dict[str, Any]]) -> list[str]:
    return [e["type"] for e in events]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def session() -> Session:
    return Session(user_id="user-1", email="ada@example.com", name="Ada")


@pytest.fixture
def scripted_models() -> dict[str, Any]:
    """Backends by model id; tests put their scripted models here."""
    return {}


@pytest.fixture
def resolver(scripted_models) -> ModelResolver:
    return ModelResolver(
        catalog={
            "fake": {"kind": "fake"},
            "plain": {"kind": "fake", "tool_calls": False},
        },
        factories={"fake": lambda model_id, cfg: scripted_models[model_id]},
    )


@pytest.fixture
def echo() -> EchoRecorder:
    return EchoRecorder()


@pytest.fixture
def tool_registry(echo) -> ToolProviderRegistry:
    return ToolProviderRegistry(
        toolkits={
            "echo": {
                "echo": Tool(
                    name="echo",
                    description="Echo the text back",
                    parameters={"type": "object", "properties": {"text": {"type": "string"}}},
                    execute=echo,
                )
            }
        }
    )


@pytest.fixture
def orchestrator(store, resolver, tool_registry) -> ChatOrchestrator:
    return ChatOrchestrator(store, models=resolver, tools=tool_registry, wait=wait_none())

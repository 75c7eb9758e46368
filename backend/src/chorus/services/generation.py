"""Per-agent generation: the streaming model/tool loop of one agent."""

import asyncio
import logging
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from chorus_models import (
    ChatMessage,
    EventType,
    StreamEvent,
    ToolInvocationPart,
    Usage,
)
from chorus.config import settings
from chorus.errors import GenerationError
from chorus.services.agent_context import AgentContext
from chorus.services.channel import Channel
from chorus.services.finalizer import AgentRunResult, extract_correlation_id
from chorus.services.message_builder import MessageAccumulator, usage_from_event
from chorus.services.model_resolver import ModelRequest
from chorus.services.tools import Tool, ToolCallContext, ToolMap

logger = logging.getLogger(__name__)

RETRY_WAIT = wait_exponential(multiplier=0.5, max=4)

FinishCallback = Callable[[ChatMessage, AgentRunResult], Awaitable[Any]]


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, GenerationError):
        return error.retryable
    return isinstance(error, httpx.TransportError)


def _output_event(tool_call_id: str, output: Any) -> StreamEvent:
    return {
        "type": EventType.TOOL_OUTPUT_AVAILABLE.value,
        "toolCallId": tool_call_id,
        "output": output,
    }


def _error_event(tool_call_id: str, error_text: str) -> StreamEvent:
    return {
        "type": EventType.TOOL_OUTPUT_ERROR.value,
        "toolCallId": tool_call_id,
        "errorText": error_text,
    }


async def run_tool(tool: Tool | None, tool_name: str, arguments: Any, ctx: ToolCallContext) -> StreamEvent:
    """Execute one tool call and describe its outcome as an output event."""
    if tool is None or tool.execute is None:
        return _error_event(ctx.tool_call_id, f"Tool '{tool_name}' is not available")
    try:
        output = await tool.execute(arguments or {}, ctx)
    except Exception as e:
        logger.warning(f"Tool {tool_name} ({ctx.tool_call_id}) failed: {e}")
        return _error_event(ctx.tool_call_id, str(e) or type(e).__name__)
    return _output_event(ctx.tool_call_id, output)


class PendingToolResolver:
    """Settles the tool calls an incoming assistant message left open.

    Calls in ``input-available`` run; calls awaiting approval run once approved and
    are declined once rejected. Outcomes are written into the message parts. One
    resolver is shared by every agent of a turn, so each call runs at most once.

    ``tools`` is the executable tool map of the whole turn, so the outcome does
    not depend on which agent resolves first.
    """

    def __init__(self, message: ChatMessage, tools: ToolMap | None = None):
        self.message = message
        self.tools: ToolMap = dict(tools or {})
        self._lock = asyncio.Lock()
        self._resolved: dict[str, StreamEvent] = {}

    def _tool_parts(self) -> list[ToolInvocationPart]:
        if self.message.role != "assistant":
            return []
        return [
            p
            for p in self.message.parts
            if isinstance(p, ToolInvocationPart) and not p.provider_executed
        ]

    async def _settle(
        self,
        part: ToolInvocationPart,
        messages: list[ChatMessage],
        cancel: asyncio.Event | None,
    ) -> StreamEvent | None:
        if part.state == "approval-requested":
            decision = part.approval.approved if part.approval else None
            if decision is None:
                return None
            if not decision:
                reason = part.approval.reason if part.approval else None
                return _error_event(
                    part.tool_call_id,
                    f"Tool execution was declined: {reason}" if reason else "Tool execution was declined",
                )
        ctx = ToolCallContext(tool_call_id=part.tool_call_id, messages=messages, cancel=cancel)
        return await run_tool(self.tools.get(part.tool_name), part.tool_name, part.input, ctx)

    async def resolve(
        self,
        messages: list[ChatMessage],
        cancel: asyncio.Event | None = None,
    ) -> list[StreamEvent]:
        """Events for every settled call, running the calls not settled yet."""
        events: list[StreamEvent] = []
        async with self._lock:
            for part in self._tool_parts():
                if part.tool_call_id in self._resolved:
                    events.append(self._resolved[part.tool_call_id])
                    continue
                if not part.in_progress:
                    continue
                event = await self._settle(part, messages, cancel)
                if event is None:
                    continue
                if event["type"] == EventType.TOOL_OUTPUT_AVAILABLE.value:
                    part.output = event["output"]
                    part.state = "output-available"
                else:
                    part.error_text = event["errorText"]
                    part.state = "output-error"
                logger.info(f"Resolved pending tool call {part.tool_call_id} ({part.tool_name})")
                self._resolved[part.tool_call_id] = event
                events.append(event)
        return events


class GenerationTask:
    """Runs one agent and streams its events.

    The work happens in a worker task feeding a channel, so a cancel signal can
    interrupt it at any suspension point. An interrupted agent ends its sequence
    with ``abort``; a failing one with ``error``. Neither reaches other agents.
    """

    def __init__(
        self,
        context: AgentContext,
        history: list[ChatMessage],
        response: ChatMessage,
        pending: PendingToolResolver,
        cancel: asyncio.Event,
        max_steps: int | None = None,
        max_attempts: int | None = None,
        wait=RETRY_WAIT,
        on_finish: FinishCallback | None = None,
    ):
        self.context = context
        self.history = history
        self.response = response
        self.pending = pending
        self.cancel = cancel
        self.max_steps = max_steps or settings.generation_max_steps
        self.max_attempts = max_attempts or settings.generation_max_attempts
        self.wait = wait
        self.on_finish = on_finish

        self.accumulator = MessageAccumulator(response)
        self.result: AgentRunResult | None = None
        self._send: Callable[[StreamEvent], None] | None = None
        self._finish_events: list[StreamEvent] = []
        self._correlation_id = context.correlation_id
        self._usage: Usage | None = None
        self._error: str | None = None
        self._aborted = False

    # ============= Event plumbing =============

    def _emit(self, event: StreamEvent) -> None:
        self.accumulator.apply(event)
        if event.get("type") in (EventType.FINISH_STEP.value, EventType.FINISH.value):
            self._finish_events.append(event)
        self._send(event)

    async def stream(self) -> AsyncGenerator[StreamEvent, None]:
        channel: Channel[StreamEvent] = Channel()
        self._send = channel.send
        worker = asyncio.create_task(self._drive())
        worker.add_done_callback(lambda _: channel.close())
        watcher = asyncio.create_task(self._watch_cancel(worker))
        try:
            async for event in channel:
                yield event
            if worker.cancelled() and not self._aborted:
                # Cancelled before the worker started, so it could not report it
                self._aborted = True
                abort: StreamEvent = {"type": EventType.ABORT.value}
                self.accumulator.apply(abort)
                yield abort
        finally:
            watcher.cancel()
            if not worker.done():
                worker.cancel()

        self.result = self._build_result()
        if self.on_finish:
            await self.on_finish(self.response, self.result)

    async def _watch_cancel(self, worker: asyncio.Task) -> None:
        await self.cancel.wait()
        if not worker.done():
            logger.info(f"Cancelling generation of {self.context.agent_name}")
            worker.cancel()

    def _abort(self) -> None:
        self._aborted = True
        self._emit({"type": EventType.ABORT.value})

    def _build_result(self) -> AgentRunResult:
        return AgentRunResult(
            agent_id=self.context.key,
            agent_name=self.context.agent_name,
            chat_model=self.context.handle.ref,
            tool_count=len(self.context.tools),
            usage=self._usage,
            correlation_id=extract_correlation_id(self._finish_events) or self._correlation_id,
            error=self._error,
            aborted=self._aborted,
        )

    # ============= Generation =============

    async def _drive(self) -> None:
        try:
            self._emit({"type": EventType.START.value, "messageId": self.response.id})
            if self.cancel.is_set():
                # Stopped before this agent got to run
                self._abort()
                return
            resolved = await self.pending.resolve(self.history, self.cancel)
            for event in resolved:
                self._emit(event)
            await self._run_steps()
        except asyncio.CancelledError:
            self._abort()
            raise
        except Exception as e:
            logger.error(f"Generation failed for {self.context.agent_name}: {e}")
            self._error = str(e) or type(e).__name__
            self._emit({"type": EventType.ERROR.value, "errorText": self._error})

    def _request(self) -> ModelRequest:
        return ModelRequest(
            system=self.context.system_prompt,
            messages=[*self.history, self.response],
            tools=self.context.tools,
            headers=self.context.headers,
            correlation_id=self._correlation_id,
            cancel=self.cancel,
        )

    async def _open_stream(self, request: ModelRequest) -> tuple[AsyncIterator[StreamEvent], StreamEvent]:
        """Start the provider stream, retrying until it produced its first event."""
        model = self.context.handle.model
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                stream = model.stream(request)
                try:
                    first = await anext(stream)
                except StopAsyncIteration:
                    raise GenerationError(f"{model.provider}/{model.model_id} returned an empty stream") from None
                except BaseException:
                    await stream.aclose()
                    raise
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"{model.provider}/{model.model_id} recovered on attempt {attempt.retry_state.attempt_number}")
        return stream, first

    async def _step_events(self, request: ModelRequest) -> AsyncGenerator[StreamEvent, None]:
        stream, first = await self._open_stream(request)
        async with aclosing(stream):
            yield first
            async for event in stream:
                yield event

    async def _run_steps(self) -> None:
        finish_reason = "stop"
        provider_metadata = None

        for step in range(self.max_steps):
            self._emit({"type": EventType.STEP_START.value})
            finish_step: StreamEvent = {"type": EventType.FINISH_STEP.value, "finishReason": "stop"}
            calls: list[StreamEvent] = []

            async with aclosing(self._step_events(self._request())) as events:
                async for event in events:
                    if event.get("type") == EventType.FINISH_STEP.value:
                        finish_step = event
                        continue
                    self._emit(event)
                    if (
                        event.get("type") == EventType.TOOL_INPUT_AVAILABLE.value
                        and not event.get("providerExecuted")
                    ):
                        calls.append(event)

            answered, waiting = await self._handle_tool_calls(calls)
            self._emit(finish_step)

            step_usage = usage_from_event(finish_step)
            if step_usage:
                self._usage = step_usage if self._usage is None else self._usage + step_usage
            finish_reason = finish_step.get("finishReason", finish_reason)
            provider_metadata = finish_step.get("providerMetadata") or provider_metadata
            self._correlation_id = extract_correlation_id([finish_step]) or self._correlation_id

            if not answered or waiting:
                break
        else:
            logger.warning(f"{self.context.agent_name} stopped after {self.max_steps} steps")

        finish: StreamEvent = {"type": EventType.FINISH.value, "finishReason": finish_reason}
        if self._usage:
            finish["usage"] = self._usage.to_wire()
        if provider_metadata:
            finish["providerMetadata"] = provider_metadata
        self._emit(finish)

    async def _handle_tool_calls(self, calls: list[StreamEvent]) -> tuple[int, bool]:
        """Answer the step's tool calls.

        Returns how many calls got an outcome and whether any call is left to
        the client (approval or client-side execution).
        """
        answered = 0
        waiting = False
        runnable: list[tuple[StreamEvent, Tool]] = []

        for call in calls:
            tool = self.context.tools.get(call.get("toolName", ""))
            if tool is None:
                self._emit(_error_event(call["toolCallId"], f"Tool '{call.get('toolName')}' is not available"))
                answered += 1
            elif tool.requires_approval:
                self._emit(
                    {
                        "type": EventType.TOOL_APPROVAL_REQUEST.value,
                        "toolCallId": call["toolCallId"],
                        "approvalId": str(uuid.uuid4()),
                    }
                )
                waiting = True
            elif tool.execute is None:
                waiting = True
            else:
                runnable.append((call, tool))

        if runnable:
            messages = [*self.history, self.response]
            tasks = [
                asyncio.create_task(
                    run_tool(
                        tool,
                        tool.name,
                        call.get("input"),
                        ToolCallContext(
                            tool_call_id=call["toolCallId"], messages=messages, cancel=self.cancel
                        ),
                    )
                )
                for call, tool in runnable
            ]
            try:
                for next_done in asyncio.as_completed(tasks):
                    self._emit(await next_done)
                    answered += 1
            finally:
                for task in tasks:
                    task.cancel()

        return answered, waiting

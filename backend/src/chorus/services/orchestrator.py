"""Chat turn orchestration: intake, per-agent generation, merge, persistence."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncGenerator, Callable

from chorus_models import ChatMessage, EventType, MessageMetadata, StreamEvent
from chorus.auth import Session
from chorus.db import ChatStore
from chorus.models import ChatRequest
from chorus.services.agent_context import AgentContext, AgentContextBuilder
from chorus.services.channel import Channel
from chorus.services.finalizer import AgentRunResult, PersistenceFinalizer, build_metadata
from chorus.services.generation import RETRY_WAIT, GenerationTask, PendingToolResolver
from chorus.services.ingestion import Downloader, download_attachment
from chorus.services.intake import AgentTarget, PreparedTurn, RequestIntake
from chorus.services.message_builder import MessageAccumulator
from chorus.services.model_resolver import ModelResolver
from chorus.services.stream_merge import AgentSource, merge_agent_streams
from chorus.services.tools import ToolMap, ToolProviderRegistry

logger = logging.getLogger(__name__)

# Turns keep running after the client leaves; hold them until they finish
_running_turns: set[asyncio.Task] = set()


@dataclass
class TurnPlan:
    """A prepared turn with one context (or setup failure) per target."""

    turn: PreparedTurn
    contexts: list[AgentContext | Exception] = field(default_factory=list)

    @property
    def is_multi_agent(self) -> bool:
        return len(self.turn.targets) > 1


def turn_tools(contexts: list[AgentContext | Exception]) -> ToolMap:
    """Executable tools of every agent of the turn; the first agent wins on a name clash."""
    tools: ToolMap = {}
    for context in contexts:
        if isinstance(context, Exception):
            continue
        for name, tool in context.executable_tools.items():
            tools.setdefault(name, tool)
    return tools


async def _setup_failure(error: Exception) -> AsyncGenerator[StreamEvent, None]:
    yield {"type": EventType.ERROR.value, "errorText": str(error)}


class ChatOrchestrator:
    """Runs chat turns for one or more agents."""

    def __init__(
        self,
        store: ChatStore,
        models: ModelResolver | None = None,
        tools: ToolProviderRegistry | None = None,
        download: Downloader = download_attachment,
        wait=RETRY_WAIT,
    ):
        self.store = store
        self.intake = RequestIntake(store, download)
        self.contexts = AgentContextBuilder(
            store,
            models or ModelResolver(),
            tools or ToolProviderRegistry.from_settings(),
        )
        self.finalizer = PersistenceFinalizer(store)
        self.wait = wait

    async def prepare(self, request: ChatRequest, session: Session | None) -> TurnPlan:
        """Everything that can fail before the response stream opens.

        Raises the intake errors, and the context error when no agent of the
        turn could be set up. Agents of a multi-agent turn that fail setup while
        others succeed report their error in the stream instead.
        """
        turn = await self.intake.prepare(request, session)
        built = await asyncio.gather(
            *(self.contexts.build(turn, target) for target in turn.targets),
            return_exceptions=True,
        )
        contexts: list[AgentContext | Exception] = []
        for target, result in zip(turn.targets, built):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Agent {target.agent_name} setup failed: {result}")
            contexts.append(result)

        if all(isinstance(c, Exception) for c in contexts):
            raise contexts[0]
        return TurnPlan(turn=turn, contexts=contexts)

    def _new_response(self, turn: PreparedTurn) -> ChatMessage:
        if turn.is_continuation:
            return turn.message
        return ChatMessage(id=str(uuid.uuid4()), role="assistant", parts=[])

    def _history(self, turn: PreparedTurn) -> list[ChatMessage]:
        # A continued assistant message is the response, not history
        return turn.messages[:-1] if turn.is_continuation else turn.messages

    async def stream(self, plan: TurnPlan, cancel: asyncio.Event) -> AsyncGenerator[StreamEvent, None]:
        """Events of the turn.

        The turn runs in a background task, so it completes and persists even
        if this generator is abandoned.
        """
        channel: Channel[StreamEvent] = Channel()
        runner = asyncio.create_task(self._run_turn(plan, cancel, channel.send))
        _running_turns.add(runner)
        runner.add_done_callback(_running_turns.discard)
        runner.add_done_callback(lambda _: channel.close())
        async for event in channel:
            yield event

    async def _run_turn(
        self,
        plan: TurnPlan,
        cancel: asyncio.Event,
        send: Callable[[StreamEvent], None],
    ) -> None:
        try:
            if plan.is_multi_agent:
                await self._run_multi(plan, cancel, send)
            else:
                await self._run_single(plan, cancel, send)
        except Exception as e:
            logger.error(f"Turn on thread {plan.turn.thread.id} failed: {e}")
            send({"type": EventType.ERROR.value, "errorText": str(e)})

    async def _run_single(
        self,
        plan: TurnPlan,
        cancel: asyncio.Event,
        send: Callable[[StreamEvent], None],
    ) -> None:
        turn = plan.turn
        context = plan.contexts[0]
        seed = context.metadata_seed()

        async def persist(response: ChatMessage, result: AgentRunResult) -> None:
            await self.finalizer.persist_turn(
                turn.thread.id, turn.message, response, build_metadata(seed, [result])
            )

        task = GenerationTask(
            context,
            self._history(turn),
            self._new_response(turn),
            PendingToolResolver(turn.message, context.executable_tools),
            cancel,
            wait=self.wait,
            on_finish=persist,
        )
        async for event in task.stream():
            send(event)

    async def _run_multi(
        self,
        plan: TurnPlan,
        cancel: asyncio.Event,
        send: Callable[[StreamEvent], None],
    ) -> None:
        turn = plan.turn
        history = self._history(turn)
        response = self._new_response(turn)
        pending = PendingToolResolver(turn.message, turn_tools(plan.contexts))

        tasks: list[GenerationTask] = []
        failed: list[tuple[AgentTarget, Exception]] = []
        sources: list[AgentSource] = []
        for target, context in zip(turn.targets, plan.contexts):
            if isinstance(context, Exception):
                failed.append((target, context))
                sources.append(AgentSource(target.key, target.agent_name, _setup_failure(context)))
                continue
            # Each agent builds its own copy; the merged stream rebuilds the shared one
            task = GenerationTask(
                context,
                history,
                response.model_copy(deep=True),
                pending,
                cancel,
                wait=self.wait,
            )
            tasks.append(task)
            sources.append(AgentSource(context.key, context.agent_name, task.stream()))

        logger.info(f"Running {len(sources)} agents on thread {turn.thread.id}")
        merged = MessageAccumulator(response)
        async for event in merge_agent_streams(sources):
            merged.apply(event)
            send(event)

        results = [task.result for task in tasks if task.result is not None]
        results.extend(
            AgentRunResult(agent_id=target.key, agent_name=target.agent_name, error=str(error))
            for target, error in failed
        )
        metadata = build_metadata(MessageMetadata(tool_choice=turn.request.tool_choice), results)
        await self.finalizer.persist_turn(turn.thread.id, turn.message, response, metadata)

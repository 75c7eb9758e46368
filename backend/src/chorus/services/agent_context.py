"""Per-agent context: model, capability map, system prompt and headers."""

import asyncio
import logging
from dataclasses import dataclass, field

from chorus_models import Agent, ChatMessage, MessageMetadata, ServerCustomization
from chorus.db import ChatStore
from chorus.errors import ConfigurationError
from chorus.services.intake import DEFAULT_AGENT_ID, AgentTarget, PreparedTurn
from chorus.services.model_resolver import ModelHandle, ModelResolver
from chorus.services.prompts import (
    TOOL_CALL_UNSUPPORTED_PROMPT,
    build_server_customizations_prompt,
    build_user_system_prompt,
    merge_system_prompt,
)
from chorus.services.tools import (
    ToolMap,
    ToolProviderRegistry,
    exclude_tool_execution,
    is_tool_call_allowed,
    load_gated,
    merge_tool_maps,
    require_approval,
)

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """Everything one generation task needs to run."""

    agent_id: str | None
    agent_name: str
    handle: ModelHandle
    system_prompt: str = ""
    # What the model is offered this turn
    tools: ToolMap = field(default_factory=dict)
    # Same tools with their executors, for replaying calls the client confirmed
    executable_tools: ToolMap = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    tool_choice: str = "auto"
    correlation_id: str | None = None
    tool_call_allowed: bool = True

    @property
    def key(self) -> str:
        return self.agent_id or DEFAULT_AGENT_ID

    def metadata_seed(self) -> MessageMetadata:
        return MessageMetadata(
            agent_id=self.agent_id,
            agent_name=self.agent_name,
            tool_choice=self.tool_choice,
            tool_count=len(self.tools),
            chat_model=self.handle.ref,
        )


def find_correlation_id(messages: list[ChatMessage], target: AgentTarget) -> str | None:
    """Correlation id saved on the latest prior assistant message of this agent."""
    for message in reversed(messages):
        if message.role != "assistant" or message.metadata is None:
            continue
        metadata = message.metadata
        if metadata.agents:
            if target.key in metadata.agents:
                return metadata.agents[target.key].correlation_id
            continue
        if metadata.agent_id == target.agent_id:
            return metadata.correlation_id
    return None


class AgentContextBuilder:
    """Builds one AgentContext per target of a prepared turn."""

    def __init__(self, store: ChatStore, models: ModelResolver, tools: ToolProviderRegistry):
        self.store = store
        self.models = models
        self.tools = tools

    async def _load_agent(self, target: AgentTarget, user_id: str) -> Agent | None:
        if target.agent_id is None:
            return None
        agent = await self.store.get_agent(target.agent_id, user_id)
        if agent is None:
            logger.warning(f"Agent {target.agent_id} not found or not visible to {user_id}")
        return agent

    async def _customizations(
        self, user_id: str, remote_tools: ToolMap
    ) -> dict[str, ServerCustomization]:
        servers = {t.server_id for t in remote_tools.values() if t.server_id}
        if not servers:
            return {}
        try:
            found = await self.store.get_server_customizations(user_id)
        except Exception as e:
            logger.warning(f"Could not load tool server customizations: {e}")
            return {}
        return {c.server_id: c for c in found if c.server_id in servers}

    async def build(self, turn: PreparedTurn, target: AgentTarget) -> AgentContext:
        request = turn.request
        session = turn.session

        agent = await self._load_agent(target, session.user_id)
        agent_name = agent.name if agent else target.agent_name

        chat_model = request.chat_model or (agent.chat_model if agent else None)
        if chat_model is None:
            raise ConfigurationError("No model specified")
        handle = self.models.resolve(chat_model)

        mentions = list(request.mentions)
        if agent:
            mentions.extend(agent.instructions.mentions)

        recorded_choice = turn.message.metadata.tool_choice if turn.message.metadata else None
        manual = request.tool_choice == "manual" or recorded_choice == "manual"
        tool_choice = "manual" if manual else request.tool_choice

        image_model = request.image_tool.model if request.image_tool else None
        image_active = bool(image_model)
        tool_call_allowed = is_tool_call_allowed(
            self.models.supports_tool_calls(handle),
            tool_choice,
            len(mentions),
            image_active,
        )

        remote, workflow, default, image = await asyncio.gather(
            load_gated(
                "remote",
                tool_call_allowed,
                lambda: self.tools.load_remote_tools(mentions, request.allowed_mcp_servers),
            ),
            load_gated(
                "workflow",
                tool_call_allowed,
                lambda: self.tools.load_workflow_tools(mentions),
            ),
            load_gated(
                "default",
                tool_call_allowed,
                lambda: self.tools.load_default_tools(mentions, request.allowed_app_default_toolkit),
            ),
            load_gated("image", image_active, lambda: self.tools.load_image_tool(image_model)),
        )

        executable_tools = merge_tool_maps(
            {"remote": remote, "workflow": workflow, "default": default, "image": image}
        )
        if manual:
            remote = exclude_tool_execution(remote)
            workflow = exclude_tool_execution(workflow)
        tools = merge_tool_maps(
            {"remote": remote, "workflow": workflow, "default": default, "image": image}
        )
        if tool_choice == "approval":
            tools = require_approval(tools)

        customizations = await self._customizations(session.user_id, remote)
        system_prompt = merge_system_prompt(
            build_user_system_prompt(session.name, turn.thread.user_preferences, agent),
            build_server_customizations_prompt(customizations),
            not handle.tool_calls and TOOL_CALL_UNSUPPORTED_PROMPT,
        )

        # The incoming message is last; only earlier turns hold a session id
        correlation_id = find_correlation_id(turn.messages[:-1], target)
        headers = {"user-id": session.user_id}
        if correlation_id:
            headers["x-correlation-id"] = correlation_id

        logger.info(
            f"Agent {agent_name}: model={handle.ref} tools={len(tools)} "
            f"mode={tool_choice} tool_calls={tool_call_allowed} resumed={correlation_id is not None}"
        )
        return AgentContext(
            agent_id=target.agent_id,
            agent_name=agent_name,
            handle=handle,
            system_prompt=system_prompt,
            tools=tools,
            executable_tools=executable_tools,
            headers=headers,
            tool_choice=tool_choice,
            correlation_id=correlation_id,
            tool_call_allowed=tool_call_allowed,
        )

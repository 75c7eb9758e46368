"""Tests for per-agent context building."""

import pytest

from chorus_models import (
    Agent,
    AgentInstructions,
    AgentRunMetadata,
    ChatMessage,
    ChatModelRef,
    MessageMetadata,
    ServerCustomization,
    ToolMention,
)
from chorus.errors import ConfigurationError
from chorus.models import ImageToolOptions
from chorus.services.agent_context import AgentContextBuilder, find_correlation_id
from chorus.services.intake import AgentTarget, RequestIntake
from chorus.services.tools import IMAGE_TOOL_NAME, Tool, ToolProviderRegistry
from conftest import ScriptedModel, make_message, make_request


async def noop(arguments, ctx):
    return None


class StubRegistry(ToolProviderRegistry):
    """Registry with a fixed remote server and an optional broken source."""

    def __init__(self, broken_remote: bool = False):
        super().__init__(
            toolkits={"basic": {"echo": Tool(name="echo", description="", parameters={}, execute=noop)}},
            image_tool=Tool(name=IMAGE_TOOL_NAME, description="", parameters={}, execute=noop, source="image"),
        )
        self.broken_remote = broken_remote

    async def load_remote_tools(self, mentions, allowed_servers=None):
        if self.broken_remote:
            raise ConnectionError("search server down")
        return {
            "search_lookup": Tool(
                name="search_lookup",
                description="",
                parameters={},
                execute=noop,
                source="remote",
                server_id="search",
            )
        }


@pytest.fixture
def registry():
    return StubRegistry()


@pytest.fixture
def builder(store, resolver, registry, scripted_models):
    scripted_models["primary"] = ScriptedModel("primary", [])
    scripted_models["bound"] = ScriptedModel("bound", [])
    return AgentContextBuilder(store, resolver, registry)


async def prepare(store, session, **kwargs):
    return await RequestIntake(store).prepare(make_request(**kwargs), session)


class TestModelSelection:
    """Test which model an agent runs on."""

    @pytest.mark.asyncio
    async def test_explicit_model_wins_over_bound_model(self, builder, store, session):
        store.add_agent(
            Agent(id="a1", user_id=session.user_id, name="Writer", chat_model=ChatModelRef(provider="fake", model="bound"))
        )
        turn = await prepare(store, session)

        context = await builder.build(turn, AgentTarget("a1", "Writer"))

        assert context.handle.ref.model == "primary"
        assert context.agent_name == "Writer"

    @pytest.mark.asyncio
    async def test_bound_model_used_without_explicit_one(self, builder, store, session):
        store.add_agent(
            Agent(id="a1", user_id=session.user_id, name="Writer", chat_model=ChatModelRef(provider="fake", model="bound"))
        )
        turn = await prepare(store, session, chat_model=None, mentions=[{"type": "agent", "agentId": "a1"}])

        context = await builder.build(turn, turn.targets[0])

        assert context.handle.ref.model == "bound"
        assert context.key == "a1"

    @pytest.mark.asyncio
    async def test_no_model_at_all(self, builder, store, session):
        turn = await prepare(store, session, chat_model=None, mentions=[{"type": "agent", "agentId": "ghost"}])

        with pytest.raises(ConfigurationError, match="No model specified"):
            await builder.build(turn, turn.targets[0])


class TestCapabilityMap:
    """Test the tools an agent is offered."""

    @pytest.mark.asyncio
    async def test_auto_mode_loads_all_sources(self, builder, store, session):
        context = await builder.build(await prepare(store, session), AgentTarget(None))

        assert set(context.tools) == {"search_lookup", "echo"}
        assert all(t.execute is not None for t in context.tools.values())

    @pytest.mark.asyncio
    async def test_failing_source_degrades(self, store, resolver, scripted_models, session):
        scripted_models["primary"] = ScriptedModel("primary", [])
        builder = AgentContextBuilder(store, resolver, StubRegistry(broken_remote=True))

        context = await builder.build(await prepare(store, session), AgentTarget(None))

        assert set(context.tools) == {"echo"}

    @pytest.mark.asyncio
    async def test_manual_mode_without_mentions_has_no_tools(self, builder, store, session):
        context = await builder.build(await prepare(store, session, tool_choice="manual"), AgentTarget(None))

        assert context.tools == {}
        assert context.tool_choice == "manual"

    @pytest.mark.asyncio
    async def test_manual_mode_leaves_remote_calls_to_client(self, builder, store, session):
        turn = await prepare(
            store,
            session,
            tool_choice="manual",
            mentions=[ToolMention(name="lookup", server_id="search")],
        )

        context = await builder.build(turn, AgentTarget(None))

        assert context.tools["search_lookup"].execute is None
        assert context.executable_tools["search_lookup"].execute is not None

    @pytest.mark.asyncio
    async def test_recorded_manual_mode_applies(self, builder, store, session):
        message = make_message()
        message.metadata = MessageMetadata(tool_choice="manual")

        context = await builder.build(await prepare(store, session, message=message), AgentTarget(None))

        assert context.tool_choice == "manual"

    @pytest.mark.asyncio
    async def test_approval_mode_wraps_every_tool(self, builder, store, session):
        context = await builder.build(await prepare(store, session, tool_choice="approval"), AgentTarget(None))

        assert context.tools
        assert all(t.requires_approval for t in context.tools.values())
        assert not any(t.requires_approval for t in context.executable_tools.values())

    @pytest.mark.asyncio
    async def test_image_tool_excludes_general_tools(self, builder, store, session):
        turn = await prepare(store, session, image_tool=ImageToolOptions(model="gpt-image-1"))

        context = await builder.build(turn, AgentTarget(None))

        assert set(context.tools) == {IMAGE_TOOL_NAME}
        assert context.tool_call_allowed is False

    @pytest.mark.asyncio
    async def test_model_without_tool_calls(self, builder, store, session, scripted_models):
        scripted_models["basic"] = ScriptedModel("basic", [])

        context = await builder.build(await prepare(store, session, chat_model="plain/basic"), AgentTarget(None))

        assert context.tools == {}
        assert "Tool Call Limitation" in context.system_prompt

    @pytest.mark.asyncio
    async def test_agent_mentions_narrow_default_tools(self, builder, store, session):
        store.add_agent(
            Agent(
                id="a1",
                user_id=session.user_id,
                name="Writer",
                instructions=AgentInstructions(mentions=[ToolMention(name="echo")]),
            )
        )

        context = await builder.build(await prepare(store, session), AgentTarget("a1", "Writer"))

        assert "echo" in context.tools


class TestPromptAndHeaders:
    """Test the system prompt and request headers."""

    @pytest.mark.asyncio
    async def test_prompt_includes_agent_and_customizations(self, builder, store, session):
        store.add_agent(
            Agent(
                id="a1",
                user_id=session.user_id,
                name="Writer",
                instructions=AgentInstructions(role="an editor", system_prompt="Keep it short."),
            )
        )
        store.add_customization(
            session.user_id, ServerCustomization(server_id="search", server_name="Search", prompt="Prefer recent results.")
        )
        store.add_customization(
            session.user_id, ServerCustomization(server_id="mail", server_name="Mail", prompt="Never send mail.")
        )

        context = await builder.build(await prepare(store, session), AgentTarget("a1", "Writer"))

        assert "You are Writer, acting as an editor." in context.system_prompt
        assert "Keep it short." in context.system_prompt
        assert "Prefer recent results." in context.system_prompt
        assert "Never send mail." not in context.system_prompt
        assert "- Name: Ada" in context.system_prompt

    @pytest.mark.asyncio
    async def test_headers_without_prior_session(self, builder, store, session):
        context = await builder.build(await prepare(store, session), AgentTarget(None))

        assert context.headers == {"user-id": "user-1"}
        assert context.correlation_id is None

    @pytest.mark.asyncio
    async def test_metadata_seed(self, builder, store, session):
        context = await builder.build(await prepare(store, session), AgentTarget(None))

        seed = context.metadata_seed()
        assert seed.chat_model == ChatModelRef(provider="fake", model="primary")
        assert seed.tool_count == 2
        assert seed.tool_choice == "auto"


class TestFindCorrelationId:
    """Test the lookup of a provider session id in the history."""

    def assistant(self, message_id, **metadata):
        return ChatMessage(id=message_id, role="assistant", metadata=MessageMetadata(**metadata))

    def test_latest_message_of_the_agent(self):
        messages = [
            self.assistant("r1", agent_id="a1", correlation_id="old"),
            self.assistant("r2", agent_id="a2", correlation_id="other"),
            self.assistant("r3", agent_id="a1", correlation_id="new"),
            make_message("follow up", "u4"),
        ]
        assert find_correlation_id(messages, AgentTarget("a1")) == "new"
        assert find_correlation_id(messages, AgentTarget("a2")) == "other"
        assert find_correlation_id(messages, AgentTarget("a3")) is None

    def test_multi_agent_entry(self):
        messages = [
            self.assistant(
                "r1",
                agents={
                    "a1": AgentRunMetadata(agent_id="a1", agent_name="One", correlation_id="s1"),
                    "a2": AgentRunMetadata(agent_id="a2", agent_name="Two"),
                },
            )
        ]
        assert find_correlation_id(messages, AgentTarget("a1")) == "s1"
        assert find_correlation_id(messages, AgentTarget("a2")) is None

    def test_default_agent(self):
        messages = [self.assistant("r1", correlation_id="s0")]
        assert find_correlation_id(messages, AgentTarget(None)) == "s0"

"""End-to-end tests of chat turns through the orchestrator."""

import asyncio

import pytest

from chorus_models import (
    Agent,
    AgentFinishPart,
    AgentMention,
    AgentTagPart,
    ChatMessage,
    ChatModelRef,
    ErrorPart,
    MessageRecord,
    TextPart,
    ToolInvocationPart,
)
from chorus.errors import ConfigurationError, GenerationError
from conftest import (
    HangingModel,
    ScriptedModel,
    collect,
    make_message,
    make_request,
    text_step,
    types_of,
    usage,
)


def fake_model(model_id: str) -> ChatModelRef:
    return ChatModelRef(provider="fake", model=model_id)


def texts(message) -> list[str]:
    return [p.text for p in message.parts if isinstance(p, TextPart)]


@pytest.fixture
def two_agents(store, session):
    store.add_agent(Agent(id="x", user_id=session.user_id, name="AgentX", chat_model=fake_model("model-x")))
    store.add_agent(
        Agent(id="y", user_id="someone-else", name="AgentY", visibility="public", chat_model=fake_model("model-y"))
    )
    return make_request(
        chat_model=None,
        mentions=[AgentMention(agent_id="x", name="AgentX"), AgentMention(agent_id="y", name="AgentY")],
    )


async def run_turn(orchestrator, request, session, cancel=None):
    plan = await orchestrator.prepare(request, session)
    return await collect(orchestrator.stream(plan, cancel or asyncio.Event()))


class TestSingleAgentTurn:
    """Test turns answered by one model."""

    @pytest.mark.asyncio
    async def test_events_pass_through_untagged(self, orchestrator, scripted_models, session):
        scripted_models["primary"] = ScriptedModel("primary", [text_step("Hi there", usage=usage(4, 2))])

        events = await run_turn(orchestrator, make_request(), session)

        assert types_of(events) == [
            "start",
            "step-start",
            "text-start",
            "text-delta",
            "text-end",
            "finish-step",
            "finish",
        ]

    @pytest.mark.asyncio
    async def test_persists_user_and_response(self, orchestrator, scripted_models, store, session):
        scripted_models["primary"] = ScriptedModel("primary", [text_step("Hi there", usage=usage(4, 2))])

        events = await run_turn(orchestrator, make_request(), session)

        rows = await store.get_messages("thread-1")
        assert [(r.role, texts(r)) for r in rows] == [("user", ["Hello"]), ("assistant", ["Hi there"])]
        assert rows[1].id == events[0]["messageId"]
        assert rows[1].metadata.usage.total_tokens == 6
        assert rows[1].metadata.chat_model == fake_model("primary")
        assert rows[1].metadata.tool_choice == "auto"

    @pytest.mark.asyncio
    async def test_continuation_updates_the_same_row(self, orchestrator, scripted_models, store, session):
        await store.create_thread("thread-1", session.user_id)
        await store.upsert_message(MessageRecord(thread_id="thread-1", **make_message("Hi").model_dump()))
        await store.upsert_message(
            MessageRecord(thread_id="thread-1", **make_message("Part one.", "r-prev", "assistant").model_dump())
        )
        scripted_models["primary"] = ScriptedModel("primary", [text_step(" Part two.")])

        events = await run_turn(
            orchestrator, make_request(message=make_message("Part one.", "r-prev", "assistant")), session
        )

        assert events[0]["messageId"] == "r-prev"
        rows = await store.get_messages("thread-1")
        assert [r.id for r in rows] == ["m-user", "r-prev"]
        assert texts(rows[1]) == ["Part one.", " Part two."]

    @pytest.mark.asyncio
    async def test_correlation_id_resumes_next_turn(self, orchestrator, scripted_models, session):
        model = ScriptedModel(
            "primary", [text_step("first", conversation_id="conv-9"), text_step("second")]
        )
        scripted_models["primary"] = model

        await run_turn(orchestrator, make_request(), session)
        await run_turn(orchestrator, make_request(message=make_message("More", "m-2")), session)

        assert model.requests[0].correlation_id is None
        assert model.requests[1].correlation_id == "conv-9"
        assert model.requests[1].headers == {"user-id": "user-1", "x-correlation-id": "conv-9"}
        assert [m.id for m in model.requests[1].messages[:3]] == ["m-user", model.requests[0].messages[-1].id, "m-2"]

    @pytest.mark.asyncio
    async def test_disconnect_still_persists(self, orchestrator, scripted_models, store, session):
        model = HangingModel("primary")
        scripted_models["primary"] = model
        cancel = asyncio.Event()

        plan = await orchestrator.prepare(make_request(), session)
        stream = orchestrator.stream(plan, cancel)
        assert (await anext(stream))["type"] == "start"
        await stream.aclose()
        await asyncio.wait_for(model.started.wait(), timeout=1)
        cancel.set()

        rows = []
        for _ in range(100):
            rows = await store.get_messages("thread-1")
            if len(rows) == 2:
                break
            await asyncio.sleep(0.01)
        assert len(rows) == 2
        assert texts(rows[1]) == ["thinking"]

    @pytest.mark.asyncio
    async def test_unknown_provider_fails_before_streaming(self, orchestrator, session):
        with pytest.raises(ConfigurationError):
            await orchestrator.prepare(make_request(chat_model="nowhere/model"), session)


class TestMultiAgentTurn:
    """Test turns answered by several mentioned agents."""

    @pytest.mark.asyncio
    async def test_tags_and_finishes(self, orchestrator, scripted_models, session, two_agents):
        scripted_models["model-x"] = ScriptedModel("model-x", [text_step("From X", "tx", usage(10, 5))])
        scripted_models["model-y"] = ScriptedModel("model-y", [text_step("From Y", "ty", usage(3, 2))])

        events = await run_turn(orchestrator, two_agents, session)

        for index, event in enumerate(events):
            if event["type"] in ("text-start", "text-delta", "step-start"):
                assert events[index - 1]["type"] == "data-agent-tag"
        finishes = {e["data"]["agentId"]: e["data"] for e in events if e["type"] == "data-agent-finish"}
        assert finishes["x"]["usage"] == usage(10, 5)
        assert finishes["y"]["usage"] == usage(3, 2)

    @pytest.mark.asyncio
    async def test_persists_one_merged_response(self, orchestrator, scripted_models, store, session, two_agents):
        scripted_models["model-x"] = ScriptedModel(
            "model-x", [text_step("From X", "tx", usage(10, 5), conversation_id="sx")]
        )
        scripted_models["model-y"] = ScriptedModel("model-y", [text_step("From Y", "ty", usage(3, 2))])

        await run_turn(orchestrator, two_agents, session)

        rows = await store.get_messages("thread-1")
        assert [r.role for r in rows] == ["user", "assistant"]
        response = rows[1]
        assert sorted(texts(response)) == ["From X", "From Y"]
        assert {p.agent_id for p in response.parts if isinstance(p, AgentFinishPart)} == {"x", "y"}
        tags = [p for p in response.parts if isinstance(p, AgentTagPart)]
        assert {(t.agent_id, t.block_id) for t in tags} >= {("x", "tx"), ("y", "ty")}

        metadata = response.metadata
        assert set(metadata.agents) == {"x", "y"}
        assert metadata.agents["x"].correlation_id == "sx"
        assert metadata.usage.total_tokens == 20
        assert metadata.correlation_id is None

    @pytest.mark.asyncio
    async def test_agents_run_on_their_own_history(self, orchestrator, scripted_models, session, two_agents):
        scripted_models["model-x"] = ScriptedModel("model-x", [text_step("From X", "tx")])
        scripted_models["model-y"] = ScriptedModel("model-y", [text_step("From Y", "ty")])

        await run_turn(orchestrator, two_agents, session)

        x_response = scripted_models["model-x"].requests[0].messages[-1]
        y_response = scripted_models["model-y"].requests[0].messages[-1]
        assert x_response is not y_response
        assert texts(x_response) == ["From X"]
        assert texts(y_response) == ["From Y"]

    @pytest.mark.asyncio
    async def test_failed_agent_does_not_stop_the_other(
        self, orchestrator, scripted_models, store, session, two_agents
    ):
        scripted_models["model-x"] = ScriptedModel("model-x", [GenerationError("x exploded")])
        scripted_models["model-y"] = ScriptedModel("model-y", [text_step("From Y", "ty", usage(3, 2))])

        events = await run_turn(orchestrator, two_agents, session)

        errors = [e for e in events if e["type"] == "error"]
        assert [e["errorText"] for e in errors] == ["x exploded"]
        finished = {e["data"]["agentId"] for e in events if e["type"] == "data-agent-finish"}
        assert "y" in finished

        response = (await store.get_messages("thread-1"))[1]
        assert texts(response) == ["From Y"]
        assert any(isinstance(p, ErrorPart) for p in response.parts)
        assert response.metadata.agents["x"].error == "x exploded"
        assert response.metadata.usage.total_tokens == 5

    @pytest.mark.asyncio
    async def test_agent_without_model_reports_in_stream(
        self, orchestrator, scripted_models, store, session
    ):
        store.add_agent(Agent(id="x", user_id=session.user_id, name="AgentX", chat_model=fake_model("model-x")))
        scripted_models["model-x"] = ScriptedModel("model-x", [text_step("From X", "tx")])
        request = make_request(
            chat_model=None,
            mentions=[AgentMention(agent_id="x", name="AgentX"), AgentMention(agent_id="ghost", name="Ghost")],
        )

        events = await run_turn(orchestrator, request, session)

        error_index = next(i for i, e in enumerate(events) if e["type"] == "error")
        assert events[error_index - 1]["data"]["agentId"] == "ghost"
        response = (await store.get_messages("thread-1"))[1]
        assert response.metadata.agents["ghost"].error == "No model specified"
        assert texts(response) == ["From X"]

    @pytest.mark.asyncio
    async def test_stop_aborts_every_agent_and_persists(
        self, orchestrator, scripted_models, store, session, two_agents
    ):
        model_x, model_y = HangingModel("model-x"), HangingModel("model-y")
        scripted_models["model-x"] = model_x
        scripted_models["model-y"] = model_y
        cancel = asyncio.Event()
        plan = await orchestrator.prepare(two_agents, session)
        events = []

        async def consume():
            async for event in orchestrator.stream(plan, cancel):
                events.append(event)

        consumer = asyncio.create_task(consume())
        await asyncio.wait_for(asyncio.gather(model_x.started.wait(), model_y.started.wait()), timeout=1)
        cancel.set()
        await asyncio.wait_for(consumer, timeout=1)

        assert types_of(events).count("abort") == 2
        finished = {e["data"]["agentId"] for e in events if e["type"] == "data-agent-finish"}
        assert finished == {"x", "y"}
        for agent_id in ("x", "y"):
            agent_events = [e["type"] for e in events if e.get("data", {}).get("agentId") == agent_id]
            assert agent_events[-1] == "data-agent-finish"

        rows = await store.get_messages("thread-1")
        assert [r.role for r in rows] == ["user", "assistant"]
        assert set(rows[1].metadata.agents) == {"x", "y"}

    @pytest.mark.asyncio
    async def test_open_tool_call_runs_with_any_agents_tools(
        self, orchestrator, scripted_models, store, session, echo
    ):
        # AgentX's model cannot call tools, so only AgentY is offered echo
        store.add_agent(
            Agent(
                id="x",
                user_id=session.user_id,
                name="AgentX",
                chat_model=ChatModelRef(provider="plain", model="model-x"),
            )
        )
        store.add_agent(Agent(id="y", user_id=session.user_id, name="AgentY", chat_model=fake_model("model-y")))
        scripted_models["model-x"] = ScriptedModel("model-x", [text_step("From X", "tx")])
        scripted_models["model-y"] = ScriptedModel("model-y", [text_step("From Y", "ty")])
        await store.create_thread("thread-1", session.user_id)
        await store.upsert_message(MessageRecord(thread_id="thread-1", **make_message("Echo this").model_dump()))
        open_call = ChatMessage(
            id="r-prev",
            role="assistant",
            parts=[ToolInvocationPart(tool_call_id="c1", tool_name="echo", input={"text": "again"})],
        )
        request = make_request(
            message=open_call,
            chat_model=None,
            mentions=[AgentMention(agent_id="x", name="AgentX"), AgentMention(agent_id="y", name="AgentY")],
        )

        events = await run_turn(orchestrator, request, session)

        outputs = [e for e in events if e["type"].startswith("tool-output")]
        assert [e["type"] for e in outputs] == ["tool-output-available", "tool-output-available"]
        assert all(e["output"] == {"echo": "again"} for e in outputs)
        assert echo.calls == [{"text": "again"}]

        response = (await store.get_messages("thread-1"))[-1]
        assert response.id == "r-prev"
        call = next(p for p in response.parts if isinstance(p, ToolInvocationPart))
        assert call.state == "output-available"
        assert call.output == {"echo": "again"}

    @pytest.mark.asyncio
    async def test_no_agent_can_run(self, orchestrator, session):
        request = make_request(chat_model=None, mentions=[AgentMention(agent_id="ghost", name="Ghost")])

        with pytest.raises(ConfigurationError):
            await orchestrator.prepare(request, session)

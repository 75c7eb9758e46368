"""Agent, mention and tool customization models."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import Field

from chorus_models.conversation import ChatModelRef, WireModel


class AgentMention(WireModel):
    """Selects an agent to answer the turn."""

    type: Literal["agent"] = "agent"
    agent_id: str
    name: str = "Assistant"


class ToolMention(WireModel):
    """Selects a single tool.

    With a server_id the tool lives on a remote tool server, without one it is
    a built-in default tool.
    """

    type: Literal["tool"] = "tool"
    name: str
    server_id: str | None = None


class WorkflowMention(WireModel):
    type: Literal["workflow"] = "workflow"
    workflow_id: str
    name: str
    description: str | None = None


Mention = Annotated[
    Union[AgentMention, ToolMention, WorkflowMention],
    Field(discriminator="type"),
]


class AgentInstructions(WireModel):
    role: str | None = None
    system_prompt: str | None = None
    mentions: list[Mention] = Field(default_factory=list)


class Agent(WireModel):
    """A named persona bound to a model and a tool subset."""

    id: str = Field(..., description="Unique agent ID")
    user_id: str = Field(..., description="Owner user ID")
    name: str = Field(..., description="Display name")
    description: str | None = None
    icon: str | None = None
    visibility: Literal["private", "public", "readonly"] = "private"
    chat_model: ChatModelRef | None = Field(None, description="Bound model")
    instructions: AgentInstructions = Field(default_factory=AgentInstructions)
    created_at: datetime = Field(default_factory=datetime.now)


class ServerCustomization(WireModel):
    """User supplied notes for a remote tool server and its tools."""

    server_id: str
    server_name: str
    prompt: str | None = None
    tools: dict[str, str] = Field(default_factory=dict)

"""Thread, message and message part models."""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Usage(WireModel):
    """Token usage reported by a model provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ChatModelRef(WireModel):
    """Reference to a model in the provider catalog."""

    provider: str = Field(..., description="Provider name")
    model: str = Field(..., description="Model identifier within the provider")

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


# ============= Parts =============


class TextPart(WireModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(WireModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolApproval(WireModel):
    """User decision on a tool call that required confirmation."""

    id: str | None = None
    approved: bool | None = None
    reason: str | None = None


ToolState = Literal[
    "input-streaming",
    "input-available",
    "approval-requested",
    "output-available",
    "output-error",
]


class ToolInvocationPart(WireModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_call_id: str
    tool_name: str
    state: ToolState = "input-available"
    input: Any = None
    output: Any = None
    error_text: str | None = None
    provider_executed: bool | None = None
    approval: ToolApproval | None = None

    @property
    def in_progress(self) -> bool:
        """True when the call was issued but never produced a result."""
        return (
            self.state in ("input-available", "approval-requested")
            and self.output is None
            and self.error_text is None
        )


class FilePart(WireModel):
    type: Literal["file"] = "file"
    url: str
    media_type: str
    filename: str | None = None


class SourceUrlPart(WireModel):
    type: Literal["source-url"] = "source-url"
    url: str
    media_type: str | None = None
    title: str | None = None


class StepStartPart(WireModel):
    type: Literal["step-start"] = "step-start"


class AgentTagPart(WireModel):
    """Attributes the following block or tool call to an agent."""

    type: Literal["agent-tag"] = "agent-tag"
    agent_id: str
    agent_name: str
    block_id: str | None = None
    tool_call_id: str | None = None
    kind: str


class AgentFinishPart(WireModel):
    type: Literal["agent-finish"] = "agent-finish"
    agent_id: str
    agent_name: str
    usage: Usage | None = None


class ErrorPart(WireModel):
    type: Literal["error"] = "error"
    error_text: str


Part = Annotated[
    Union[
        TextPart,
        ReasoningPart,
        ToolInvocationPart,
        FilePart,
        SourceUrlPart,
        StepStartPart,
        AgentTagPart,
        AgentFinishPart,
        ErrorPart,
    ],
    Field(discriminator="type"),
]


# ============= Messages =============


class AgentRunMetadata(WireModel):
    """What one agent's generation reported when it completed."""

    agent_id: str
    agent_name: str
    chat_model: ChatModelRef | None = None
    tool_count: int = 0
    usage: Usage | None = None
    correlation_id: str | None = None
    error: str | None = None


class MessageMetadata(WireModel):
    """Per-message bag persisted next to the parts."""

    agent_id: str | None = None
    agent_name: str | None = None
    tool_choice: Literal["auto", "manual", "approval"] | None = None
    tool_count: int = 0
    chat_model: ChatModelRef | None = None
    usage: Usage | None = None
    correlation_id: str | None = Field(
        None, description="Provider session id needed to continue a stateful backend"
    )
    agents: dict[str, AgentRunMetadata] | None = Field(
        None, description="Per-agent results of a multi-agent turn"
    )


class ChatMessage(WireModel):
    """A message as exchanged with the client."""

    id: str = Field(..., description="Unique message ID")
    role: Literal["user", "assistant", "system"] = Field(..., description="Message role")
    parts: list[Part] = Field(default_factory=list)
    metadata: MessageMetadata | None = None


class MessageRecord(ChatMessage):
    """A stored message row."""

    thread_id: str = Field(..., description="Parent thread ID")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation timestamp")


# ============= Threads =============


class UserPreferences(WireModel):
    display_name: str | None = None
    profession: str | None = None
    response_style_example: str | None = None
    bot_name: str | None = None


class Thread(WireModel):
    """A conversation thread owned by exactly one user."""

    id: str = Field(..., description="Unique thread ID")
    user_id: str = Field(..., description="Owner user ID")
    title: str = Field("", description="Thread title")
    user_preferences: UserPreferences | None = None
    created_at: datetime = Field(default_factory=datetime.now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last update timestamp")

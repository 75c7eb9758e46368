"""API-specific request and response models."""

from typing import Any, Literal

from pydantic import Field

from chorus_models import AgentMention, ChatMessage, ChatModelRef, Mention, Thread, WireModel


class Attachment(WireModel):
    """A file the client uploaded alongside the message."""

    type: Literal["file", "source-url"] = "file"
    url: str
    media_type: str = "application/octet-stream"
    filename: str | None = None


class ImageToolOptions(WireModel):
    model: str | None = None


class ChatRequest(WireModel):
    """Request model for one chat turn."""

    id: str = Field(..., description="Thread ID")
    message: ChatMessage = Field(..., description="The new message")
    chat_model: ChatModelRef | None = Field(None, description="Explicitly selected model")
    tool_choice: Literal["auto", "manual", "approval"] = "auto"
    allowed_app_default_toolkit: list[str] | None = None
    allowed_mcp_servers: dict[str, Any] | None = None
    image_tool: ImageToolOptions | None = None
    mentions: list[Mention] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)

    @property
    def agent_mentions(self) -> list[AgentMention]:
        return [m for m in self.mentions if isinstance(m, AgentMention)]


class ThreadResponse(WireModel):
    """Response model for a thread with its messages."""

    thread: Thread
    messages: list[ChatMessage] = Field(default_factory=list)


class StopResponse(WireModel):
    thread_id: str
    stopped: bool

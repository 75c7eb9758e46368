"""Shared Pydantic models for chorus."""

from chorus_models.conversation import (
    WireModel,
    Usage,
    ChatModelRef,
    TextPart,
    ReasoningPart,
    ToolApproval,
    ToolInvocationPart,
    FilePart,
    SourceUrlPart,
    StepStartPart,
    AgentTagPart,
    AgentFinishPart,
    ErrorPart,
    Part,
    AgentRunMetadata,
    MessageMetadata,
    ChatMessage,
    MessageRecord,
    UserPreferences,
    Thread,
)
from chorus_models.agent import (
    Agent,
    AgentInstructions,
    AgentMention,
    ToolMention,
    WorkflowMention,
    Mention,
    ServerCustomization,
)
from chorus_models.stream import EventType, StreamEvent, TAGGABLE_TYPES, is_taggable

__all__ = [
    # Conversation
    "WireModel",
    "Usage",
    "ChatModelRef",
    "TextPart",
    "ReasoningPart",
    "ToolApproval",
    "ToolInvocationPart",
    "FilePart",
    "SourceUrlPart",
    "StepStartPart",
    "AgentTagPart",
    "AgentFinishPart",
    "ErrorPart",
    "Part",
    "AgentRunMetadata",
    "MessageMetadata",
    "ChatMessage",
    "MessageRecord",
    "UserPreferences",
    "Thread",
    # Agents
    "Agent",
    "AgentInstructions",
    "AgentMention",
    "ToolMention",
    "WorkflowMention",
    "Mention",
    "ServerCustomization",
    # Stream
    "EventType",
    "StreamEvent",
    "TAGGABLE_TYPES",
    "is_taggable",
]

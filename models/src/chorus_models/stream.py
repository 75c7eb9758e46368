"""Event taxonomy of the chat response stream.

Events travel as plain JSON objects (``dict``) with a ``type`` key so that a
single-agent stream can be forwarded without re-encoding. Block events carry a
stable ``id``; tool events carry a ``toolCallId``.
"""

from enum import Enum
from typing import Any

StreamEvent = dict[str, Any]


class EventType(str, Enum):
    """Stream event types."""

    START = "start"
    STEP_START = "step-start"
    FINISH_STEP = "finish-step"
    FINISH = "finish"
    ERROR = "error"
    ABORT = "abort"

    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"

    REASONING_START = "reasoning-start"
    REASONING_DELTA = "reasoning-delta"
    REASONING_END = "reasoning-end"

    TOOL_INPUT_START = "tool-input-start"
    TOOL_INPUT_DELTA = "tool-input-delta"
    TOOL_INPUT_AVAILABLE = "tool-input-available"
    TOOL_APPROVAL_REQUEST = "tool-approval-request"
    TOOL_OUTPUT_AVAILABLE = "tool-output-available"
    TOOL_OUTPUT_ERROR = "tool-output-error"

    # Multi-agent only
    AGENT_TAG = "data-agent-tag"
    AGENT_FINISH = "data-agent-finish"


# Block boundaries that get an agent tag in a merged stream. Every "tool-*"
# event is tagged as well.
TAGGABLE_TYPES = frozenset(
    {
        EventType.TEXT_START.value,
        EventType.TEXT_DELTA.value,
        EventType.STEP_START.value,
        EventType.REASONING_START.value,
        EventType.TOOL_INPUT_START.value,
        EventType.TOOL_OUTPUT_AVAILABLE.value,
        EventType.ERROR.value,
    }
)


def is_taggable(event_type: str) -> bool:
    return event_type in TAGGABLE_TYPES or event_type.startswith("tool-")

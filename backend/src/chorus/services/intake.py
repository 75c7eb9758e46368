"""Request intake: validation, thread resolution and message preparation."""

import logging
from dataclasses import dataclass, field

from chorus_models import (
    ChatMessage,
    FilePart,
    Part,
    SourceUrlPart,
    TextPart,
    Thread,
)
from chorus.auth import Session
from chorus.db import ChatStore
from chorus.errors import AuthenticationError, AuthorizationError, ValidationError
from chorus.models import Attachment, ChatRequest
from chorus.services.ingestion import Downloader, build_preview_parts, download_attachment

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "default"
DEFAULT_AGENT_NAME = "Assistant"


@dataclass(frozen=True)
class AgentTarget:
    """One participant of the turn. agent_id None means the request's own model."""

    agent_id: str | None
    agent_name: str = DEFAULT_AGENT_NAME

    @property
    def key(self) -> str:
        return self.agent_id or DEFAULT_AGENT_ID


@dataclass
class PreparedTurn:
    """A validated turn, ready for context building."""

    request: ChatRequest
    session: Session
    thread: Thread
    message: ChatMessage
    # Prior thread messages followed by the incoming message
    messages: list[ChatMessage] = field(default_factory=list)
    targets: list[AgentTarget] = field(default_factory=list)

    @property
    def is_continuation(self) -> bool:
        """The incoming message is an assistant message being continued."""
        return self.message.role == "assistant"


def resolve_targets(request: ChatRequest) -> list[AgentTarget]:
    """Agents taking part in the turn, in mention order."""
    targets: list[AgentTarget] = []
    seen: set[str] = set()
    for mention in request.agent_mentions:
        if mention.agent_id in seen:
            continue
        seen.add(mention.agent_id)
        targets.append(AgentTarget(agent_id=mention.agent_id, agent_name=mention.name))

    if targets:
        return targets
    if request.chat_model is None:
        raise ValidationError("No valid models specified")
    return [AgentTarget(agent_id=None)]


def insert_preview_parts(parts: list[Part], preview: list[TextPart]) -> list[Part]:
    """Place previews right before the last text part, or at the end."""
    if not preview:
        return parts
    for index in range(len(parts) - 1, -1, -1):
        if isinstance(parts[index], TextPart):
            return [*parts[:index], *preview, *parts[index:]]
    return [*parts, *preview]


def insert_attachment_parts(parts: list[Part], attachments: list[Attachment]) -> list[Part]:
    """Place attachment parts right before the first text part, or at the end.

    Attachments already present on the message (same type and url) are skipped.
    """
    present = {(p.type, p.url) for p in parts if isinstance(p, (FilePart, SourceUrlPart))}
    new_parts: list[Part] = []
    for attachment in attachments:
        if (attachment.type, attachment.url) in present:
            continue
        if attachment.type == "file":
            new_parts.append(
                FilePart(
                    url=attachment.url,
                    media_type=attachment.media_type,
                    filename=attachment.filename,
                )
            )
        else:
            new_parts.append(
                SourceUrlPart(
                    url=attachment.url,
                    media_type=attachment.media_type,
                    title=attachment.filename,
                )
            )
    if not new_parts:
        return parts

    first_text = next((i for i, p in enumerate(parts) if isinstance(p, TextPart)), None)
    if first_text is None:
        return [*parts, *new_parts]
    return [*parts[:first_text], *new_parts, *parts[first_text:]]


class RequestIntake:
    """Turns a raw chat request into a PreparedTurn. Persists nothing."""

    def __init__(self, store: ChatStore, download: Downloader = download_attachment):
        self.store = store
        self.download = download

    async def resolve_thread(self, thread_id: str, user_id: str) -> Thread:
        """Load the thread, creating it for user_id on first use."""
        thread = await self.store.get_thread(thread_id)
        if thread is None:
            logger.info(f"Create chat thread: {thread_id}")
            created = await self.store.create_thread(thread_id, user_id)
            thread = await self.store.get_thread(created.id) or created

        if thread.user_id != user_id:
            raise AuthorizationError("Forbidden")
        return thread

    async def prepare(self, request: ChatRequest, session: Session | None) -> PreparedTurn:
        if session is None:
            raise AuthenticationError("Unauthorized")

        targets = resolve_targets(request)
        thread = await self.resolve_thread(request.id, session.user_id)

        messages: list[ChatMessage] = list(await self.store.get_messages(thread.id))
        if messages and messages[-1].id == request.message.id:
            messages.pop()

        message = request.message
        preview = await build_preview_parts(request.attachments, self.download)
        message.parts = insert_preview_parts(message.parts, preview)
        message.parts = insert_attachment_parts(message.parts, request.attachments)
        messages.append(message)

        return PreparedTurn(
            request=request,
            session=session,
            thread=thread,
            message=message,
            messages=messages,
            targets=targets,
        )

"""Tool provider registry and capability map gating.

A capability map (``ToolMap``) is built per agent by folding the tool sources in
``TOOL_SOURCE_PRECEDENCE`` order: a later source replaces an earlier one on a
name collision. Each source loads independently; a source that is not allowed for
the turn, or whose loader fails, contributes an empty map.
"""

import asyncio
import itertools
import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo

import httpx

from chorus_models import ChatMessage, Mention, ToolMention, WorkflowMention
from chorus.config import settings
from chorus.errors import ToolLoadError

logger = logging.getLogger(__name__)

# Fold order of tool sources; later sources win on name collisions
TOOL_SOURCE_PRECEDENCE = ("remote", "workflow", "default", "image")

IMAGE_TOOL_NAME = "image_generate"


@dataclass
class ToolCallContext:
    """What a tool sees of the turn that called it."""

    tool_call_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    cancel: asyncio.Event | None = None


ToolExecutor = Callable[[dict[str, Any], ToolCallContext], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    """A callable tool exposed to the model."""

    name: str
    description: str
    parameters: dict[str, Any]
    execute: ToolExecutor | None = None
    requires_approval: bool = False
    source: str = "default"
    server_id: str | None = None

    def spec(self) -> dict[str, Any]:
        """Function-calling description sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


ToolMap = dict[str, Tool]


# ============= Gating =============


def is_tool_call_allowed(
    supports_tool_calls: bool,
    tool_choice: str,
    mention_count: int,
    image_tool_active: bool,
) -> bool:
    """Whether the agent gets any callable tools this turn.

    Manual mode disables tools unless the turn explicitly mentions some, and an
    active image tool excludes general tool calling.
    """
    return (
        supports_tool_calls
        and (tool_choice != "manual" or mention_count > 0)
        and not image_tool_active
    )


async def load_gated(
    source: str,
    allowed: bool,
    loader: Callable[[], Awaitable[ToolMap]],
) -> ToolMap:
    """Run one source loader, degrading to an empty map."""
    if not allowed:
        return {}
    try:
        return await loader()
    except Exception as e:
        error = ToolLoadError(f"{source} tools failed to load: {e}")
        logger.warning(error.message)
        return {}


def merge_tool_maps(sources: Mapping[str, ToolMap]) -> ToolMap:
    """Fold tool maps left to right in precedence order."""
    merged: ToolMap = {}
    for source in TOOL_SOURCE_PRECEDENCE:
        merged.update(sources.get(source, {}))
    return merged


def exclude_tool_execution(tools: ToolMap) -> ToolMap:
    """Strip executors so calls wait for the client (manual mode)."""
    return {name: replace(tool, execute=None) for name, tool in tools.items()}


def require_approval(tools: ToolMap) -> ToolMap:
    """Mark every tool as needing an explicit confirmation before it runs."""
    return {name: replace(tool, requires_approval=True) for name, tool in tools.items()}


def tool_mentions(mentions: list[Mention]) -> list[ToolMention]:
    return [m for m in mentions if isinstance(m, ToolMention)]


def _tool_key(*parts: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", "_".join(parts))[:64]


# ============= Remote tool servers =============


# Streamable HTTP protocol revision offered during the handshake
MCP_PROTOCOL_VERSION = "2025-03-26"

MCP_CLIENT_INFO = {"name": "chorus", "version": "0.1.0"}


class SessionExpiredError(RuntimeError):
    """The server no longer knows the session; the client has to initialize again."""


def _read_rpc_response(response: httpx.Response, request_id: int) -> dict[str, Any]:
    """The JSON-RPC response to ``request_id`` from a JSON or event-stream body."""
    if "text/event-stream" in response.headers.get("content-type", ""):
        messages = []
        for line in response.text.splitlines():
            if not line.startswith("data:"):
                continue
            try:
                messages.append(json.loads(line[5:].strip()))
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed event data: {line[:200]}")
    else:
        body = response.json()
        messages = body if isinstance(body, list) else [body]

    for message in messages:
        if isinstance(message, dict) and message.get("id") == request_id:
            return message
    raise RuntimeError(f"No response to request {request_id}")


class RemoteToolServer:
    """MCP client for a remote tool server over streamable HTTP.

    The first request runs the ``initialize`` handshake and keeps the
    ``Mcp-Session-Id`` the server assigns for every later request. When the
    server drops the session (404), the client initializes again and retries
    the request once.
    """

    def __init__(
        self,
        server_id: str,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.server_id = server_id
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        response = await client.post(self.base_url, json=payload, headers=self._headers())
        if response.status_code == 404 and self._session_id:
            raise SessionExpiredError(f"{self.server_id}: session {self._session_id} expired")
        if response.status_code >= 400:
            raise RuntimeError(
                f"HTTP {response.status_code} from {self.server_id} "
                f"for {payload['method']}: {response.text[:500]}"
            )
        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        return response

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        request_id = next(self._ids)
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        response = await self._post(client, payload)
        body = _read_rpc_response(response, request_id)
        if "error" in body:
            raise RuntimeError(f"{self.server_id} {method}: {body['error'].get('message')}")
        return body.get("result")

    async def _initialize(self, client: httpx.AsyncClient) -> None:
        result = await self._request(
            client,
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": MCP_CLIENT_INFO,
            },
        )
        await self._post(client, {"jsonrpc": "2.0", "method": "notifications/initialized"})
        self._initialized = True
        server_info = (result or {}).get("serverInfo") or {}
        logger.info(
            f"Remote tool server {self.server_id} initialized: "
            f"server={server_info.get('name', 'unknown')} session={self._session_id}"
        )

    async def _ensure_session(self, client: httpx.AsyncClient) -> None:
        async with self._init_lock:
            if not self._initialized:
                await self._initialize(client)

    def _reset(self) -> None:
        self._session_id = None
        self._initialized = False

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            await self._ensure_session(client)
            try:
                return await self._request(client, method, params)
            except SessionExpiredError:
                logger.info(f"Remote tool server {self.server_id} session expired, reconnecting")
                self._reset()
                await self._ensure_session(client)
                return await self._request(client, method, params)

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self._rpc("tools/list")
        return result.get("tools", []) if result else []

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        result = await self._rpc("tools/call", {"name": name, "arguments": arguments})
        if result and result.get("isError"):
            texts = [c.get("text", "") for c in result.get("content", []) if c.get("type") == "text"]
            raise RuntimeError("\n".join(texts) or f"{name} failed")
        return result

    def bind(self, definition: dict[str, Any]) -> Tool:
        tool_name = definition["name"]

        async def execute(arguments: dict[str, Any], ctx: ToolCallContext) -> Any:
            return await self.call_tool(tool_name, arguments)

        return Tool(
            name=_tool_key(self.server_id, tool_name),
            description=definition.get("description", ""),
            parameters=definition.get("inputSchema") or {"type": "object", "properties": {}},
            execute=execute,
            source="remote",
            server_id=self.server_id,
        )


# ============= Workflows =============


class WorkflowClient:
    """Runs user-defined workflows on the workflow service."""

    def __init__(self, base_url: str, timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def run(self, workflow_id: str, arguments: dict[str, Any]) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/workflows/{workflow_id}/run",
                json={"input": arguments},
            )
            response.raise_for_status()
            return response.json()

    def bind(self, mention: WorkflowMention) -> Tool:
        async def execute(arguments: dict[str, Any], ctx: ToolCallContext) -> Any:
            return await self.run(mention.workflow_id, arguments)

        return Tool(
            name=_tool_key("workflow", mention.name),
            description=mention.description or f"Run the '{mention.name}' workflow",
            parameters={"type": "object", "properties": {}, "additionalProperties": True},
            execute=execute,
            source="workflow",
        )


# ============= Built-in toolkits =============


async def _http_fetch(arguments: dict[str, Any], ctx: ToolCallContext) -> Any:
    async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
        response = await client.get(arguments["url"])
    return {
        "status": response.status_code,
        "contentType": response.headers.get("content-type"),
        "body": response.text[:10_000],
    }


async def _current_time(arguments: dict[str, Any], ctx: ToolCallContext) -> Any:
    tz = arguments.get("timezone")
    now = datetime.now(ZoneInfo(tz)) if tz else datetime.now(timezone.utc)
    return {"now": now.isoformat()}


DEFAULT_TOOLKITS: dict[str, ToolMap] = {
    "http": {
        "http_fetch": Tool(
            name="http_fetch",
            description="Fetch a URL over HTTP GET and return the status and body text.",
            parameters={
                "type": "object",
                "properties": {"url": {"type": "string", "description": "Absolute URL"}},
                "required": ["url"],
            },
            execute=_http_fetch,
        ),
    },
    "time": {
        "current_time": Tool(
            name="current_time",
            description="Current date and time, optionally in an IANA timezone.",
            parameters={
                "type": "object",
                "properties": {"timezone": {"type": "string"}},
            },
            execute=_current_time,
        ),
    },
}


# ============= Registry =============


class ToolProviderRegistry:
    """Loads the tool sources an agent may use in one turn."""

    def __init__(
        self,
        remote_servers: Mapping[str, RemoteToolServer] | None = None,
        workflows: WorkflowClient | None = None,
        toolkits: Mapping[str, ToolMap] | None = None,
        image_tool: Tool | None = None,
    ):
        self.remote_servers = dict(remote_servers or {})
        self.workflows = workflows
        self.toolkits = dict(DEFAULT_TOOLKITS if toolkits is None else toolkits)
        self.image_tool = image_tool

    @classmethod
    def from_settings(cls) -> "ToolProviderRegistry":
        return cls(
            remote_servers={
                server_id: RemoteToolServer(server_id, url)
                for server_id, url in settings.remote_tool_servers.items()
            },
            workflows=WorkflowClient(settings.workflow_service_url)
            if settings.workflow_service_url
            else None,
            image_tool=build_image_tool(),
        )

    async def load_remote_tools(
        self,
        mentions: list[Mention],
        allowed_servers: Mapping[str, Any] | None = None,
    ) -> ToolMap:
        """Tools of remote servers, narrowed by mentions or the allow-list."""
        mentioned = [m for m in tool_mentions(mentions) if m.server_id]
        if mentioned:
            wanted: dict[str, set[str] | None] = {}
            for m in mentioned:
                wanted.setdefault(m.server_id, set()).add(m.name)
        elif allowed_servers is not None:
            wanted = {
                server_id: set(opts.get("tools", [])) or None
                if isinstance(opts, Mapping)
                else None
                for server_id, opts in allowed_servers.items()
            }
        else:
            wanted = {server_id: None for server_id in self.remote_servers}

        servers = [
            (self.remote_servers[server_id], names)
            for server_id, names in wanted.items()
            if server_id in self.remote_servers
        ]
        listings = await asyncio.gather(
            *(server.list_tools() for server, _ in servers), return_exceptions=True
        )

        tools: ToolMap = {}
        for (server, names), listing in zip(servers, listings):
            if isinstance(listing, BaseException):
                logger.warning(f"Remote tool server {server.server_id} unavailable: {listing}")
                continue
            for definition in listing:
                if names is None or definition["name"] in names:
                    tool = server.bind(definition)
                    tools[tool.name] = tool
        return tools

    async def load_workflow_tools(self, mentions: list[Mention]) -> ToolMap:
        """One tool per mentioned workflow."""
        workflow_mentions = [m for m in mentions if isinstance(m, WorkflowMention)]
        if not workflow_mentions:
            return {}
        if not self.workflows:
            raise ToolLoadError("workflow mentioned but no workflow service configured")
        tools = [self.workflows.bind(m) for m in workflow_mentions]
        return {tool.name: tool for tool in tools}

    async def load_default_tools(
        self,
        mentions: list[Mention],
        allowed_toolkit: list[str] | None = None,
    ) -> ToolMap:
        """Built-in tools, narrowed to mentioned ones when any are mentioned."""
        all_tools: ToolMap = {}
        for toolkit in self.toolkits.values():
            all_tools.update(toolkit)

        mentioned = {m.name for m in tool_mentions(mentions) if not m.server_id}
        if mentioned:
            return {name: tool for name, tool in all_tools.items() if name in mentioned}

        toolkits = self.toolkits if allowed_toolkit is None else {
            name: self.toolkits[name] for name in allowed_toolkit if name in self.toolkits
        }
        tools: ToolMap = {}
        for toolkit in toolkits.values():
            tools.update(toolkit)
        return tools

    async def load_image_tool(self, model: str | None) -> ToolMap:
        if not model or not self.image_tool:
            return {}
        return {self.image_tool.name: self.image_tool}


def build_image_tool() -> Tool | None:
    """Image generation through the provider's OpenAI-compatible images endpoint."""
    provider = settings.model_providers.get(settings.image_model_provider, {})
    base_url = provider.get("base_url", settings.openai_base_url)
    api_key = provider.get("api_key", settings.openai_api_key)
    if not api_key:
        return None

    async def execute(arguments: dict[str, Any], ctx: ToolCallContext) -> Any:
        async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
            response = await client.post(
                f"{base_url.rstrip('/')}/images/generations",
                headers={"Authorization": f"Bearer {api_key}"},
                json={"model": settings.image_model, "prompt": arguments["prompt"]},
            )
            response.raise_for_status()
            data = response.json().get("data", [])
        return {
            "images": [
                {"url": item.get("url") or f"data:image/png;base64,{item.get('b64_json')}"}
                for item in data
            ],
            "model": settings.image_model,
        }

    return Tool(
        name=IMAGE_TOOL_NAME,
        description="Generate an image from a text description.",
        parameters={
            "type": "object",
            "properties": {"prompt": {"type": "string"}},
            "required": ["prompt"],
        },
        execute=execute,
        source="image",
    )

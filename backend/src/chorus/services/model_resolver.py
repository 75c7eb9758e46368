"""Model catalog: resolves a model reference to a streaming handle."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from chorus_models import ChatMessage, ChatModelRef, StreamEvent
from chorus.config import settings
from chorus.errors import ConfigurationError
from chorus.services.tools import ToolMap

logger = logging.getLogger(__name__)


@dataclass
class ModelRequest:
    """Input of one model step."""

    system: str
    messages: list[ChatMessage]
    tools: ToolMap = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    correlation_id: str | None = None
    cancel: asyncio.Event | None = None


class LanguageModel(Protocol):
    """A streaming model backend.

    ``stream`` runs a single step and yields block events (text, reasoning, tool
    input and provider-executed tool output), then exactly one ``finish-step``
    event carrying ``finishReason``, ``usage`` and optional ``providerMetadata``.
    """

    provider: str
    model_id: str

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]: ...


@dataclass(frozen=True)
class ModelHandle:
    ref: ChatModelRef
    model: LanguageModel
    tool_calls: bool = True


ModelFactory = Callable[[str, dict[str, Any]], LanguageModel]


def _default_catalog() -> dict[str, dict[str, Any]]:
    return {
        "openai": {
            "kind": "openai",
            "base_url": settings.openai_base_url,
            "api_key": settings.openai_api_key,
        },
        "claude": {"kind": "claude-agent", "tool_calls": False},
    }


def _default_factories() -> dict[str, ModelFactory]:
    from chorus.services.claude_agent import ClaudeAgentModel
    from chorus.services.openai_compat import OpenAICompatibleModel

    return {
        "openai": lambda model_id, cfg: OpenAICompatibleModel(
            model_id,
            base_url=cfg.get("base_url", settings.openai_base_url),
            api_key=cfg.get("api_key", ""),
            provider=cfg.get("name", "openai"),
        ),
        "claude-agent": lambda model_id, cfg: ClaudeAgentModel(model_id),
    }


class ModelResolver:
    """Looks up providers and models in the configured catalog."""

    def __init__(
        self,
        catalog: dict[str, dict[str, Any]] | None = None,
        factories: dict[str, ModelFactory] | None = None,
    ):
        self.catalog = catalog if catalog is not None else (
            settings.model_providers or _default_catalog()
        )
        self.factories = factories if factories is not None else _default_factories()

    def resolve(self, ref: ChatModelRef) -> ModelHandle:
        """Build a handle for provider/model.

        Raises ConfigurationError when the provider or model is unknown.
        """
        provider = self.catalog.get(ref.provider)
        if provider is None:
            raise ConfigurationError(f"Unknown model provider: {ref.provider}")

        models: dict[str, Any] | None = provider.get("models")
        if models is not None and ref.model not in models:
            raise ConfigurationError(f"Model {ref} not found or not enabled")
        model_cfg = (models or {}).get(ref.model) or {}

        kind = provider.get("kind", ref.provider)
        factory = self.factories.get(kind)
        if factory is None:
            raise ConfigurationError(f"No backend for provider kind '{kind}'")

        tool_calls = model_cfg.get("tool_calls", provider.get("tool_calls", True))
        model = factory(ref.model, {"name": ref.provider, **provider})
        logger.debug(f"Resolved model {ref} (kind={kind}, tool_calls={tool_calls})")
        return ModelHandle(ref=ref, model=model, tool_calls=bool(tool_calls))

    def supports_tool_calls(self, handle: ModelHandle) -> bool:
        return handle.tool_calls

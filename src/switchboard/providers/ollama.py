"""Ollama provider over its OpenAI-compatible ``/v1`` API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from switchboard.config import DEFAULT_OLLAMA_HOST
from switchboard.providers.openai_compat import (
    ChatCompletionsProvider,
    ChatDialect,
    ChatEmbedRequest,
    ChatRequest,
)
from switchboard.usage import Usage

if TYPE_CHECKING:
    from switchboard.config import Config


@dataclass(frozen=True)
class OllamaDialect(ChatDialect):
    """Local server; repeats ``role`` in every delta; may report native counters."""

    default_api_key: str | None = "ollama"
    pull_role_from_delta: bool = True

    def base_url(self, config: Config) -> str | None:
        if config.base_url:
            return config.base_url
        host = (config.host or DEFAULT_OLLAMA_HOST).rstrip("/")
        return host if host.endswith("/v1") else f"{host}/v1"

    def parse_usage(self, usage: Any) -> Usage | None:
        return Usage.from_provider_usage(usage)


OLLAMA = OllamaDialect()


class OllamaRequest(ChatRequest):
    """Chat request with Ollama's model-runtime extensions."""

    EXTRA_BODY_FIELDS: ClassVar[frozenset[str]] = frozenset({"keep_alive", "options", "format"})
    GROUP_SAME_ROLE: ClassVar[bool] = True
    DEFAULT_MODEL: ClassVar[str] = "llama3.2"

    #: How long the model stays loaded, e.g. ``"5m"``.
    keep_alive: str | int | None = None
    #: Runtime parameters such as ``num_ctx`` or ``num_predict``.
    options: dict[str, Any] | None = None
    format: str | dict[str, Any] | None = None


class OllamaEmbedRequest(ChatEmbedRequest):
    DEFAULT_MODEL: ClassVar[str] = "nomic-embed-text"


class OllamaProvider(ChatCompletionsProvider):
    """Ollama provider."""

    service_name = "Ollama"
    tag_name = "Ollama"
    dialect = OLLAMA
    request_class = OllamaRequest
    embed_request_class = OllamaEmbedRequest

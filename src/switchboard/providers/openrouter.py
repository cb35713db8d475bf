"""OpenRouter provider: many upstream models behind one OpenAI-compatible API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from switchboard.providers.openai_compat import (
    ChatCompletionsProvider,
    ChatDialect,
    ChatEmbedRequest,
    ChatRequest,
)

if TYPE_CHECKING:
    from switchboard.config import Config

Quantization = Literal["int4", "int8", "fp4", "fp6", "fp8", "fp16", "bf16", "fp32", "unknown"]


class MaxPrice(BaseModel):
    """Price ceilings (USD per million tokens, per image, per request)."""

    model_config = ConfigDict(extra="forbid")

    prompt: float | None = Field(default=None, ge=0)
    completion: float | None = Field(default=None, ge=0)
    image: float | None = Field(default=None, ge=0)
    audio: float | None = Field(default=None, ge=0)
    request: float | None = Field(default=None, ge=0)


class ProviderPreferences(BaseModel):
    """Routing preferences across OpenRouter's upstream providers."""

    model_config = ConfigDict(extra="forbid")

    order: list[str] | None = None
    allow_fallbacks: bool | None = None
    require_parameters: bool | None = None
    data_collection: Literal["allow", "deny"] | None = None
    zdr: bool | None = None
    only: list[str] | None = None
    ignore: list[str] | None = None
    quantizations: list[Quantization] | None = None
    sort: Literal["price", "throughput", "latency"] | None = None
    max_price: MaxPrice | None = None


class Plugin(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str


@dataclass(frozen=True)
class OpenRouterDialect(ChatDialect):
    """Fixed endpoint; app attribution headers; repeats ``role`` in deltas."""

    default_base_url: str | None = "https://openrouter.ai/api/v1"
    pull_role_from_delta: bool = True

    def headers(self, config: Config) -> dict[str, str]:
        headers = super().headers(config)
        if config.site_url:
            headers.setdefault("HTTP-Referer", config.site_url)
        if config.app_name:
            headers.setdefault("X-Title", config.app_name)
        return headers


OPENROUTER = OpenRouterDialect()


class OpenRouterRequest(ChatRequest):
    """Chat request with OpenRouter routing extensions."""

    EXTRA_BODY_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"provider", "models", "transforms", "plugins", "route", "prediction"}
    )
    DEFAULT_MODEL: ClassVar[str] = "openrouter/auto"

    provider: ProviderPreferences | None = None
    #: Fallback models tried in order when the primary fails.
    models: list[str] | None = None
    transforms: list[str] | None = None
    plugins: list[Plugin] | None = None
    route: Literal["fallback"] | None = None
    prediction: dict[str, Any] | None = None

    @field_validator("provider", mode="before")
    @classmethod
    def _enable_fallbacks(cls, value: Any) -> Any:
        if isinstance(value, dict) and "enable_fallbacks" in value:
            value = dict(value)
            value.setdefault("allow_fallbacks", value.pop("enable_fallbacks"))
        return value


class OpenRouterEmbedRequest(ChatEmbedRequest):
    DEFAULT_MODEL: ClassVar[str] = "openai/text-embedding-3-small"


class OpenRouterProvider(ChatCompletionsProvider):
    """OpenRouter provider."""

    service_name = "OpenRouter"
    tag_name = "OpenRouter"
    dialect = OPENROUTER
    request_class = OpenRouterRequest
    embed_request_class = OpenRouterEmbedRequest

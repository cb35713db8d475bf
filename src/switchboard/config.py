"""Configuration: frozen Config resolved from defaults, environment and overrides."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import os
from typing import Any, Literal

from dotenv import load_dotenv

from switchboard.errors import ConfigurationError
from switchboard.retry import RetryPolicy

load_dotenv()

ApiVersion = Literal["chat", "responses"]

# Canonical service names, keyed by their lowercase spelling.
SERVICES: dict[str, str] = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "ollama": "Ollama",
    "openrouter": "OpenRouter",
    "mock": "Mock",
}

# API key variables per service, in lookup order.
_API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "OpenAI": ("OPENAI_API_KEY", "OPENAI_ACCESS_TOKEN"),
    "Anthropic": ("ANTHROPIC_API_KEY", "ANTHROPIC_ACCESS_TOKEN"),
    "OpenRouter": ("OPENROUTER_API_KEY",),
    "Ollama": ("OLLAMA_API_KEY",),
}

# Services that work without a real key.
_KEY_DEFAULTS: dict[str, str] = {"Ollama": "ollama"}

DEFAULT_OLLAMA_HOST = "http://127.0.0.1:11434"


def canonical_service(name: str) -> str:
    """Return the canonical spelling of *name* or raise ``ConfigurationError``."""
    try:
        return SERVICES[name.strip().lower()]
    except (KeyError, AttributeError):
        raise ConfigurationError(
            f"Unknown service: {name!r}",
            hint=f"Supported services: {', '.join(SERVICES.values())}",
        ) from None


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
        ) from None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
        ) from None


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one provider call.

    Build it with ``Config.resolve("OpenAI", model=...)`` to pick up API keys
    and tuning values from the environment, or construct it directly when
    every value is known.

    Example:
        config = Config.resolve("Anthropic", timeout=30)
        # api_key comes from ANTHROPIC_API_KEY
    """

    service: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    #: Ollama server root; ``/v1`` is appended for the OpenAI-compatible API.
    host: str | None = None
    organization: str | None = None
    timeout: float = 600.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    #: Re-issues of one round when emulated JSON output fails to parse.
    format_retries: int = 2
    #: Upper bound on API round trips in one resolve cycle.
    max_rounds: int = 20
    api_version: ApiVersion | None = None
    app_name: str | None = None
    site_url: str | None = None
    anthropic_beta: str | list[str] | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.service is not None:
            object.__setattr__(self, "service", canonical_service(self.service))
        if self.timeout <= 0:
            raise ConfigurationError(
                f"timeout must be > 0, got {self.timeout}",
                hint="Seconds before the transport gives up on one request.",
            )
        if self.format_retries < 0:
            raise ConfigurationError(
                f"format_retries must be >= 0, got {self.format_retries}",
            )
        if self.max_rounds < 1:
            raise ConfigurationError(
                f"max_rounds must be >= 1, got {self.max_rounds}",
                hint="This bounds how many tool-calling rounds one prompt may run.",
            )
        if self.api_version not in (None, "chat", "responses"):
            raise ConfigurationError(
                f"Unknown api_version: {self.api_version!r}",
                hint="Use 'chat', 'responses' or leave it unset.",
            )

    @classmethod
    def resolve(cls, service: str, **overrides: Any) -> Config:
        """Merge defaults, environment variables and *overrides*.

        Raises ``ConfigurationError`` when the service needs an API key and
        none is configured.
        """
        name = canonical_service(service)
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown config option(s): {', '.join(sorted(unknown))}",
            )

        values: dict[str, Any] = {"service": name}
        for var in _API_KEY_ENV_VARS.get(name, ()):
            if os.environ.get(var):
                values["api_key"] = os.environ[var]
                break
        if name == "OpenAI" and os.environ.get("OPENAI_ORGANIZATION_ID"):
            values["organization"] = os.environ["OPENAI_ORGANIZATION_ID"]
        if name == "Ollama":
            values["host"] = os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST

        timeout = _env_float("SWITCHBOARD_TIMEOUT")
        if timeout is not None:
            values["timeout"] = timeout
        max_rounds = _env_int("SWITCHBOARD_MAX_ROUNDS")
        if max_rounds is not None:
            values["max_rounds"] = max_rounds
        max_retries = _env_int("SWITCHBOARD_MAX_RETRIES")
        if max_retries is not None:
            values["retry"] = RetryPolicy(max_retries=max_retries)

        values.update({k: v for k, v in overrides.items() if v is not None})
        if not values.get("api_key") and name in _KEY_DEFAULTS:
            values["api_key"] = _KEY_DEFAULTS[name]

        config = cls(**values)
        config.require_api_key()
        return config

    def require_api_key(self) -> str | None:
        """Return the API key, raising when the service needs one and has none."""
        if self.service is None or self.service == "Mock" or self.api_key:
            return self.api_key
        env_vars = _API_KEY_ENV_VARS.get(self.service, ())
        hint = (
            f"Set {env_vars[0]} environment variable or pass api_key=..."
            if env_vars
            else "Pass api_key=..."
        )
        raise ConfigurationError(f"API key required for {self.service}", hint=hint)

    def with_overrides(self, **changes: Any) -> Config:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(service={self.service!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, "
            f"base_url={self.base_url!r}, host={self.host!r}, "
            f"timeout={self.timeout}, max_rounds={self.max_rounds}, "
            f"max_retries={self.retry.max_retries})"
        )

    __repr__ = __str__

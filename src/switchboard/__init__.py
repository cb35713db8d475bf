"""Switchboard: provider-agnostic orchestration for LLM calls.

Public API:
    - prompt(): Run a full prompt resolve cycle (tools, streaming, retries)
    - embed(): Run one embeddings call
    - preview(): Render the request a context would produce
    - provider_for(): Look up the adapter class for a service
    - Config: Configuration dataclass
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from switchboard.actions import ActionTable
from switchboard.config import Config
from switchboard.errors import (
    ActionNotFoundError,
    APIConnectionError,
    APIError,
    ConfigurationError,
    RateLimitError,
    RetriesExhaustedError,
    StreamProtocolError,
    SwitchboardError,
    ToolLoopError,
)
from switchboard.instrumentation import (
    Event,
    attach_log_subscriber,
    subscribe,
    subscribed,
    unsubscribe,
)
from switchboard.messages import Message
from switchboard.providers import provider_for
from switchboard.responses import EmbedResponse, PromptResponse
from switchboard.retry import RetryPolicy
from switchboard.usage import Usage

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from switchboard.providers.base import BaseProvider

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("switchboard-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("switchboard").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


async def prompt(
    context: Mapping[str, Any],
    *,
    service: str | None = None,
    config: Config | None = None,
    tools_function: Callable[..., Any] | None = None,
    stream_broadcaster: Callable[[Any, Any, str], Any] | None = None,
    trace_id: str | None = None,
    **overrides: Any,
) -> PromptResponse:
    """Run one prompt through the configured provider.

    Args:
        context: Messages, tools and request options (``model``, ``stream``, ...).
        service: Service name when no ``config`` is given (e.g. ``"OpenAI"``).
        config: Fully resolved configuration; takes precedence over ``service``.
        tools_function: Called as ``tools_function(name, **arguments)`` for each
            tool the model requests; may be async.
        stream_broadcaster: Called as ``(message, delta, phase)`` with phase
            ``"open"``, ``"update"`` or ``"close"`` while streaming.
        trace_id: Correlation id copied into every instrumentation event.
        **overrides: Config fields applied on top of the environment.

    Returns:
        PromptResponse with the full conversation and per-round usage.

    Example:
        response = await prompt({"messages": ["hello world"]}, service="Mock")
        print(response.message.text)  # "ellohay orldway"
    """
    provider = _get_provider(
        service, config, overrides, tools_function, stream_broadcaster, trace_id
    )
    try:
        return await provider.prompt(context)
    finally:
        await _close(provider)


async def embed(
    context: Mapping[str, Any],
    *,
    service: str | None = None,
    config: Config | None = None,
    trace_id: str | None = None,
    **overrides: Any,
) -> EmbedResponse:
    """Embed ``context["input"]`` (a string or a list of strings)."""
    provider = _get_provider(service, config, overrides, None, None, trace_id)
    try:
        return await provider.embed(context)
    finally:
        await _close(provider)


def preview(
    context: Mapping[str, Any],
    *,
    service: str | None = None,
    config: Config | None = None,
    **overrides: Any,
) -> str:
    """Render the request *context* would produce as markdown, without sending it."""
    return _get_provider(service, config, overrides, None, None, None).preview(context)


def _get_provider(
    service: str | None,
    config: Config | None,
    overrides: dict[str, Any],
    tools_function: Callable[..., Any] | None,
    stream_broadcaster: Callable[[Any, Any, str], Any] | None,
    trace_id: str | None,
) -> BaseProvider:
    """Resolve configuration and instantiate the matching adapter."""
    if config is None:
        if service is None:
            raise ConfigurationError(
                "No service configured",
                hint="Pass service='OpenAI' (or another service) or config=Config.resolve(...).",
            )
        config = Config.resolve(service, **overrides)
    elif overrides:
        config = config.with_overrides(**overrides)
    if config.service is None:
        raise ConfigurationError("Config.service is required to pick a provider")
    cls = provider_for(config.service)
    return cls(
        config,
        tools_function=tools_function,
        stream_broadcaster=stream_broadcaster,
        trace_id=trace_id,
    )


async def _close(provider: BaseProvider) -> None:
    try:
        await provider.aclose()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        # Cleanup should never mask the primary failure.
        logger.warning("Provider cleanup failed: %s", exc)


# Re-export for convenience
__all__ = [
    "APIConnectionError",
    "APIError",
    "ActionNotFoundError",
    "ActionTable",
    "Config",
    "ConfigurationError",
    "EmbedResponse",
    "Event",
    "Message",
    "PromptResponse",
    "RateLimitError",
    "RetriesExhaustedError",
    "RetryPolicy",
    "StreamProtocolError",
    "SwitchboardError",
    "ToolLoopError",
    "Usage",
    "attach_log_subscriber",
    "embed",
    "preview",
    "prompt",
    "provider_for",
    "subscribe",
    "subscribed",
    "unsubscribe",
]

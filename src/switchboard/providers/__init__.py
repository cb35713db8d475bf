"""Provider implementations and the service registry."""

from __future__ import annotations

from switchboard.config import canonical_service

from .anthropic import AnthropicProvider
from .base import BaseProvider
from .mock import MockProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider
from .openai_chat import OpenAIChatProvider
from .openai_responses import OpenAIResponsesProvider
from .openrouter import OpenRouterProvider

PROVIDERS: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "ollama": OllamaProvider,
    "openrouter": OpenRouterProvider,
    "mock": MockProvider,
}


def provider_for(service: str) -> type[BaseProvider]:
    """Return the adapter class for a service name (case-insensitive)."""
    return PROVIDERS[canonical_service(service).lower()]


__all__ = [
    "PROVIDERS",
    "AnthropicProvider",
    "BaseProvider",
    "MockProvider",
    "OllamaProvider",
    "OpenAIChatProvider",
    "OpenAIProvider",
    "OpenAIResponsesProvider",
    "OpenRouterProvider",
    "provider_for",
]

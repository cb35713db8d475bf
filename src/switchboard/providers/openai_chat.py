"""OpenAI Chat Completions provider."""

from __future__ import annotations

from switchboard.providers.openai_compat import (
    ChatCompletionsProvider,
    ChatDialect,
    ChatEmbedRequest,
    ChatRequest,
)

OPENAI_CHAT = ChatDialect()


class OpenAIChatRequest(ChatRequest):
    """Chat Completions request against api.openai.com."""


class OpenAIChatProvider(ChatCompletionsProvider):
    """OpenAI Chat Completions API provider.

    Selected by ``OpenAIProvider`` when the call carries audio or the config
    pins ``api_version="chat"``; also serves every OpenAI embeddings call.
    """

    service_name = "OpenAI"
    tag_name = "OpenAI.Chat"
    dialect = OPENAI_CHAT
    request_class = OpenAIChatRequest
    embed_request_class = ChatEmbedRequest

"""OpenAI router: picks the Chat Completions or Responses adapter per call."""

from __future__ import annotations

from collections.abc import Mapping
import logging
from typing import TYPE_CHECKING, Any

from switchboard.config import Config
from switchboard.providers.base import BaseProvider
from switchboard.providers.openai_chat import OpenAIChatProvider, OpenAIChatRequest
from switchboard.providers.openai_responses import OpenAIResponsesProvider

if TYPE_CHECKING:
    from switchboard.responses import EmbedResponse, PromptResponse

logger = logging.getLogger(__name__)


def has_audio(context: Mapping[str, Any]) -> bool:
    """True when the context asks for audio output or carries audio input."""
    if context.get("audio") or "audio" in (context.get("modalities") or ()):
        return True
    messages = context.get("messages") or []
    if isinstance(messages, Mapping):
        messages = [messages]
    for message in messages:
        content = message.get("content") if isinstance(message, Mapping) else None
        if isinstance(content, list) and any(
            isinstance(part, Mapping) and part.get("type") == "input_audio"
            for part in content
        ):
            return True
    return False


class OpenAIProvider(BaseProvider):
    """Routes each call to Chat Completions or Responses.

    ``Config.api_version="chat"`` or audio in the context selects Chat;
    everything else goes to Responses. Embeddings always use Chat's
    ``embeddings`` endpoint. The delegate shares this provider's client,
    callbacks and trace id.
    """

    service_name = "OpenAI"
    tag_name = "OpenAI"
    request_class = OpenAIChatRequest

    def __init__(self, config: Config | None = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.delegate: BaseProvider | None = None

    def select(self, context: Mapping[str, Any]) -> type[BaseProvider]:
        version = self.config.api_version
        if version == "chat" or (version is None and has_audio(context)):
            return OpenAIChatProvider
        if version == "responses" and has_audio(context):
            logger.debug("Audio in context; Responses pinned by api_version")
        return OpenAIResponsesProvider

    def _delegate_for(self, cls: type[BaseProvider]) -> BaseProvider:
        delegate = cls(
            self.config,
            tools_function=self.tools_function,
            stream_broadcaster=self.stream_broadcaster,
            trace_id=self.trace_id,
        )
        delegate._client = self._client
        self.delegate = delegate
        return delegate

    async def prompt(self, context: Mapping[str, Any]) -> PromptResponse:
        delegate = self._delegate_for(self.select(context))
        try:
            return await delegate.prompt(context)
        finally:
            self._client = delegate._client

    async def embed(self, context: Mapping[str, Any]) -> EmbedResponse:
        delegate = self._delegate_for(OpenAIChatProvider)
        try:
            return await delegate.embed(context)
        finally:
            self._client = delegate._client

    def preview(self, context: Mapping[str, Any]) -> str:
        return self._delegate_for(self.select(context)).preview(context)

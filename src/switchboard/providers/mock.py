"""Deterministic in-process provider for tests and offline development.

Replies with the pig latin of the latest user message, shaped like an
Anthropic Messages response. Streamed rounds replay the same text as
synthetic ``message_start`` ... ``message_stop`` events, one delta per word.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
import hashlib
import math
import random
import re
from typing import Any, ClassVar
import uuid

from pydantic import field_validator, model_validator

from switchboard.errors import ConfigurationError, StreamProtocolError
from switchboard.messages import Message, TextBlock, ToolUseBlock
from switchboard.providers._utils import parse_arguments, text_of
from switchboard.providers.base import BaseProvider
from switchboard.providers.models import RequestModel, ToolCall
from switchboard.usage import Usage

DEFAULT_DIMENSIONS = 1536

_WORD = re.compile(r"\w+")
_LEADING_CONSONANTS = re.compile(r"^([^aeiouAEIOU]+)(.*)$", re.DOTALL)
# Split after whitespace so every piece keeps its trailing separator.
_STREAM_SPLIT = re.compile(r"(?<=\s)(?=\S)")


def _pig_latin_word(match: re.Match[str]) -> str:
    word = match.group(0)
    if word[0] in "aeiouAEIOU":
        return f"{word}way"
    consonants, rest = _LEADING_CONSONANTS.match(word).groups()  # type: ignore[union-attr]
    if word[0].isupper() and rest:
        return f"{rest[0].upper()}{rest[1:]}{consonants.lower()}ay"
    return f"{rest}{consonants}ay"


def pig_latin(text: str) -> str:
    """Translate each word of *text*, leaving punctuation and spacing alone.

    >>> pig_latin("Hello world")
    'Ellohay orldway'
    """
    return _WORD.sub(_pig_latin_word, text or "")


def stream_pieces(text: str) -> list[str]:
    """Split *text* into word-sized deltas that concatenate back to *text*."""
    return [piece for piece in _STREAM_SPLIT.split(text) if piece]


def mock_embedding(text: str, dimensions: int = DEFAULT_DIMENSIONS) -> list[float]:
    """Unit vector seeded from *text*; the same text always maps to the same vector."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = random.Random(seed)
    vector = [rng.uniform(-1.0, 1.0) for _ in range(dimensions)]
    norm = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / norm for v in vector]


class MockRequest(RequestModel):
    model: str = "mock-model"
    instructions: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    response_format: dict[str, Any] | str | None = None

    @model_validator(mode="before")
    @classmethod
    def _defaults(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if not data.get("model"):
            data.pop("model", None)
        messages = data.get("messages") or []
        if isinstance(messages, (str, Mapping, Message)):
            messages = [messages]
        data["messages"] = messages
        return data

    @field_validator("messages", mode="before")
    @classmethod
    def _messages(cls, value: Any) -> list[dict[str, Any]]:
        return [
            m if isinstance(m, dict) and "role" in m else Message.coerce(m).to_dict()
            for m in value or []
        ]


class MockEmbedRequest(RequestModel):
    model: str = "mock-embedding-model"
    input: str | list[str]
    dimensions: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _input(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "input" not in data:
            raise ConfigurationError(
                "embed() needs an 'input' in the context",
                hint="Pass {'input': 'text to embed'} or a list of strings.",
            )
        return data

    def to_params(self) -> dict[str, Any]:
        params = super().to_params()
        params.pop("messages", None)
        return params


class MockProvider(BaseProvider):
    """Mock provider: no network, no randomness."""

    service_name = "Mock"
    tag_name = "Mock"
    request_class: ClassVar[type[RequestModel]] = MockRequest
    embed_request_class: ClassVar[type[RequestModel] | None] = MockEmbedRequest

    @property
    def uri_base(self) -> str | None:
        return None

    def latest_user_text(self, params: Mapping[str, Any]) -> str:
        for message in reversed(params.get("messages") or []):
            if message.get("role") == "user":
                return text_of(message.get("content"))
        return ""

    def reply(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Build the complete Anthropic-shaped reply for *params*."""
        content = self.latest_user_text(params)
        text = pig_latin(content)
        return {
            "id": f"mock-{uuid.uuid4().hex[:16]}",
            "type": "message",
            "role": "assistant",
            "content": [{"type": "text", "text": text}],
            "model": params.get("model", "mock-model"),
            "stop_reason": "end_turn",
            "usage": {"input_tokens": len(content), "output_tokens": len(text)},
        }

    async def api_prompt_execute(self, params: dict[str, Any]) -> Any:
        reply = self.reply(params)
        if params.get("stream"):
            return self._simulate_stream(reply)
        return reply

    async def api_embed_execute(self, params: dict[str, Any]) -> Any:
        raw = params["input"]
        inputs = raw if isinstance(raw, list) else [raw]
        dimensions = params.get("dimensions") or DEFAULT_DIMENSIONS
        tokens = sum(len(str(text)) for text in inputs)
        return {
            "object": "list",
            "data": [
                {
                    "object": "embedding",
                    "index": index,
                    "embedding": mock_embedding(str(text), dimensions),
                }
                for index, text in enumerate(inputs)
            ],
            "model": params.get("model"),
            "usage": {"prompt_tokens": tokens, "total_tokens": tokens},
        }

    async def _simulate_stream(self, reply: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        text = reply["content"][0]["text"]
        yield {
            "type": "message_start",
            "message": {**reply, "content": [], "stop_reason": None, "usage": {}},
        }
        yield {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}
        for piece in stream_pieces(text):
            yield {
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "text_delta", "text": piece},
            }
        yield {"type": "content_block_stop", "index": 0}
        yield {
            "type": "message_delta",
            "delta": {"stop_reason": reply["stop_reason"]},
            "usage": reply["usage"],
        }
        yield {"type": "message_stop"}

    # -- request lifecycle -----------------------------------------------------

    def append_messages(self, messages: list[dict[str, Any]]) -> None:
        self.request.messages.extend(messages)

    def extract_messages(self, raw: Any) -> list[dict[str, Any]] | None:
        return [dict(raw)] if raw else None

    def extract_usage(self, raw: Any) -> Usage | None:
        if isinstance(raw, Mapping):
            return Usage.from_anthropic(raw.get("usage"))
        return None

    def finish_reason(self, raw: Any) -> str | None:
        return raw.get("stop_reason") if isinstance(raw, Mapping) else None

    def extract_tool_calls(self, messages: list[dict[str, Any]]) -> list[ToolCall]:
        return [
            ToolCall(block["id"], block["name"], parse_arguments(block.get("input")))
            for message in messages
            if message.get("role") == "assistant" and isinstance(message.get("content"), list)
            for block in message["content"]
            if block.get("type") == "tool_use"
        ]

    def tool_result_message(self, call: ToolCall, content: str) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": call.id, "content": content}

    def tool_choice_forces_required(self) -> bool:
        return self.request.tool_choice in ("required", "any")

    def tool_choice_forced_name(self) -> str | None:
        choice = self.request.tool_choice
        if isinstance(choice, dict):
            return choice.get("name") or (choice.get("function") or {}).get("name")
        if isinstance(choice, str) and choice not in ("auto", "none", "required", "any"):
            return choice
        return None

    # -- streaming -------------------------------------------------------------

    def process_stream_chunk(self, chunk: dict[str, Any]) -> None:
        kind = chunk.get("type")
        match kind:
            case "message_start":
                message = dict(chunk["message"])
                message["content"] = list(message.get("content") or [])
                self.message_stack.append(message)
                self.broadcast_stream_update(message)
            case "content_block_start":
                block = dict(chunk["content_block"])
                self._current()["content"].append(block)
                self.broadcast_stream_update(self._current(), block.get("text") or None)
            case "content_block_delta":
                delta = chunk["delta"]
                if delta.get("type") != "text_delta":
                    raise StreamProtocolError(f"Unexpected Mock delta type: {delta.get('type')!r}")
                block = self._current()["content"][chunk["index"]]
                block["text"] = block.get("text", "") + delta["text"]
                self.broadcast_stream_update(self._current(), delta["text"])
            case "content_block_stop" | "ping":
                pass
            case "message_delta":
                message = self._current()
                message.update(chunk.get("delta") or {})
                if chunk.get("usage"):
                    message["usage"] = dict(chunk["usage"])
            case "message_stop":
                self.finish_round(self._current())
            case _:
                raise StreamProtocolError(f"Unexpected Mock chunk type: {kind!r}")

    def _current(self) -> dict[str, Any]:
        if not self.message_stack:
            raise StreamProtocolError("Mock stream sent content before message_start")
        return self.message_stack[-1]

    # -- common model ----------------------------------------------------------

    def cast_messages(self, messages: list[dict[str, Any]]) -> list[Message]:
        out = []
        for message in messages:
            content = message.get("content")
            if message.get("role") == "assistant" and isinstance(content, list):
                calls = tuple(
                    ToolUseBlock(b["id"], b["name"], parse_arguments(b.get("input")))
                    for b in content
                    if b.get("type") == "tool_use"
                )
                texts = tuple(
                    TextBlock(b.get("text", "")) for b in content if b.get("type") == "text"
                )
                out.append(Message("assistant", texts, tool_calls=calls))
            else:
                out.append(Message.from_dict(message))
        return out

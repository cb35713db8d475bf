"""Shared OpenAI-compatible Chat Completions transport.

OpenAI, Ollama and OpenRouter all speak the Chat Completions wire format but
disagree on details: where the server lives, which extra fields ride in the
request body, and how streamed deltas behave. A ``ChatDialect`` captures those
differences so one provider implementation serves all three.
"""

from __future__ import annotations

from collections.abc import Mapping
import copy
from dataclasses import dataclass, field, is_dataclass
import json
import logging
from typing import Any, ClassVar

from pydantic import field_validator, model_validator

from switchboard.config import Config
from switchboard.errors import APIError, ConfigurationError, StreamProtocolError
from switchboard.messages import (
    ContentBlock,
    DocumentBlock,
    ImageBlock,
    Message,
    TextBlock,
    ToolUseBlock,
    block_to_dict,
)
from switchboard.providers._errors import error_from_payload
from switchboard.providers._utils import (
    drop_index_keys,
    normalize_response_format,
    parse_arguments,
    tool_spec,
)
from switchboard.providers.base import BaseProvider
from switchboard.providers.models import RequestModel, ToolCall
from switchboard.usage import Usage

logger = logging.getLogger(__name__)

# Keys the Chat Completions API accepts on input messages.
_MESSAGE_KEYS = frozenset(
    {"role", "content", "name", "tool_calls", "tool_call_id", "refusal", "audio"}
)


def merge_delta(target: dict[str, Any], delta: Mapping[str, Any]) -> dict[str, Any]:
    """Merge a streamed delta into *target* in place.

    Strings concatenate, dicts merge recursively, and list items carrying an
    ``index`` merge into the existing item with the same index. Anything else
    is replaced.
    """
    for key, value in delta.items():
        if value is None:
            continue
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merge_delta(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            for item in value:
                if isinstance(item, Mapping) and "index" in item:
                    existing = next(
                        (
                            x
                            for x in current
                            if isinstance(x, dict) and x.get("index") == item["index"]
                        ),
                        None,
                    )
                    if existing is not None:
                        merge_delta(existing, item)
                        continue
                current.append(copy.deepcopy(item))
        elif isinstance(current, str) and isinstance(value, str):
            target[key] = current + value
        else:
            target[key] = copy.deepcopy(value)
    return target


def _content_part(item: Any) -> dict[str, Any]:
    if isinstance(item, str):
        return {"type": "text", "text": item}
    if is_dataclass(item) and not isinstance(item, type):
        item = block_to_dict(item)
    data = dict(item)
    kind = data.get("type")
    if kind in ("text", "input_text", "output_text"):
        return {"type": "text", "text": data.get("text", "")}
    if kind in ("image", "input_image"):
        source = data.get("source") or data.get("image_url") or data.get("url")
        if isinstance(source, Mapping):
            source = source.get("url") or source.get("data")
        return {"type": "image_url", "image_url": {"url": source}}
    if kind in ("document", "input_file"):
        source = data.get("source") or data.get("file_data")
        return {"type": "file", "file": {"file_data": source}}
    return data


def chat_message(message: Any) -> dict[str, Any]:
    """Convert one message (any accepted shape) to Chat Completions form."""
    if isinstance(message, str):
        return {"role": "user", "content": message}
    if isinstance(message, Message):
        message = message.to_dict()
    if not isinstance(message, Mapping):
        raise ConfigurationError(f"Unsupported message: {message!r}")
    out = {k: v for k, v in message.items() if k in _MESSAGE_KEYS and v is not None}
    out.setdefault("role", "user")

    content = out.get("content")
    if isinstance(content, list):
        out["content"] = [_content_part(part) for part in content]

    calls = out.get("tool_calls")
    if calls:
        normalized = []
        for call in calls:
            if isinstance(call, ToolUseBlock):
                call = block_to_dict(call)
            if "function" in call:
                normalized.append(
                    {k: v for k, v in dict(call).items() if k != "index"}
                )
                continue
            args = call.get("input", call.get("arguments", {}))
            normalized.append(
                {
                    "id": call.get("id"),
                    "type": "function",
                    "function": {
                        "name": call["name"],
                        "arguments": args if isinstance(args, str) else json.dumps(args),
                    },
                }
            )
        out["tool_calls"] = normalized
    return out


def _group_same_role(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    grouped: list[dict[str, Any]] = []
    for msg in messages:
        last = grouped[-1] if grouped else None
        if (
            last is not None
            and last["role"] == msg["role"]
            and msg["role"] in ("user", "system")
            and isinstance(last.get("content"), str)
            and isinstance(msg.get("content"), str)
        ):
            last["content"] = f"{last['content']}\n\n{msg['content']}"
            continue
        grouped.append(dict(msg))
    return grouped


def chat_tool_choice(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        if value == "any":
            return "required"
        if value in ("auto", "none", "required"):
            return value
        return {"type": "function", "function": {"name": value}}
    if isinstance(value, Mapping):
        if value.get("type") == "function" and "function" in value:
            return dict(value)
        name = value.get("name") or (value.get("function") or {}).get("name")
        if name:
            return {"type": "function", "function": {"name": name}}
    raise ConfigurationError(
        f"Unsupported tool_choice: {value!r}",
        hint="Use 'auto', 'required', 'none' or {'name': 'tool_name'}.",
    )


class ChatRequest(RequestModel):
    """Chat Completions request shared by every OpenAI-compatible dialect."""

    #: Fields sent through the SDK's ``extra_body``.
    EXTRA_BODY_FIELDS: ClassVar[frozenset[str]] = frozenset()
    #: Merge consecutive same-role text messages.
    GROUP_SAME_ROLE: ClassVar[bool] = False
    DEFAULT_MODEL: ClassVar[str] = "gpt-4o-mini"

    model: str = ""
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    max_completion_tokens: int | None = None
    stop: str | list[str] | None = None
    seed: int | None = None
    n: int | None = None
    user: str | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    reasoning_effort: str | None = None
    metadata: dict[str, Any] | None = None
    store: bool | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    parallel_tool_calls: bool | None = None
    response_format: dict[str, Any] | None = None
    modalities: list[str] | None = None
    audio: dict[str, Any] | None = None
    stream_options: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if not data.get("model"):
            data["model"] = cls.DEFAULT_MODEL
        messages = data.get("messages") or []
        if isinstance(messages, (str, Mapping, Message)):
            messages = [messages]
        instructions = data.pop("instructions", None)
        if instructions:
            messages = [{"role": "system", "content": instructions}, *messages]
        data["messages"] = messages
        if data.get("stream") and data.get("stream_options") is None:
            data["stream_options"] = {"include_usage": True}
        return data

    @field_validator("messages", mode="before")
    @classmethod
    def _messages(cls, value: Any) -> list[dict[str, Any]]:
        messages = [chat_message(m) for m in value or []]
        return _group_same_role(messages) if cls.GROUP_SAME_ROLE else messages

    @field_validator("tools", mode="before")
    @classmethod
    def _tools(cls, value: Any) -> Any:
        if value is None:
            return None
        tools = []
        for tool in value:
            if tool.get("type") not in (None, "function"):
                tools.append(dict(tool))
                continue
            name, description, params = tool_spec(tool)
            fn: dict[str, Any] = {"name": name, "parameters": params}
            if description:
                fn["description"] = description
            tools.append({"type": "function", "function": fn})
        return tools

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _choice(cls, value: Any) -> Any:
        return chat_tool_choice(value)

    @field_validator("response_format", mode="before")
    @classmethod
    def _format(cls, value: Any) -> Any:
        return normalize_response_format(value)

    def to_params(self) -> dict[str, Any]:
        params = super().to_params()
        extra = {k: params.pop(k) for k in self.EXTRA_BODY_FIELDS if k in params}
        if extra:
            params["extra_body"] = extra
        return params


class ChatEmbedRequest(RequestModel):
    """Embeddings request for OpenAI-compatible services."""

    DEFAULT_MODEL: ClassVar[str] = "text-embedding-3-small"

    model: str = ""
    input: str | list[str] | list[int] | list[list[int]]
    dimensions: int | None = None
    encoding_format: str | None = None
    user: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _defaults(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            if not data.get("model"):
                data["model"] = cls.DEFAULT_MODEL
            if "input" not in data:
                raise ConfigurationError(
                    "embed() needs an 'input' in the context",
                    hint="Pass {'input': 'text to embed'} or a list of strings.",
                )
        return data

    def to_params(self) -> dict[str, Any]:
        params = super().to_params()
        params.pop("messages", None)
        return params


@dataclass(frozen=True)
class ChatDialect:
    """What differs between OpenAI-compatible chat services."""

    default_base_url: str | None = None
    default_api_key: str | None = None
    #: Some gateways repeat ``role`` in every streamed delta.
    pull_role_from_delta: bool = False
    extra_headers: dict[str, str] = field(default_factory=dict)

    def base_url(self, config: Config) -> str | None:
        return config.base_url or self.default_base_url

    def headers(self, config: Config) -> dict[str, str]:
        return {**self.extra_headers, **config.extra_headers}

    def api_key(self, config: Config) -> str | None:
        if self.default_api_key is not None:
            return config.api_key or self.default_api_key
        return config.require_api_key()

    def parse_usage(self, usage: Any) -> Usage | None:
        return Usage.from_openai_chat(usage)

    def merge_delta(self, message: dict[str, Any], delta: dict[str, Any]) -> None:
        if self.pull_role_from_delta and "role" in delta:
            delta = dict(delta)
            role = delta.pop("role")
            if role:
                message["role"] = role
        merge_delta(message, delta)


def openai_client(dialect: ChatDialect, config: Config) -> Any:
    """Build an ``AsyncOpenAI`` client for *dialect*; the SDK's own retries stay off."""
    try:
        from openai import AsyncOpenAI
    except ImportError as e:
        raise APIError(
            "openai package not installed",
            hint="pip install openai",
        ) from e
    return AsyncOpenAI(
        api_key=dialect.api_key(config),
        base_url=dialect.base_url(config),
        organization=config.organization,
        timeout=config.timeout,
        max_retries=0,
        default_headers=dialect.headers(config) or None,
    )


class ChatCompletionsProvider(BaseProvider):
    """Provider for any service speaking the Chat Completions protocol."""

    dialect: ClassVar[ChatDialect] = ChatDialect()
    request_class = ChatRequest
    embed_request_class = ChatEmbedRequest

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._stream_raw: dict[str, Any] | None = None
        self._stream_choices: dict[int, dict[str, Any]] = {}

    def _get_client(self) -> Any:
        """Lazily initialize and return the OpenAI-compatible client."""
        if self._client is None:
            self._client = openai_client(self.dialect, self.config)
        return self._client

    @property
    def uri_base(self) -> str | None:
        return self.dialect.base_url(self.config) or "https://api.openai.com/v1"

    async def api_prompt_execute(self, params: dict[str, Any]) -> Any:
        self._stream_raw = None
        self._stream_choices = {}
        return await self._get_client().chat.completions.create(**params)

    async def api_embed_execute(self, params: dict[str, Any]) -> Any:
        return await self._get_client().embeddings.create(**params)

    # -- request lifecycle -----------------------------------------------------

    def append_messages(self, messages: list[dict[str, Any]]) -> None:
        incoming = [chat_message(m) for m in messages]
        self.request.messages.extend(incoming)

    def extract_messages(self, raw: Any) -> list[dict[str, Any]] | None:
        choices = (raw or {}).get("choices") or []
        if not choices:
            return None
        return [dict(choices[0].get("message") or {})]

    def extract_usage(self, raw: Any) -> Usage | None:
        if isinstance(raw, Mapping):
            return self.dialect.parse_usage(raw.get("usage"))
        return None

    def finish_reason(self, raw: Any) -> str | None:
        choices = (raw or {}).get("choices") or []
        return choices[0].get("finish_reason") if choices else None

    def extract_tool_calls(self, messages: list[dict[str, Any]]) -> list[ToolCall]:
        calls = []
        for message in messages:
            if message.get("role") != "assistant":
                continue
            for call in message.get("tool_calls") or []:
                if call.get("type", "function") != "function":
                    raise ConfigurationError(
                        f"Unexpected tool call type: {call.get('type')!r}",
                    )
                fn = call.get("function") or {}
                calls.append(
                    ToolCall(
                        id=call.get("id", ""),
                        name=fn.get("name", ""),
                        arguments=parse_arguments(fn.get("arguments")),
                    )
                )
        return calls

    def tool_result_message(self, call: ToolCall, content: str) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": call.id, "content": content}

    def tool_choice_forces_required(self) -> bool:
        return self.request.tool_choice in ("required", "any")

    def tool_choice_forced_name(self) -> str | None:
        choice = self.request.tool_choice
        if isinstance(choice, dict):
            return (choice.get("function") or {}).get("name")
        return None

    # -- streaming -------------------------------------------------------------

    def process_stream_chunk(self, chunk: dict[str, Any]) -> None:
        if "error" in chunk:
            raise error_from_payload(chunk, provider=self.service_name)
        kind = chunk.get("object")
        if kind not in (None, "chat.completion.chunk"):
            raise StreamProtocolError(
                f"Unexpected {self.service_name} chunk object: {kind!r}"
            )

        raw = self._stream_raw
        if raw is None:
            raw = self._stream_raw = {
                "id": chunk.get("id"),
                "object": "chat.completion",
                "created": chunk.get("created"),
                "model": chunk.get("model"),
                "choices": [],
            }
        if chunk.get("usage"):
            raw["usage"] = chunk["usage"]

        for choice in chunk.get("choices") or []:
            index = choice.get("index", 0)
            message = self._find_or_create_message(index)
            delta = choice.get("delta") or {}
            self.dialect.merge_delta(message, delta)
            if delta.get("content"):
                self.broadcast_stream_update(message, delta["content"])
            finish = choice.get("finish_reason")
            if finish:
                message.setdefault("role", "assistant")
                if message.get("tool_calls"):
                    message["tool_calls"] = drop_index_keys(message["tool_calls"])
                raw["choices"].append(
                    {"index": index, "message": message, "finish_reason": finish}
                )
                if index == 0:
                    self.finish_round(raw)

    def _find_or_create_message(self, index: int) -> dict[str, Any]:
        message = self._stream_choices.get(index)
        if message is None:
            message = {}
            self._stream_choices[index] = message
            if index == 0:
                self.message_stack.append(message)
        return message

    # -- common model ----------------------------------------------------------

    def cast_messages(self, messages: list[dict[str, Any]]) -> list[Message]:
        return [chat_to_common(m) for m in messages]


def _part_to_common(part: Mapping[str, Any]) -> ContentBlock | None:
    kind = part.get("type")
    if kind == "text":
        return TextBlock(part.get("text", ""))
    if kind == "image_url":
        image = part.get("image_url") or {}
        return ImageBlock(image.get("url", "") if isinstance(image, Mapping) else str(image))
    if kind == "file":
        file = part.get("file") or {}
        return DocumentBlock(file.get("file_data") or file.get("file_id") or "")
    return None


def chat_to_common(message: Mapping[str, Any]) -> Message:
    content = message.get("content")
    blocks: str | tuple[ContentBlock, ...]
    if isinstance(content, list):
        blocks = tuple(b for b in (_part_to_common(p) for p in content) if b is not None)
    else:
        blocks = content or ""
    calls = tuple(
        ToolUseBlock(
            call.get("id", ""),
            (call.get("function") or {}).get("name", ""),
            parse_arguments((call.get("function") or {}).get("arguments")),
        )
        for call in message.get("tool_calls") or []
    )
    return Message(
        role=message.get("role", "assistant"),
        content=blocks,
        name=message.get("name"),
        tool_call_id=message.get("tool_call_id"),
        tool_calls=calls,
    )

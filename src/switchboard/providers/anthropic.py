"""Anthropic Messages API provider."""

from __future__ import annotations

from collections.abc import Mapping
import copy
from dataclasses import is_dataclass
import json
import logging
from typing import Any, ClassVar

from pydantic import field_validator, model_validator

from switchboard.errors import APIError, ConfigurationError, StreamProtocolError
from switchboard.messages import (
    ContentBlock,
    DocumentBlock,
    ImageBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    block_to_dict,
)
from switchboard.providers._errors import error_from_payload
from switchboard.providers._utils import (
    is_valid_json,
    normalize_response_format,
    parse_arguments,
    tool_spec,
)
from switchboard.providers.base import BaseProvider
from switchboard.providers.models import RequestModel, ToolCall
from switchboard.usage import Usage

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_BASE_URL = "https://api.anthropic.com"
#: Assistant prefill that steers the model into emitting a JSON object.
JSON_LEAD_IN = "Here is the JSON requested:\n{"


def _source(value: Any) -> dict[str, Any]:
    if isinstance(value, Mapping):
        src = dict(value)
        if "type" not in src and src.get("data") and src.get("media_type"):
            src["type"] = "base64"
        return src
    text = str(value)
    if text.startswith("data:"):
        header, _, data = text.partition(",")
        media_type = header[len("data:") :].split(";")[0]
        return {"type": "base64", "media_type": media_type, "data": data}
    return {"type": "url", "url": text}


def _content_item(item: Any) -> dict[str, Any]:
    if isinstance(item, str):
        return {"type": "text", "text": item}
    if is_dataclass(item) and not isinstance(item, type):
        item = block_to_dict(item)
    if not isinstance(item, Mapping):
        raise ConfigurationError(f"Unsupported Anthropic content item: {item!r}")
    data = dict(item)
    kind = data.get("type")
    if kind in (None, "text", "input_text", "output_text") and "text" in data:
        return {"type": "text", "text": data["text"]}
    if kind in ("image", "image_url", "input_image") or (kind is None and "image" in data):
        raw = data.get("source") or data.get("image") or data.get("image_url") or data.get("url")
        if isinstance(raw, Mapping) and "url" in raw and "type" not in raw:
            raw = raw["url"]
        return {"type": "image", "source": _source(raw)}
    if kind in ("document", "file", "input_file") or (kind is None and "document" in data):
        raw = data.get("source") or data.get("document") or data.get("file_data")
        return {"type": "document", "source": _source(raw)}
    if kind is None and "tool_use_id" in data:
        return {"type": "tool_result", **data}
    if kind is None and {"id", "name", "input"} <= data.keys():
        return {"type": "tool_use", **data}
    return data


def _content(content: Any) -> list[dict[str, Any]]:
    if content is None:
        return []
    if isinstance(content, (str, Mapping)):
        return [_content_item(content)]
    return [_content_item(item) for item in content]


def _as_param(message: Any) -> dict[str, Any]:
    """Convert one message (any accepted shape) to ``{role, content}``."""
    if isinstance(message, str):
        return {"role": "user", "content": _content(message)}
    if isinstance(message, Message):
        message = message.to_dict()
    if not isinstance(message, Mapping):
        raise ConfigurationError(f"Unsupported message: {message!r}")
    role = message.get("role") or "user"

    if role == "tool":
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id"),
                    "content": message.get("content") or "",
                }
            ],
        }
    if role in ("system", "developer"):
        raise ConfigurationError(
            "Anthropic takes system prompts through 'instructions', not messages",
            hint="Move the system message into context['instructions'].",
        )

    content = _content(message.get("content"))
    for call in message.get("tool_calls") or ():
        if isinstance(call, ToolUseBlock):
            call = {"id": call.id, "name": call.name, "input": call.input}
        fn = call.get("function") or call
        content.append(
            {
                "type": "tool_use",
                "id": call.get("id"),
                "name": fn.get("name"),
                "input": parse_arguments(fn.get("input", fn.get("arguments"))),
            }
        )
    return {"role": role, "content": content}


def merge_same_role(
    messages: list[dict[str, Any]], incoming: list[Any]
) -> list[dict[str, Any]]:
    """Append *incoming* to *messages*, merging consecutive same-role messages."""
    for raw in incoming:
        msg = _as_param(raw)
        if messages and messages[-1]["role"] == msg["role"]:
            last = messages[-1]
            last["content"] = [*_content(last["content"]), *msg["content"]]
        else:
            messages.append(msg)
    return messages


def _tool_choice(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        if value == "auto":
            return {"type": "auto"}
        if value in ("required", "any"):
            return {"type": "any"}
        if value == "none":
            return {"type": "none"}
        return {"type": "tool", "name": value}
    if isinstance(value, Mapping):
        choice = dict(value)
        if "type" in choice and choice["type"] != "function":
            return choice
        name = choice.get("name") or (choice.get("function") or {}).get("name")
        if name:
            return {"type": "tool", "name": name}
    raise ConfigurationError(
        f"Unsupported tool_choice: {value!r}",
        hint="Use 'auto', 'required', 'none' or {'name': 'tool_name'}.",
    )


def _compress(message: dict[str, Any]) -> dict[str, Any]:
    content = message.get("content")
    if (
        isinstance(content, list)
        and len(content) == 1
        and content[0].get("type") == "text"
        and set(content[0]) == {"type", "text"}
    ):
        return {**message, "content": content[0]["text"]}
    return message


class AnthropicRequest(RequestModel):
    """Messages API request."""

    LOCAL_FIELDS: ClassVar[frozenset[str]] = frozenset({"response_format"})

    model: str = DEFAULT_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    system: str | list[dict[str, Any]] | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: dict[str, Any] | None = None
    thinking: dict[str, Any] | None = None
    mcp_servers: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] | None = None
    response_format: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            if data.get("instructions") and not data.get("system"):
                data["system"] = data.pop("instructions")
            messages = data.get("messages")
            if isinstance(messages, list):
                system = [
                    m for m in messages
                    if isinstance(m, Mapping) and m.get("role") in ("system", "developer")
                ]
                if system:
                    data["messages"] = [m for m in messages if not any(m is s for s in system)]
                    texts = [str(m.get("content") or "") for m in system]
                    if data.get("system"):
                        texts.insert(0, str(data["system"]))
                    data["system"] = "\n\n".join(texts)
            if "mcps" in data and "mcp_servers" not in data:
                data["mcp_servers"] = data.pop("mcps")
        return data

    @field_validator("messages", mode="before")
    @classmethod
    def _messages(cls, value: Any) -> list[dict[str, Any]]:
        if value is None:
            return []
        if isinstance(value, (str, Mapping, Message)):
            value = [value]
        return merge_same_role([], list(value))

    @field_validator("system", mode="before")
    @classmethod
    def _system(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return [dict(value)]
        if isinstance(value, list):
            return [{"type": "text", "text": v} if isinstance(v, str) else v for v in value]
        return value

    @field_validator("tools", mode="before")
    @classmethod
    def _tools(cls, value: Any) -> Any:
        if value is None:
            return None
        tools = []
        for tool in value:
            if tool.get("type") not in (None, "function", "custom"):
                tools.append(dict(tool))  # server tools pass through
                continue
            name, description, params = tool_spec(tool)
            out: dict[str, Any] = {"name": name, "input_schema": params}
            if description:
                out["description"] = description
            tools.append(out)
        return tools

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _choice(cls, value: Any) -> Any:
        return _tool_choice(value)

    @field_validator("mcp_servers", mode="before")
    @classmethod
    def _mcp(cls, value: Any) -> Any:
        if value is None:
            return None
        servers = []
        for server in value:
            s = dict(server)
            if "authorization" in s and "authorization_token" not in s:
                s["authorization_token"] = s.pop("authorization")
            s.setdefault("type", "url")
            servers.append({k: v for k, v in s.items() if v is not None})
        return servers

    @field_validator("response_format", mode="before")
    @classmethod
    def _format(cls, value: Any) -> Any:
        fmt = normalize_response_format(value)
        if fmt is None or fmt.get("type") == "text":
            return None
        if fmt.get("type") != "json_object":
            raise ConfigurationError(
                f"Anthropic does not support response_format {fmt.get('type')!r}",
                hint="Use response_format='json_object' (emulated) or a tool with a schema.",
            )
        return fmt

    @property
    def wants_json(self) -> bool:
        return (self.response_format or {}).get("type") == "json_object"

    def to_params(self) -> dict[str, Any]:
        params = super().to_params()
        params["messages"] = [_compress(m) for m in params.get("messages", [])]
        return params


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API provider."""

    service_name = "Anthropic"
    tag_name = "Anthropic"
    request_class = AnthropicRequest

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._json_prefilled = False
        self._brace_streamed = False

    def _get_client(self) -> Any:
        """Lazily initialize and return the async Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise APIError(
                    "anthropic package not installed",
                    hint="pip install anthropic",
                ) from e
            headers = dict(self.config.extra_headers)
            beta = self.config.anthropic_beta
            if beta:
                headers["anthropic-beta"] = beta if isinstance(beta, str) else ",".join(beta)
            self._client = AsyncAnthropic(
                api_key=self.config.require_api_key(),
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
                default_headers=headers or None,
            )
        return self._client

    @property
    def uri_base(self) -> str | None:
        return self.config.base_url or DEFAULT_BASE_URL

    async def api_prompt_execute(self, params: dict[str, Any]) -> Any:
        return await self._get_client().messages.create(**params)

    # -- request lifecycle -----------------------------------------------------

    def append_messages(self, messages: list[dict[str, Any]]) -> None:
        merge_same_role(self.request.messages, messages)

    def prepare_round(self) -> None:
        self._json_prefilled = self.request.wants_json
        self._brace_streamed = False
        if self._json_prefilled:
            self.request.messages.append(
                {"role": "assistant", "content": [{"type": "text", "text": JSON_LEAD_IN}]}
            )

    def _drop_lead_in(self) -> None:
        messages = self.request.messages
        if messages and messages[-1].get("content") == [{"type": "text", "text": JSON_LEAD_IN}]:
            messages.pop()

    def _finalize_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Undo the JSON prefill: drop the lead-in and restore the opening brace.

        The brace goes on the first text block only; a tool-use-only reply
        is left as the model sent it.
        """
        if not self._json_prefilled:
            return message
        self._drop_lead_in()
        if self._brace_streamed:
            return message
        for block in message.get("content") or []:
            if block.get("type") == "text":
                block["text"] = "{" + block.get("text", "")
                break
        return message

    def extract_messages(self, raw: Any) -> list[dict[str, Any]] | None:
        if not raw:
            return None
        return [self._finalize_message(copy.deepcopy(raw))]

    def extract_usage(self, raw: Any) -> Usage | None:
        if isinstance(raw, Mapping):
            return Usage.from_anthropic(raw.get("usage"))
        return None

    def finish_reason(self, raw: Any) -> str | None:
        return raw.get("stop_reason") if isinstance(raw, Mapping) else None

    def round_needs_retry(self, messages: list[dict[str, Any]]) -> bool:
        if not self.request.wants_json or not messages:
            return False
        if self.extract_tool_calls(messages):
            return False
        text = "".join(
            b.get("text", "")
            for b in messages[-1].get("content") or []
            if b.get("type") == "text"
        )
        if is_valid_json(text):
            return False
        logger.debug("Emulated JSON response did not parse: %.80r", text)
        return True

    def extract_tool_calls(self, messages: list[dict[str, Any]]) -> list[ToolCall]:
        calls = []
        for message in messages:
            if message.get("role") != "assistant":
                continue
            content = message.get("content")
            if not isinstance(content, list):
                continue
            for block in content:
                if block.get("type") == "tool_use":
                    calls.append(
                        ToolCall(
                            id=block["id"],
                            name=block["name"],
                            arguments=parse_arguments(block.get("input")),
                        )
                    )
        return calls

    def tool_result_message(self, call: ToolCall, content: str) -> dict[str, Any]:
        return {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": call.id, "content": content}],
        }

    def tool_choice_forces_required(self) -> bool:
        return (self.request.tool_choice or {}).get("type") == "any"

    def tool_choice_forced_name(self) -> str | None:
        choice = self.request.tool_choice or {}
        return choice.get("name") if choice.get("type") == "tool" else None

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
                if block.get("type") in ("tool_use", "server_tool_use", "mcp_tool_use"):
                    block["input"] = {}
                    block["json_buf"] = ""
                content = self._streaming_message()["content"]
                index = chunk.get("index", len(content))
                while len(content) <= index:
                    content.append({})
                content[index] = block
                if (
                    block.get("type") == "text"
                    and self._json_prefilled
                    and not self._brace_streamed
                ):
                    block["text"] = "{" + block.get("text", "")
                    self._brace_streamed = True
                self.broadcast_stream_update(self._streaming_message(), block.get("text"))
            case "content_block_delta":
                self._apply_delta(chunk["index"], chunk["delta"])
            case "content_block_stop":
                block = self._streaming_message()["content"][chunk["index"]]
                if "json_buf" in block:
                    buf = block.pop("json_buf")
                    block["input"] = json.loads(buf) if buf else {}
            case "message_delta":
                message = self._streaming_message()
                message.update({k: v for k, v in (chunk.get("delta") or {}).items()})
                if chunk.get("usage"):
                    message["usage"] = {**(message.get("usage") or {}), **chunk["usage"]}
            case "message_stop":
                message = self._streaming_message()
                if message.get("stop_reason"):
                    self._finalize_message(message)
                    self.finish_round(message)
            case "ping":
                pass
            case "error":
                raise error_from_payload(chunk, provider=self.service_name)
            case _:
                raise StreamProtocolError(f"Unexpected Anthropic chunk type: {kind!r}")

    def _streaming_message(self) -> dict[str, Any]:
        if not self.message_stack:
            raise StreamProtocolError("Anthropic stream sent content before message_start")
        return self.message_stack[-1]

    def _apply_delta(self, index: int, delta: dict[str, Any]) -> None:
        message = self._streaming_message()
        block = message["content"][index]
        kind = delta.get("type")
        match kind:
            case "text_delta":
                block["text"] = block.get("text", "") + delta["text"]
                self.broadcast_stream_update(message, delta["text"])
            case "input_json_delta":
                block["json_buf"] = block.get("json_buf", "") + delta.get("partial_json", "")
            case "thinking_delta":
                block["thinking"] = block.get("thinking", "") + delta["thinking"]
            case "signature_delta":
                block["signature"] = delta["signature"]
            case "citations_delta":
                block.setdefault("citations", []).append(delta["citation"])
            case _:
                raise StreamProtocolError(f"Unexpected Anthropic delta type: {kind!r}")

    # -- common model ----------------------------------------------------------

    def cast_messages(self, messages: list[dict[str, Any]]) -> list[Message]:
        return [_to_common(m) for m in messages]


def _block_to_common(block: dict[str, Any]) -> ContentBlock | None:
    kind = block.get("type")
    if kind == "text":
        return TextBlock(block.get("text", ""))
    if kind in ("image", "document"):
        src = block.get("source") or {}
        value = src.get("url") or src.get("data") or ""
        cls = ImageBlock if kind == "image" else DocumentBlock
        return cls(value, src.get("media_type"))
    if kind == "tool_result":
        raw = block.get("content", "")
        text = raw if isinstance(raw, str) else "".join(
            part.get("text", "") for part in raw if isinstance(part, Mapping)
        )
        return ToolResultBlock(str(block.get("tool_use_id", "")), text)
    if kind == "thinking":
        return ThinkingBlock(block.get("thinking", ""), block.get("signature"))
    return None


def _to_common(message: dict[str, Any]) -> Message:
    content = message.get("content")
    if isinstance(content, str):
        return Message(message.get("role", "user"), content)
    blocks: list[ContentBlock] = []
    calls: list[ToolUseBlock] = []
    for block in content or []:
        if block.get("type") == "tool_use":
            calls.append(
                ToolUseBlock(block["id"], block["name"], parse_arguments(block.get("input")))
            )
            continue
        converted = _block_to_common(block)
        if converted is not None:
            blocks.append(converted)
    return Message(message.get("role", "user"), tuple(blocks), tool_calls=tuple(calls))

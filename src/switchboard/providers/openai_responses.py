"""OpenAI Responses API provider.

The Responses API speaks in *items* rather than chat messages: input and
output are both ordered lists of ``message``, ``function_call``,
``function_call_output`` and ``reasoning`` items. The request's ``messages``
field holds those items and is sent as ``input``.
"""

from __future__ import annotations

from collections.abc import Mapping
import dataclasses
from dataclasses import is_dataclass
import json
import logging
from typing import Any, ClassVar

from pydantic import field_validator, model_validator

from switchboard.errors import ConfigurationError, StreamProtocolError
from switchboard.messages import (
    ContentBlock,
    DocumentBlock,
    ImageBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    block_to_dict,
)
from switchboard.providers._errors import error_from_payload
from switchboard.providers._utils import (
    normalize_response_format,
    parse_arguments,
    text_of,
    tool_spec,
)
from switchboard.providers.base import BaseProvider
from switchboard.providers.models import RequestModel, ToolCall
from switchboard.providers.openai_chat import OPENAI_CHAT
from switchboard.providers.openai_compat import openai_client
from switchboard.usage import Usage

logger = logging.getLogger(__name__)

# Output items produced by hosted tools; kept in the conversation as-is.
_HOSTED_ITEMS = frozenset(
    {
        "web_search_call",
        "file_search_call",
        "code_interpreter_call",
        "image_generation_call",
        "computer_call",
        "local_shell_call",
        "mcp_call",
        "mcp_list_tools",
        "mcp_approval_request",
    }
)
_ITEM_TYPES = frozenset({"message", "function_call", "reasoning"}) | _HOSTED_ITEMS

# Stream events that carry nothing the final items will not also carry.
_NOOP_EVENTS = frozenset(
    {
        "response.queued",
        "response.output_text.annotation.added",
        "response.function_call_arguments.done",
    }
)
_NOOP_PREFIXES = (
    "response.reasoning",
    "response.web_search_call.",
    "response.file_search_call.",
    "response.code_interpreter_call",
    "response.image_generation_call.",
    "response.mcp_",
)


def _input_part(item: Any, role: str) -> dict[str, Any]:
    if isinstance(item, str):
        item = {"type": "text", "text": item}
    elif is_dataclass(item) and not isinstance(item, type):
        item = block_to_dict(item)
    data = dict(item)
    kind = data.get("type")
    if kind in ("text", "input_text", "output_text"):
        text_type = "output_text" if role == "assistant" else "input_text"
        return {"type": text_type, "text": data.get("text", "")}
    if kind in ("image", "image_url", "input_image"):
        source = data.get("source") or data.get("image_url") or data.get("url")
        if isinstance(source, Mapping):
            source = source.get("url") or source.get("data")
        return {"type": "input_image", "image_url": source}
    if kind in ("document", "file", "input_file"):
        source = data.get("source") or data.get("file_data")
        if isinstance(source, Mapping):
            source = source.get("file_data") or source.get("url")
        return {"type": "input_file", "file_data": source}
    return data


def input_items(message: Any) -> list[dict[str, Any]]:
    """Convert one message (any accepted shape) into Responses input items."""
    if isinstance(message, str):
        return [{"role": "user", "content": message}]
    if isinstance(message, Message):
        message = message.to_dict()
    if not isinstance(message, Mapping):
        raise ConfigurationError(f"Unsupported message: {message!r}")
    data = {k: v for k, v in message.items() if v is not None}

    # Already an item (e.g. output of a previous round).
    if data.get("type", "message") != "message" or "role" not in data:
        if "type" not in data:
            raise ConfigurationError(f"Unsupported input item: {message!r}")
        return [data]

    role = data["role"]
    if role == "tool":
        return [
            {
                "type": "function_call_output",
                "call_id": data.get("tool_call_id", ""),
                "output": text_of(data.get("content")),
            }
        ]

    items: list[dict[str, Any]] = []
    content = data.get("content")
    if isinstance(content, list):
        content = [_input_part(part, role) for part in content]
    if content or not data.get("tool_calls"):
        item: dict[str, Any] = {"role": role, "content": content or ""}
        if data.get("type") == "message":
            item = {**data, "content": content or ""}
        items.append(item)

    for call in data.get("tool_calls") or []:
        if isinstance(call, ToolUseBlock):
            call = block_to_dict(call)
        fn = call.get("function") or call
        args = fn.get("arguments", fn.get("input", {}))
        items.append(
            {
                "type": "function_call",
                "call_id": call.get("id") or call.get("call_id", ""),
                "name": fn["name"],
                "arguments": args if isinstance(args, str) else json.dumps(args),
            }
        )
    return items


def responses_tool_choice(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        if value == "any":
            return "required"
        if value in ("auto", "none", "required"):
            return value
        return {"type": "function", "name": value}
    if isinstance(value, Mapping):
        if value.get("type") not in (None, "function"):
            return dict(value)
        name = value.get("name") or (value.get("function") or {}).get("name")
        if name:
            return {"type": "function", "name": name}
    raise ConfigurationError(
        f"Unsupported tool_choice: {value!r}",
        hint="Use 'auto', 'required', 'none' or {'name': 'tool_name'}.",
    )


def text_format(response_format: Mapping[str, Any]) -> dict[str, Any]:
    """Map a Chat-style ``response_format`` onto the Responses ``text.format``."""
    kind = response_format.get("type")
    if kind == "json_schema" and "json_schema" in response_format:
        return {"format": {"type": "json_schema", **response_format["json_schema"]}}
    return {"format": dict(response_format)}


class ResponsesRequest(RequestModel):
    """Responses API request; ``messages`` is sent as ``input``."""

    LOCAL_FIELDS: ClassVar[frozenset[str]] = frozenset({"response_format"})
    DEFAULT_MODEL: ClassVar[str] = "gpt-4o-mini"

    model: str = ""
    instructions: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    parallel_tool_calls: bool | None = None
    text: dict[str, Any] | None = None
    reasoning: dict[str, Any] | None = None
    store: bool | None = None
    previous_response_id: str | None = None
    metadata: dict[str, Any] | None = None
    truncation: str | None = None
    include: list[str] | None = None
    user: str | None = None
    response_format: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if not data.get("model"):
            data["model"] = cls.DEFAULT_MODEL
        if "input" in data and not data.get("messages"):
            data["messages"] = data.pop("input")
        messages = data.get("messages") or []
        if isinstance(messages, (str, Mapping, Message)):
            messages = [messages]
        data["messages"] = messages
        instructions = data.get("instructions")
        if isinstance(instructions, list):
            data["instructions"] = "\n".join(str(i) for i in instructions)
        fmt = normalize_response_format(data.get("response_format"))
        data["response_format"] = fmt
        if fmt is not None and data.get("text") is None:
            data["text"] = text_format(fmt)
        return data

    @field_validator("messages", mode="before")
    @classmethod
    def _messages(cls, value: Any) -> list[dict[str, Any]]:
        return [item for m in value or [] for item in input_items(m)]

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
            entry: dict[str, Any] = {"type": "function", "name": name, "parameters": params}
            if description:
                entry["description"] = description
            if "strict" in tool:
                entry["strict"] = tool["strict"]
            tools.append(entry)
        return tools

    @field_validator("tool_choice", mode="before")
    @classmethod
    def _choice(cls, value: Any) -> Any:
        return responses_tool_choice(value)

    def to_params(self) -> dict[str, Any]:
        params = super().to_params()
        params["input"] = params.pop("messages", [])
        return params


class OpenAIResponsesProvider(BaseProvider):
    """OpenAI Responses API provider.

    Streams are assembled item by item: ``output_item.added`` opens an item on
    the message stack, text deltas fill its content parts, and
    ``output_item.done`` replaces it with the server's final copy.
    """

    service_name = "OpenAI"
    tag_name = "OpenAI.Responses"
    request_class = ResponsesRequest

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._stream_items: dict[str, dict[str, Any]] = {}

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = openai_client(OPENAI_CHAT, self.config)
        return self._client

    @property
    def uri_base(self) -> str | None:
        return self.config.base_url or "https://api.openai.com/v1"

    async def api_prompt_execute(self, params: dict[str, Any]) -> Any:
        self._stream_items = {}
        return await self._get_client().responses.create(**params)

    # -- request lifecycle -----------------------------------------------------

    def append_messages(self, messages: list[dict[str, Any]]) -> None:
        for message in messages:
            self.request.messages.extend(input_items(message))

    def extract_messages(self, raw: Any) -> list[dict[str, Any]] | None:
        if not isinstance(raw, Mapping):
            return None
        return [dict(item) for item in raw.get("output") or []]

    def extract_usage(self, raw: Any) -> Usage | None:
        if isinstance(raw, Mapping):
            return Usage.from_openai_responses(raw.get("usage"))
        return None

    def finish_reason(self, raw: Any) -> str | None:
        if not isinstance(raw, Mapping):
            return None
        if raw.get("status") == "incomplete":
            return (raw.get("incomplete_details") or {}).get("reason") or "incomplete"
        if any(item.get("type") == "function_call" for item in raw.get("output") or []):
            return "tool_calls"
        return raw.get("status")

    def extract_tool_calls(self, messages: list[dict[str, Any]]) -> list[ToolCall]:
        return [
            ToolCall(
                id=item.get("call_id", ""),
                name=item.get("name", ""),
                arguments=parse_arguments(item.get("arguments")),
            )
            for item in messages
            if item.get("type") == "function_call"
        ]

    def tool_result_message(self, call: ToolCall, content: str) -> dict[str, Any]:
        return {"type": "function_call_output", "call_id": call.id, "output": content}

    def tool_choice_forced_name(self) -> str | None:
        choice = self.request.tool_choice
        if isinstance(choice, dict) and choice.get("type") == "function":
            return choice.get("name")
        return None

    # -- streaming -------------------------------------------------------------

    def process_stream_chunk(self, chunk: dict[str, Any]) -> None:
        kind = chunk.get("type", "")
        match kind:
            case "response.created" | "response.in_progress":
                self.broadcast_stream_open()
            case "response.output_item.added":
                self._item_added(chunk["item"])
            case "response.content_part.added":
                self._part(chunk).update(chunk.get("part") or {})
            case "response.output_text.delta":
                part = self._part(chunk)
                part["text"] = part.get("text", "") + chunk.get("delta", "")
                self.broadcast_stream_update(self._item(chunk), chunk.get("delta"))
            case "response.output_text.done":
                self._part(chunk)["text"] = chunk.get("text", "")
                self.broadcast_stream_update(self._item(chunk), None)
            case "response.refusal.delta":
                part = self._part(chunk)
                part["refusal"] = part.get("refusal", "") + chunk.get("delta", "")
            case "response.refusal.done":
                self._part(chunk)["refusal"] = chunk.get("refusal", "")
            case "response.function_call_arguments.delta":
                item = self._item(chunk)
                item["arguments"] = item.get("arguments", "") + chunk.get("delta", "")
            case "response.content_part.done":
                self._part(chunk).update(chunk.get("part") or {})
            case "response.output_item.done":
                self._item_done(chunk["item"])
            case "response.completed" | "response.incomplete":
                self.finish_round(chunk.get("response") or {})
            case "response.failed":
                response = chunk.get("response") or {}
                raise error_from_payload(
                    {"error": response.get("error") or {"message": "response failed"}},
                    provider=self.service_name,
                )
            case "error":
                raise error_from_payload(chunk, provider=self.service_name)
            case _ if kind in _NOOP_EVENTS or kind.startswith(_NOOP_PREFIXES):
                pass
            case _:
                raise StreamProtocolError(f"Unexpected Responses stream event: {kind!r}")

    def _item_added(self, item: dict[str, Any]) -> None:
        kind = item.get("type")
        if kind not in _ITEM_TYPES:
            raise StreamProtocolError(f"Unexpected Responses output item: {kind!r}")
        entry = dict(item)
        if kind == "message":
            entry["content"] = list(item.get("content") or [])
        if kind == "function_call":
            entry.setdefault("arguments", "")
        self._stream_items[entry.get("id", "")] = entry
        self.message_stack.append(entry)

    def _item_done(self, item: dict[str, Any]) -> None:
        kind = item.get("type")
        if kind not in _ITEM_TYPES:
            raise StreamProtocolError(f"Unexpected Responses output item: {kind!r}")
        entry = self._stream_items.get(item.get("id", ""))
        if entry is None:
            self._item_added(item)
            return
        entry.clear()
        entry.update(item)

    def _item(self, chunk: Mapping[str, Any]) -> dict[str, Any]:
        entry = self._stream_items.get(chunk.get("item_id", ""))
        if entry is None:
            raise StreamProtocolError(
                f"Responses stream referenced unknown item {chunk.get('item_id')!r}"
            )
        return entry

    def _part(self, chunk: Mapping[str, Any]) -> dict[str, Any]:
        content = self._item(chunk).setdefault("content", [])
        index = chunk.get("content_index", 0)
        while len(content) <= index:
            content.append({"type": "output_text", "text": ""})
        return content[index]

    # -- common model ----------------------------------------------------------

    def cast_messages(self, messages: list[dict[str, Any]]) -> list[Message]:
        return responses_to_common(messages)


def _part_to_common(part: Mapping[str, Any]) -> ContentBlock | None:
    kind = part.get("type")
    if kind in ("input_text", "output_text", "text"):
        return TextBlock(part.get("text", ""))
    if kind == "refusal":
        return TextBlock(part.get("refusal", ""))
    if kind == "input_image":
        return ImageBlock(str(part.get("image_url") or part.get("file_id") or ""))
    if kind == "input_file":
        return DocumentBlock(str(part.get("file_data") or part.get("file_id") or ""))
    return None


def _content_blocks(content: Any) -> list[ContentBlock]:
    if isinstance(content, str):
        return [TextBlock(content)] if content else []
    return [b for b in (_part_to_common(p) for p in content or []) if b is not None]


def responses_to_common(items: list[dict[str, Any]]) -> list[Message]:
    """Fold Responses items into common messages.

    Consecutive assistant output (reasoning, message, function calls) becomes
    one assistant message; hosted tool items carry no common form and are
    skipped.
    """
    out: list[Message] = []
    assistant_open = False

    def extend_assistant(blocks: list[ContentBlock], calls: tuple[ToolUseBlock, ...]) -> None:
        nonlocal assistant_open
        if assistant_open:
            last = out[-1]
            current = (
                [TextBlock(last.content)]
                if isinstance(last.content, str)
                else list(last.content)
            )
            out[-1] = dataclasses.replace(
                last, content=tuple(current + blocks), tool_calls=last.tool_calls + calls
            )
        else:
            out.append(Message("assistant", tuple(blocks), tool_calls=calls))
            assistant_open = True

    for item in items:
        kind = item.get("type", "message")
        if kind == "reasoning":
            summary = "".join(s.get("text", "") for s in item.get("summary") or [])
            extend_assistant([ThinkingBlock(summary)] if summary else [], ())
        elif kind == "function_call":
            call = ToolUseBlock(
                item.get("call_id", ""), item.get("name", ""), parse_arguments(item.get("arguments"))
            )
            extend_assistant([], (call,))
        elif kind == "function_call_output":
            out.append(
                Message("tool", str(item.get("output", "")), tool_call_id=item.get("call_id"))
            )
            assistant_open = False
        elif kind == "message":
            role = item.get("role", "assistant")
            blocks = _content_blocks(item.get("content"))
            if role == "assistant":
                extend_assistant(blocks, ())
            else:
                out.append(Message(role, tuple(blocks)))
                assistant_open = False
        else:
            logger.debug("Skipping %s item in common conversion", kind)
    return out

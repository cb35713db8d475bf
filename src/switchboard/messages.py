"""Common message model shared by every provider.

Adapters cast their wire-shaped messages into these frozen dataclasses once a
resolve cycle finishes, so callers see the same structure no matter which
provider answered.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import json
from typing import Any, Literal, TypeAlias

from switchboard.errors import ConfigurationError

Role = Literal["system", "developer", "user", "assistant", "tool"]
ROLES: frozenset[str] = frozenset({"system", "developer", "user", "assistant", "tool"})


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ImageBlock:
    """Image content; *source* is a URL, a data URI, or base64 data."""

    source: str
    media_type: str | None = None
    type: Literal["image"] = field(default="image", init=False)


@dataclass(frozen=True)
class DocumentBlock:
    source: str
    media_type: str | None = None
    type: Literal["document"] = field(default="document", init=False)


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    type: Literal["tool_result"] = field(default="tool_result", init=False)


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str
    signature: str | None = None
    type: Literal["thinking"] = field(default="thinking", init=False)


ContentBlock: TypeAlias = (
    TextBlock | ImageBlock | DocumentBlock | ToolUseBlock | ToolResultBlock | ThinkingBlock
)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, Sequence) and all(
        isinstance(v, Mapping) and v.get("type") == "text" for v in value
    ):
        return "".join(str(v.get("text", "")) for v in value)
    return json.dumps(value, default=str)


def block_from_dict(data: Mapping[str, Any]) -> ContentBlock:
    """Build a content block from its common dict form."""
    kind = data.get("type", "text")
    match kind:
        case "text" | "input_text" | "output_text":
            return TextBlock(str(data.get("text", "")))
        case "image" | "image_url" | "input_image":
            source = data.get("source") or data.get("image_url") or data.get("url")
            if isinstance(source, Mapping):
                source = source.get("url") or source.get("data")
            return ImageBlock(str(source), data.get("media_type"))
        case "document" | "file" | "input_file":
            source = data.get("source") or data.get("file_data") or data.get("url")
            if isinstance(source, Mapping):
                source = source.get("url") or source.get("data")
            return DocumentBlock(str(source), data.get("media_type"))
        case "tool_use":
            raw = data.get("input") or data.get("arguments") or {}
            args = json.loads(raw) if isinstance(raw, str) and raw else raw
            return ToolUseBlock(str(data.get("id", "")), str(data["name"]), dict(args or {}))
        case "tool_result":
            return ToolResultBlock(
                str(data.get("tool_use_id", "")), _stringify(data.get("content", ""))
            )
        case "thinking":
            return ThinkingBlock(str(data.get("thinking", "")), data.get("signature"))
        case _:
            raise ConfigurationError(f"Unknown content block type: {kind!r}")


def normalize_content(
    content: str | Sequence[ContentBlock] | None,
) -> str | tuple[ContentBlock, ...]:
    """Collapse text-only block sequences into one string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    blocks = tuple(content)
    if all(isinstance(b, TextBlock) for b in blocks):
        return "".join(b.text for b in blocks)  # type: ignore[union-attr]
    return blocks


@dataclass(frozen=True)
class Message:
    """One message in a conversation, in provider-neutral form."""

    role: Role
    content: str | tuple[ContentBlock, ...] = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolUseBlock, ...] = ()

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ConfigurationError(
                f"Unknown message role: {self.role!r}",
                hint=f"Expected one of: {', '.join(sorted(ROLES))}",
            )
        object.__setattr__(self, "content", normalize_content(self.content))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @classmethod
    def coerce(cls, value: str | Mapping[str, Any] | Message) -> Message:
        """Cast a string, a mapping or a Message into a Message."""
        if isinstance(value, Message):
            return value
        if isinstance(value, str):
            return cls("user", value)
        if isinstance(value, Mapping):
            return cls.from_dict(value)
        raise ConfigurationError(
            f"Cannot build a message from {type(value).__name__}",
            hint="Pass a string, a dict with role/content, or a Message.",
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        raw = data.get("content")
        content: str | tuple[ContentBlock, ...]
        if raw is None or isinstance(raw, str):
            content = raw or ""
        else:
            content = tuple(block_from_dict(b) for b in raw)
        calls = tuple(
            c if isinstance(c, ToolUseBlock) else block_from_dict({"type": "tool_use", **c})
            for c in data.get("tool_calls") or ()
        )
        return cls(
            role=data.get("role", "user"),
            content=content,
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=calls,  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the common dict form (unset optional fields omitted)."""
        out: dict[str, Any] = {"role": self.role}
        if isinstance(self.content, str):
            out["content"] = self.content
        else:
            out["content"] = [block_to_dict(b) for b in self.content]
        if self.name is not None:
            out["name"] = self.name
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            out["tool_calls"] = [block_to_dict(c) for c in self.tool_calls]
        return out


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    data = {k: v for k, v in block.__dict__.items() if v is not None}
    return {"type": data.pop("type"), **data}

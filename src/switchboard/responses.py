"""Final, provider-neutral results of a resolve cycle."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any

from switchboard.messages import Message
from switchboard.usage import Usage, total_usage


@dataclass(frozen=True)
class PromptResponse:
    """Result of ``prompt()``.

    ``usages`` holds one entry per API round trip; ``usage`` is their sum.
    """

    context: dict[str, Any]
    messages: tuple[Message, ...]
    raw_request: dict[str, Any] = field(default_factory=dict)
    raw_response: Any = None
    usages: tuple[Usage, ...] = ()
    format: dict[str, Any] | None = None
    finish_reason: str | None = None

    @property
    def message(self) -> Message | None:
        """The last message of the conversation, normally the model's answer."""
        return self.messages[-1] if self.messages else None

    @property
    def usage(self) -> Usage:
        return total_usage(self.usages)

    @property
    def structured(self) -> Any:
        """Parsed JSON of the last message when a JSON format was requested."""
        fmt = (self.format or {}).get("type")
        if fmt not in ("json_object", "json_schema") or self.message is None:
            return None
        try:
            return json.loads(self.message.text)
        except (json.JSONDecodeError, TypeError):
            return None


@dataclass(frozen=True)
class EmbedResponse:
    """Result of ``embed()``. ``data`` items carry ``index``, ``object`` and ``embedding``."""

    context: dict[str, Any]
    data: tuple[dict[str, Any], ...]
    raw_request: dict[str, Any] = field(default_factory=dict)
    raw_response: Any = None
    usages: tuple[Usage, ...] = ()

    @property
    def embeddings(self) -> list[list[float]]:
        return [item["embedding"] for item in self.data]

    @property
    def usage(self) -> Usage:
        return total_usage(self.usages)

"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: fake SDK endpoints, recorders for
events and stream callbacks, and a scripted provider for engine tests.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

from switchboard.instrumentation import Event
from switchboard.providers.mock import MockProvider


class FakeEndpoint:
    """Stand-in for an SDK resource with an async ``create``.

    Each queued reply is returned (or raised, when it is an exception) by one
    call; a list reply to a streaming call becomes an async chunk stream.
    Every call's keyword arguments are recorded in ``calls``.
    """

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.replies:
            raise AssertionError("FakeEndpoint ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if kwargs.get("stream") and isinstance(reply, list):
            return aiter_chunks(reply)
        return reply


async def aiter_chunks(items: list[Any]):
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield item


def fake_openai_client(
    *,
    chat: FakeEndpoint | None = None,
    responses: FakeEndpoint | None = None,
    embeddings: FakeEndpoint | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        chat=SimpleNamespace(completions=chat or FakeEndpoint()),
        responses=responses or FakeEndpoint(),
        embeddings=embeddings or FakeEndpoint(),
    )


def fake_anthropic_client(messages: FakeEndpoint) -> SimpleNamespace:
    return SimpleNamespace(messages=messages)


class EventRecorder:
    """Collects published events."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[Event]:
        return [e for e in self.events if e.name == name]

    def names(self) -> list[str]:
        return [e.name for e in self.events]


class StreamRecorder:
    """A ``stream_broadcaster`` that records ``(phase, delta)`` pairs."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.messages: list[Any] = []

    def __call__(self, message: Any, delta: Any, phase: str) -> None:
        self.calls.append((phase, delta))
        self.messages.append(message)

    def phases(self) -> list[str]:
        return [phase for phase, _ in self.calls]

    def text(self) -> str:
        return "".join(d for phase, d in self.calls if phase == "update" and d)


def assistant(
    text: str = "",
    *,
    tool_use: dict[str, Any] | None = None,
    usage: tuple[int, int] = (1, 1),
) -> dict[str, Any]:
    """An Anthropic-shaped assistant reply for ``ScriptedProvider``."""
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    if tool_use is not None:
        content.append({"type": "tool_use", **tool_use})
    return {
        "id": "msg_test",
        "type": "message",
        "role": "assistant",
        "content": content,
        "model": "mock-model",
        "stop_reason": "tool_use" if tool_use else "end_turn",
        "usage": {"input_tokens": usage[0], "output_tokens": usage[1]},
    }


class ScriptedProvider(MockProvider):
    """Mock provider that replays queued replies instead of translating.

    ``sent`` records the request parameters of every round.
    """

    def __init__(self, *args: Any, replies: list[Any] | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.replies = list(replies or [])
        self.sent: list[dict[str, Any]] = []

    async def api_prompt_execute(self, params: dict[str, Any]) -> Any:
        self.sent.append(params)
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if params.get("stream") and isinstance(reply, list):
            return aiter_chunks(reply)
        return reply

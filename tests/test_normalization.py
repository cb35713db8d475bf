"""Normalizing raw provider responses is stable across repeated passes."""

from __future__ import annotations

import copy
from types import SimpleNamespace

import pytest

from switchboard.config import Config
from switchboard.providers._utils import to_plain
from switchboard.providers.anthropic import AnthropicProvider, AnthropicRequest
from switchboard.providers.mock import MockProvider
from switchboard.providers.ollama import OllamaProvider
from switchboard.providers.openai_chat import OpenAIChatProvider
from switchboard.providers.openai_responses import OpenAIResponsesProvider

pytestmark = pytest.mark.contract

NS = SimpleNamespace


def _anthropic_raw():
    return NS(
        id="msg_1",
        type="message",
        role="assistant",
        content=[
            NS(type="text", text="checking"),
            NS(type="tool_use", id="toolu_1", name="lookup", input={"q": "cats"}),
        ],
        stop_reason="tool_use",
        usage=NS(input_tokens=5, output_tokens=3),
    )


def _chat_raw():
    return NS(
        id="chatcmpl-1",
        object="chat.completion",
        choices=[
            NS(
                index=0,
                finish_reason="tool_calls",
                message=NS(
                    role="assistant",
                    content="checking",
                    tool_calls=[
                        NS(
                            id="call_1",
                            type="function",
                            function=NS(name="lookup", arguments='{"q": "cats"}'),
                        )
                    ],
                ),
            )
        ],
        usage=NS(prompt_tokens=5, completion_tokens=3, total_tokens=8),
    )


def _responses_raw():
    return NS(
        id="resp_1",
        object="response",
        status="completed",
        output=[
            NS(
                type="message",
                role="assistant",
                content=[NS(type="output_text", text="checking", annotations=[])],
            ),
            NS(type="function_call", call_id="call_1", name="lookup", arguments='{"q": "cats"}'),
        ],
        usage=NS(input_tokens=5, output_tokens=3, total_tokens=8),
    )


def _anthropic():
    provider = AnthropicProvider(Config(service="Anthropic", api_key="sk-ant-test"))
    provider.request = AnthropicRequest.cast({"messages": ["x"]})
    return provider


def _anthropic_json():
    provider = AnthropicProvider(Config(service="Anthropic", api_key="sk-ant-test"))
    provider.request = AnthropicRequest.cast(
        {"messages": ["x"], "response_format": "json_object"}
    )
    provider.prepare_round()
    return provider


ADAPTERS = [
    pytest.param(_anthropic, _anthropic_raw, id="anthropic"),
    pytest.param(_anthropic_json, _anthropic_raw, id="anthropic-json"),
    pytest.param(
        lambda: OpenAIChatProvider(Config(service="OpenAI", api_key="sk-test")),
        _chat_raw,
        id="openai-chat",
    ),
    pytest.param(lambda: OllamaProvider(Config(service="Ollama")), _chat_raw, id="ollama"),
    pytest.param(
        lambda: OpenAIResponsesProvider(Config(service="OpenAI", api_key="sk-test")),
        _responses_raw,
        id="openai-responses",
    ),
    pytest.param(lambda: MockProvider(Config(service="Mock")), _anthropic_raw, id="mock"),
]


@pytest.mark.parametrize("make_raw", [_anthropic_raw, _chat_raw, _responses_raw])
def test_to_plain_is_idempotent(make_raw) -> None:
    once = to_plain(make_raw())
    assert to_plain(once) == once
    assert isinstance(once, dict)


@pytest.mark.parametrize(("make_provider", "make_raw"), ADAPTERS)
def test_extracting_twice_gives_identical_messages(make_provider, make_raw) -> None:
    provider = make_provider()
    raw = to_plain(make_raw())
    snapshot = copy.deepcopy(raw)

    first = provider.extract_messages(raw)
    second = provider.extract_messages(raw)

    assert first
    assert first == second
    assert raw == snapshot
    assert provider.cast_messages(first) == provider.cast_messages(second)
    assert provider.extract_tool_calls(first) == provider.extract_tool_calls(second)
    assert [c.name for c in provider.extract_tool_calls(first)] == ["lookup"]

"""OpenAI Responses adapter and the OpenAI Chat/Responses router."""

from __future__ import annotations

import pytest

from switchboard.config import Config
from switchboard.errors import APIError, ConfigurationError, StreamProtocolError
from switchboard.providers.openai import OpenAIProvider, has_audio
from switchboard.providers.openai_chat import OpenAIChatProvider
from switchboard.providers.openai_responses import (
    OpenAIResponsesProvider,
    ResponsesRequest,
    input_items,
    responses_to_common,
    responses_tool_choice,
)
from tests.helpers import FakeEndpoint, fake_openai_client

pytestmark = pytest.mark.contract

USAGE = {
    "input_tokens": 10,
    "output_tokens": 5,
    "total_tokens": 15,
    "input_tokens_details": {"cached_tokens": 0},
    "output_tokens_details": {"reasoning_tokens": 0},
}


def _config(**kwargs):
    return Config(service="OpenAI", api_key="sk-test", **kwargs)


def _response(*output, status="completed"):
    return {
        "id": "resp_1",
        "object": "response",
        "status": status,
        "model": "gpt-4o-mini",
        "output": list(output),
        "usage": USAGE,
    }


def _message_item(text, item_id="msg_1"):
    return {
        "type": "message",
        "id": item_id,
        "role": "assistant",
        "status": "completed",
        "content": [{"type": "output_text", "text": text, "annotations": []}],
    }


def _call_item(args='{"location": "NYC"}'):
    return {
        "type": "function_call",
        "id": "fc_1",
        "call_id": "call_1",
        "name": "get_weather",
        "arguments": args,
        "status": "completed",
    }


def _text_events(*pieces):
    text = "".join(pieces)
    return [
        {"type": "response.created", "response": {"id": "resp_1", "status": "in_progress"}},
        {
            "type": "response.output_item.added",
            "output_index": 0,
            "item": {"type": "message", "id": "msg_1", "role": "assistant", "content": []},
        },
        {
            "type": "response.content_part.added",
            "item_id": "msg_1",
            "content_index": 0,
            "part": {"type": "output_text", "text": ""},
        },
        *[
            {"type": "response.output_text.delta", "item_id": "msg_1", "content_index": 0, "delta": p}
            for p in pieces
        ],
        {"type": "response.output_text.done", "item_id": "msg_1", "content_index": 0, "text": text},
        {"type": "response.output_item.done", "output_index": 0, "item": _message_item(text)},
        {"type": "response.completed", "response": _response(_message_item(text))},
    ]


def _provider(*replies, **kwargs):
    provider = OpenAIResponsesProvider(_config(), **kwargs)
    endpoint = FakeEndpoint(*replies)
    provider._client = fake_openai_client(responses=endpoint)
    return provider, endpoint


# =============================================================================
# Request shaping
# =============================================================================


def test_messages_are_sent_as_input_and_formats_as_text() -> None:
    params = ResponsesRequest.cast(
        {
            "instructions": ["Be terse.", "Answer in JSON."],
            "messages": ["hi"],
            "response_format": "json_object",
        }
    ).to_params()

    assert params["input"] == [{"role": "user", "content": "hi"}]
    assert "messages" not in params
    assert params["instructions"] == "Be terse.\nAnswer in JSON."
    assert params["text"] == {"format": {"type": "json_object"}}
    assert "response_format" not in params


def test_json_schema_format_is_flattened_into_text_format() -> None:
    schema = {"type": "object", "properties": {"name": {"type": "string"}}}
    params = ResponsesRequest.cast(
        {
            "messages": ["x"],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "Person", "schema": schema},
            },
        }
    ).to_params()
    assert params["text"]["format"]["type"] == "json_schema"
    assert params["text"]["format"]["name"] == "Person"
    assert params["text"]["format"]["schema"] == schema


def test_input_alias_is_accepted() -> None:
    request = ResponsesRequest.cast({"input": "hello"})
    assert request.messages == [{"role": "user", "content": "hello"}]


def test_tools_use_flat_function_form() -> None:
    params = ResponsesRequest.cast(
        {"messages": ["x"], "tools": [{"name": "lookup", "parameters": {"type": "object"}}]}
    ).to_params()
    assert params["tools"] == [{"type": "function", "name": "lookup", "parameters": {"type": "object"}}]


@pytest.mark.parametrize(
    ("choice", "expected"),
    [
        ("auto", "auto"),
        ("any", "required"),
        ("lookup", {"type": "function", "name": "lookup"}),
        ({"function": {"name": "lookup"}}, {"type": "function", "name": "lookup"}),
        ({"type": "web_search_preview"}, {"type": "web_search_preview"}),
    ],
)
def test_tool_choice_mapping(choice, expected) -> None:
    assert responses_tool_choice(choice) == expected


def test_tool_message_becomes_function_call_output() -> None:
    assert input_items({"role": "tool", "tool_call_id": "call_1", "content": "72"}) == [
        {"type": "function_call_output", "call_id": "call_1", "output": "72"}
    ]


def test_assistant_tool_calls_become_function_call_items() -> None:
    items = input_items(
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "call_1", "name": "lookup", "input": {"q": 1}}],
        }
    )
    assert items == [
        {"type": "function_call", "call_id": "call_1", "name": "lookup", "arguments": '{"q": 1}'}
    ]


def test_assistant_text_parts_use_output_text() -> None:
    [item] = input_items({"role": "assistant", "content": [{"type": "text", "text": "hi"}]})
    assert item["content"] == [{"type": "output_text", "text": "hi"}]


def test_previous_output_items_pass_through() -> None:
    item = _call_item()
    assert input_items(item) == [item]


# =============================================================================
# Rounds
# =============================================================================


@pytest.mark.asyncio
async def test_function_call_round_trip() -> None:
    provider, endpoint = _provider(
        _response(_call_item()),
        _response(_message_item("It is 72 degrees.")),
        tools_function=lambda name, **args: {"temp": 72},
    )

    response = await provider.prompt({"messages": ["Weather in NYC?"]})

    second_input = endpoint.calls[1]["input"]
    assert second_input[1]["type"] == "function_call"
    assert second_input[2] == {
        "type": "function_call_output",
        "call_id": "call_1",
        "output": '{"temp": 72}',
    }
    assert [m.role for m in response.messages] == ["user", "assistant", "tool", "assistant"]
    assert response.messages[1].tool_calls[0].input == {"location": "NYC"}
    assert response.message.text == "It is 72 degrees."
    assert response.finish_reason == "completed"
    assert [u.total_tokens for u in response.usages] == [15, 15]


def test_finish_reason_reports_incomplete_reason() -> None:
    provider, _ = _provider()
    raw = {**_response(status="incomplete"), "incomplete_details": {"reason": "max_output_tokens"}}
    assert provider.finish_reason(raw) == "max_output_tokens"


@pytest.mark.asyncio
async def test_streamed_text_is_assembled_from_deltas(stream_recorder) -> None:
    provider, _ = _provider(_text_events("Hel", "lo"), stream_broadcaster=stream_recorder)

    response = await provider.prompt({"messages": ["hi"], "stream": True})

    assert response.message.text == "Hello"
    assert stream_recorder.text() == "Hello"
    assert stream_recorder.phases().count("open") == 1
    assert response.usage.total_tokens == 15


@pytest.mark.asyncio
async def test_streamed_function_call_arguments_are_assembled() -> None:
    call_events = [
        {"type": "response.created", "response": {"id": "r", "status": "in_progress"}},
        {
            "type": "response.output_item.added",
            "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "get_weather"},
        },
        {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"location": '},
        {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '"NYC"}'},
        {"type": "response.function_call_arguments.done", "item_id": "fc_1"},
        {"type": "response.completed", "response": _response(_call_item())},
    ]
    calls = []
    provider, _ = _provider(
        call_events,
        _text_events("Sunny"),
        tools_function=lambda name, **args: calls.append((name, args)) or "sunny",
    )

    response = await provider.prompt({"messages": ["weather?"], "stream": True})

    assert calls == [("get_weather", {"location": "NYC"})]
    assert response.message.text == "Sunny"


def test_unknown_stream_event_raises() -> None:
    provider, _ = _provider()
    with pytest.raises(StreamProtocolError, match="response.mystery"):
        provider.process_stream_chunk({"type": "response.mystery"})


@pytest.mark.parametrize(
    "kind",
    ["response.queued", "response.reasoning_summary_text.delta", "response.web_search_call.searching"],
)
def test_informational_events_are_ignored(kind) -> None:
    provider, _ = _provider()
    provider.process_stream_chunk({"type": kind})
    assert provider.message_stack == []


def test_unknown_output_item_raises() -> None:
    provider, _ = _provider()
    with pytest.raises(StreamProtocolError, match="hologram"):
        provider.process_stream_chunk(
            {"type": "response.output_item.added", "item": {"type": "hologram", "id": "h"}}
        )


def test_delta_for_unknown_item_raises() -> None:
    provider, _ = _provider()
    with pytest.raises(StreamProtocolError, match="unknown item"):
        provider.process_stream_chunk(
            {"type": "response.output_text.delta", "item_id": "nope", "delta": "x"}
        )


def test_failed_response_raises_api_error() -> None:
    provider, _ = _provider()
    with pytest.raises(APIError, match="quota"):
        provider.process_stream_chunk(
            {
                "type": "response.failed",
                "response": {"error": {"code": "insufficient_quota", "message": "quota exceeded"}},
            }
        )


def test_common_conversion_folds_assistant_items() -> None:
    messages = responses_to_common(
        [
            {"role": "user", "content": "hi"},
            {"type": "reasoning", "id": "rs_1", "summary": [{"type": "summary_text", "text": "thinking"}]},
            _message_item("checking"),
            _call_item(),
            {"type": "function_call_output", "call_id": "call_1", "output": "72"},
        ]
    )
    assert [m.role for m in messages] == ["user", "assistant", "tool"]
    assistant = messages[1]
    assert assistant.text == "checking"
    assert assistant.tool_calls[0].name == "get_weather"
    assert messages[2].tool_call_id == "call_1"


@pytest.mark.asyncio
async def test_standalone_responses_provider_has_no_embeddings() -> None:
    provider, _ = _provider()
    with pytest.raises(ConfigurationError):
        await provider.embed({"input": "x"})


# =============================================================================
# Router
# =============================================================================


@pytest.mark.parametrize(
    ("context", "expected"),
    [
        ({"messages": ["x"]}, False),
        ({"messages": ["x"], "modalities": ["text", "audio"]}, True),
        ({"messages": ["x"], "audio": {"voice": "alloy", "format": "wav"}}, True),
        (
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [{"type": "input_audio", "input_audio": {"data": "", "format": "wav"}}],
                    }
                ]
            },
            True,
        ),
    ],
)
def test_has_audio(context, expected) -> None:
    assert has_audio(context) is expected


@pytest.mark.parametrize(
    ("api_version", "context", "expected"),
    [
        (None, {"messages": ["x"]}, OpenAIResponsesProvider),
        (None, {"messages": ["x"], "modalities": ["audio"]}, OpenAIChatProvider),
        ("chat", {"messages": ["x"]}, OpenAIChatProvider),
        ("responses", {"messages": ["x"], "modalities": ["audio"]}, OpenAIResponsesProvider),
    ],
)
def test_router_selection(api_version, context, expected) -> None:
    router = OpenAIProvider(_config(api_version=api_version))
    assert router.select(context) is expected


@pytest.mark.asyncio
async def test_router_delegates_and_reports_the_delegate_tag(events) -> None:
    router = OpenAIProvider(_config(), trace_id="t-1")
    responses = FakeEndpoint(_response(_message_item("hello")))
    router._client = fake_openai_client(responses=responses)

    response = await router.prompt({"messages": ["hi"]})

    assert isinstance(router.delegate, OpenAIResponsesProvider)
    assert response.message.text == "hello"
    outer = events.named("prompt.switchboard")[0]
    assert outer.payload["provider"] == "OpenAI"
    assert outer.payload["provider_module"] == "OpenAI.Responses"
    assert outer.payload["trace_id"] == "t-1"


@pytest.mark.asyncio
async def test_router_embeddings_use_chat_endpoint() -> None:
    router = OpenAIProvider(_config(api_version="responses"))
    embeddings = FakeEndpoint(
        {"object": "list", "data": [{"object": "embedding", "index": 0, "embedding": [0.5]}]}
    )
    router._client = fake_openai_client(embeddings=embeddings)

    response = await router.embed({"input": "x"})

    assert isinstance(router.delegate, OpenAIChatProvider)
    assert response.embeddings == [[0.5]]


@pytest.mark.asyncio
async def test_router_keeps_the_client_across_calls() -> None:
    router = OpenAIProvider(_config())
    client = fake_openai_client(
        responses=FakeEndpoint(_response(_message_item("a")), _response(_message_item("b")))
    )
    router._client = client

    await router.prompt({"messages": ["one"]})
    second = await router.prompt({"messages": ["two"]})

    assert router._client is client
    assert second.message.text == "b"

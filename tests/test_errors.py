"""Error hierarchy and provider error mapping."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import pytest

from switchboard._http import retry_after_seconds
from switchboard.errors import (
    APIConnectionError,
    APIError,
    ConfigurationError,
    RateLimitError,
    SwitchboardError,
)
from switchboard.providers._errors import (
    error_from_payload,
    extract_retry_after_s,
    extract_status_code,
    is_connection_error,
    wrap_provider_error,
)
from switchboard.retry import should_retry

pytestmark = pytest.mark.unit


class SdkStatusError(Exception):
    def __init__(self, message: str, status_code: int, headers: dict | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = SimpleNamespace(status_code=status_code, headers=headers or {})


def test_every_error_is_a_switchboard_error() -> None:
    for cls in (ConfigurationError, APIError, RateLimitError, APIConnectionError):
        assert issubclass(cls, SwitchboardError)
    assert ConfigurationError("x", hint="do y").hint == "do y"


@pytest.mark.parametrize(
    ("status", "retried", "cls"),
    [
        (503, True, APIError),
        (429, True, RateLimitError),
        (400, False, APIError),
        (404, False, APIError),
    ],
)
def test_status_codes_map_to_retry_metadata(status, retried, cls) -> None:
    err = wrap_provider_error(SdkStatusError("nope", status), provider="OpenAI", phase="prompt")
    assert type(err) is cls
    assert err.retryable is None
    assert should_retry(err) is retried
    assert err.status_code == status
    assert err.provider == "OpenAI"
    assert err.phase == "prompt"
    assert f"(status={status})" in str(err)


def test_auth_failure_hint_names_the_env_var() -> None:
    err = wrap_provider_error(SdkStatusError("bad key", 401), provider="Anthropic", phase="prompt")
    assert "ANTHROPIC_API_KEY" in (err.hint or "")


def test_retry_after_header_is_honored() -> None:
    exc = SdkStatusError("slow down", 429, headers={"Retry-After": "3"})
    assert extract_retry_after_s(exc) == 3.0
    assert wrap_provider_error(exc, provider="OpenAI", phase="prompt").retry_after_s == 3.0


def test_connection_errors_are_retryable_only_outside_streams() -> None:
    exc = httpx.ConnectError("refused")

    during_call = wrap_provider_error(exc, provider="Ollama", phase="prompt")
    during_stream = wrap_provider_error(
        exc, provider="Ollama", phase="stream", allow_network_errors=False
    )

    assert isinstance(during_call, APIConnectionError)
    assert during_call.retryable is True
    assert isinstance(during_stream, APIConnectionError)
    assert during_stream.retryable is False


def test_existing_api_error_is_completed_not_replaced() -> None:
    original = APIError("already wrapped", retryable=False)
    wrapped = wrap_provider_error(original, provider="Mock", phase="embed")
    assert wrapped is original
    assert wrapped.provider == "Mock"
    assert wrapped.phase == "embed"


def test_cancellation_is_never_wrapped() -> None:
    with pytest.raises(asyncio.CancelledError):
        wrap_provider_error(asyncio.CancelledError(), provider="Mock", phase="prompt")


def test_status_code_is_found_through_the_cause_chain() -> None:
    try:
        try:
            raise SdkStatusError("inner", 502)
        except SdkStatusError as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as outer:
        assert extract_status_code(outer) == 502


def test_is_connection_error() -> None:
    assert is_connection_error(httpx.ReadTimeout("slow"))
    assert is_connection_error(APIConnectionError("down"))
    assert not is_connection_error(ValueError("x"))


@pytest.mark.parametrize(
    ("kind", "cls", "retryable"),
    [
        ("overloaded_error", APIError, True),
        ("rate_limit_error", RateLimitError, True),
        ("invalid_request_error", APIError, False),
    ],
)
def test_in_band_error_payloads(kind, cls, retryable) -> None:
    err = error_from_payload(
        {"type": "error", "error": {"type": kind, "message": "details"}}, provider="Anthropic"
    )
    assert type(err) is cls
    assert err.retryable is retryable
    assert err.phase == "stream"
    assert str(err) == f"Anthropic stream error ({kind}): details"


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"Retry-After": "2.5"}, 2.5),
        ({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, None),
        ({"Retry-After": "-1"}, None),
        ({}, None),
        (None, None),
    ],
)
def test_retry_after_header_parsing(headers, expected) -> None:
    assert retry_after_seconds(headers) == expected

"""Retry policy, classification, and retry behavior inside the engine."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from switchboard.config import Config
from switchboard.errors import (
    APIConnectionError,
    APIError,
    ConfigurationError,
    RetriesExhaustedError,
)
from switchboard.retry import RetryPolicy, retry_async, should_retry
from tests.helpers import ScriptedProvider, assistant

pytestmark = pytest.mark.unit

NO_WAIT = RetryPolicy(max_retries=2, initial_delay_s=0.0)


def _connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("connection refused")


# =============================================================================
# Policy
# =============================================================================


def test_delay_grows_exponentially_and_caps() -> None:
    policy = RetryPolicy(initial_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_jitter_stays_within_base_delay() -> None:
    policy = RetryPolicy(initial_delay_s=2.0, jitter=True)
    for _ in range(20):
        assert 0.0 <= policy.delay_for(1) <= 2.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": -1},
        {"initial_delay_s": -0.1},
        {"backoff_multiplier": 0},
        {"max_delay_s": -1},
        {"retry_on": ("not a type",)},
    ],
)
def test_invalid_policy_is_rejected(kwargs) -> None:
    with pytest.raises(ConfigurationError):
        RetryPolicy(**kwargs)


# =============================================================================
# Classification
# =============================================================================


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (APIError("x", retryable=True), True),
        (APIError("x", retryable=False, status_code=503), False),
        (APIError("x", status_code=503), True),
        (APIError("x", status_code=400), False),
        (httpx.ReadTimeout("slow"), True),
        (_connect_error(), True),
        (TimeoutError(), True),
        (ConfigurationError("bad"), False),
        (ValueError("nope"), False),
        (RetriesExhaustedError("done", retryable=True), False),
    ],
)
def test_should_retry(exc: BaseException, expected: bool) -> None:
    assert should_retry(exc) is expected


def test_should_retry_looks_through_exception_chain() -> None:
    try:
        try:
            raise _connect_error()
        except httpx.ConnectError as inner:
            raise RuntimeError("sdk wrapper") from inner
    except RuntimeError as outer:
        assert should_retry(outer) is True


def test_retry_on_forces_retry_for_listed_types() -> None:
    policy = RetryPolicy(retry_on=(KeyError,))
    assert should_retry(KeyError("k"), policy) is True


def test_cancellation_is_never_retried() -> None:
    assert should_retry(asyncio.CancelledError()) is False


# =============================================================================
# retry_async
# =============================================================================


@pytest.mark.asyncio
async def test_retry_async_succeeds_after_transient_failure(events) -> None:
    attempts = []

    async def factory():
        attempts.append(1)
        if len(attempts) == 1:
            raise APIError("overloaded", retryable=True)
        return "ok"

    assert await retry_async(factory, policy=NO_WAIT, payload={"provider": "X"}) == "ok"
    retries = events.named("retry_attempt.provider.switchboard")
    assert len(retries) == 1
    assert retries[0].payload["attempt"] == 1
    assert retries[0].payload["provider"] == "X"


@pytest.mark.asyncio
async def test_retry_async_raises_exhausted_chained_from_last_failure(events) -> None:
    async def factory():
        raise APIError("still down", retryable=True, status_code=503)

    with pytest.raises(RetriesExhaustedError) as excinfo:
        await retry_async(factory, policy=NO_WAIT)

    assert isinstance(excinfo.value.__cause__, APIError)
    assert excinfo.value.status_code == 503
    assert len(events.named("retry_attempt.provider.switchboard")) == 2
    assert len(events.named("retry_exhausted.provider.switchboard")) == 1


@pytest.mark.asyncio
async def test_retry_async_honors_retry_after(monkeypatch) -> None:
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr("switchboard.retry.asyncio.sleep", fake_sleep)
    calls = []

    async def factory():
        calls.append(1)
        if len(calls) == 1:
            raise APIError("slow down", retryable=True, retry_after_s=7.0)
        return "ok"

    await retry_async(factory, policy=RetryPolicy(initial_delay_s=1.0))
    assert slept == [7.0]


# =============================================================================
# Engine integration
# =============================================================================


@pytest.mark.asyncio
async def test_connection_failure_then_success_emits_one_retry(events) -> None:
    provider = ScriptedProvider(
        Config(service="Mock", retry=NO_WAIT),
        replies=[_connect_error(), assistant("recovered")],
    )

    response = await provider.prompt({"messages": ["hi"]})

    assert response.message.text == "recovered"
    assert len(events.named("retry_attempt.provider.switchboard")) == 1
    connection = events.named("connection_error.provider.switchboard")
    assert len(connection) == 1
    assert connection[0].payload["exception"] == "ConnectError"


@pytest.mark.asyncio
async def test_zero_retries_raises_immediately_without_retry_events(events) -> None:
    provider = ScriptedProvider(
        Config(service="Mock", retry=RetryPolicy(max_retries=0)),
        replies=[_connect_error(), assistant("never reached")],
    )

    with pytest.raises(APIConnectionError):
        await provider.prompt({"messages": ["hi"]})

    assert len(provider.sent) == 1
    assert events.named("retry_attempt.provider.switchboard") == []
    assert events.named("retry_exhausted.provider.switchboard") == []


@pytest.mark.asyncio
async def test_rate_limit_status_is_retried_by_the_engine() -> None:
    class _SdkError(Exception):
        status_code = 429

    provider = ScriptedProvider(
        Config(service="Mock", retry=NO_WAIT),
        replies=[_SdkError("rate limited"), assistant("ok")],
    )
    response = await provider.prompt({"messages": ["hi"]})
    assert response.message.text == "ok"
    assert len(provider.sent) == 2


class _SdkStatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class _SdkGlitch(Exception):
    pass


@pytest.mark.asyncio
async def test_engine_retries_custom_status_codes() -> None:
    policy = RetryPolicy(max_retries=1, initial_delay_s=0.0, retry_statuses=frozenset({418}))
    provider = ScriptedProvider(
        Config(service="Mock", retry=policy),
        replies=[_SdkStatusError("teapot", 418), assistant("ok")],
    )

    response = await provider.prompt({"messages": ["hi"]})

    assert response.message.text == "ok"
    assert len(provider.sent) == 2


@pytest.mark.asyncio
async def test_engine_skips_statuses_removed_from_the_policy() -> None:
    policy = RetryPolicy(max_retries=2, initial_delay_s=0.0, retry_statuses=frozenset({503}))
    provider = ScriptedProvider(
        Config(service="Mock", retry=policy),
        replies=[_SdkStatusError("rate limited", 429), assistant("never reached")],
    )

    with pytest.raises(APIError, match="status=429"):
        await provider.prompt({"messages": ["hi"]})
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_engine_retries_exception_types_listed_in_retry_on(events) -> None:
    policy = RetryPolicy(max_retries=1, initial_delay_s=0.0, retry_on=(_SdkGlitch,))
    provider = ScriptedProvider(
        Config(service="Mock", retry=policy),
        replies=[_SdkGlitch("x"), assistant("ok")],
    )

    response = await provider.prompt({"messages": ["hi"]})

    assert response.message.text == "ok"
    assert len(events.named("retry_attempt.provider.switchboard")) == 1


@pytest.mark.asyncio
async def test_engine_does_not_retry_unlisted_sdk_errors() -> None:
    provider = ScriptedProvider(
        Config(service="Mock", retry=NO_WAIT),
        replies=[_SdkGlitch("x"), assistant("never reached")],
    )

    with pytest.raises(APIError, match="Mock prompt failed: x"):
        await provider.prompt({"messages": ["hi"]})
    assert len(provider.sent) == 1

"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, marker handling,
and automatic API test skipping. Fixtures here are autouse unless noted.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import suppress
import logging
import os
from typing import Any

import pytest

from switchboard.instrumentation import notifier
from tests.helpers import EventRecorder, StreamRecorder

# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def events():
    """Subscribe to every event for the duration of a test."""
    recorder = EventRecorder()
    subscription = notifier.subscribe(None, recorder)
    try:
        yield recorder
    finally:
        notifier.unsubscribe(subscription)


@pytest.fixture
def stream_recorder() -> StreamRecorder:
    return StreamRecorder()


@pytest.fixture
def tool_recorder() -> Callable[..., Any]:
    """A ``tools_function`` that records calls and echoes its arguments."""
    calls: list[tuple[str, dict[str, Any]]] = []

    def tools_function(name: str, **arguments: Any) -> dict[str, Any]:
        calls.append((name, arguments))
        return {"tool": name, **arguments}

    tools_function.calls = calls  # type: ignore[attr-defined]
    return tools_function


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears provider and SWITCHBOARD_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    prefixes = ("OPENAI_", "ANTHROPIC_", "OPENROUTER_", "OLLAMA_", "SWITCHBOARD_")
    for key in list(os.environ.keys()):
        if key.startswith(prefixes):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

OPENAI_TEST_MODEL = "gpt-4o-mini"
ANTHROPIC_TEST_MODEL = "claude-haiku-4-5"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def anthropic_api_key():
    """Return ANTHROPIC_API_KEY or skip the test if unavailable."""
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        pytest.skip("ANTHROPIC_API_KEY not set")
    return key

"""Shared provider-side error helpers.

Providers attach retry metadata via APIError so core retry logic can be
bounded and deterministic without brittle substring matching.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from switchboard._http import AUTH_STATUS_CODES, retry_after_seconds
from switchboard.errors import (
    APIConnectionError,
    APIError,
    RateLimitError,
    _walk_exception_chain,
)

_API_KEY_ENV_VARS = {
    "OpenAI": "OPENAI_API_KEY",
    "Anthropic": "ANTHROPIC_API_KEY",
    "OpenRouter": "OPENROUTER_API_KEY",
    "Ollama": "OLLAMA_API_KEY",
}

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.TransportError,
    TimeoutError,
    ConnectionError,
)


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        seconds = retry_after_seconds(getattr(getattr(e, "response", None), "headers", None))
        if seconds is not None:
            return seconds
    return None


def is_connection_error(exc: BaseException) -> bool:
    """True when *exc* (or anything it wraps) is a connect failure or timeout."""
    if isinstance(exc, APIConnectionError):
        return True
    return any(isinstance(e, _CONNECTION_ERRORS) for e in _walk_exception_chain(exc))


def _auth_hint(provider: str, status_code: int | None, cause_message: str) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    cause_lower = cause_message.lower()
    if status_code in AUTH_STATUS_CODES or (
        status_code == 400 and ("api key" in cause_lower or "api_key" in cause_lower)
    ):
        env_var = _API_KEY_ENV_VARS.get(provider, "API key")
        return f"Check credentials/permissions (try setting {env_var} or api_key=...)."
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    allow_network_errors: bool = True,
    message: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Map provider SDK exceptions into APIError with stable retry metadata."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped; fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)
    connection = status_code is None and is_connection_error(exc)

    # A status code leaves the decision to RetryPolicy.retry_statuses.
    retryable: bool | None
    if isinstance(status_code, int):
        retryable = None
    elif connection:
        retryable = allow_network_errors
    else:
        retryable = retry_after_s is not None

    derived_hint = hint if hint is not None else _auth_hint(provider, status_code, str(exc))
    msg = message or f"{provider} {phase} failed"

    err_cls: type[APIError] = APIError
    if status_code == 429:
        err_cls = RateLimitError
    elif connection:
        err_cls = APIConnectionError

    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=derived_hint,
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )


def error_from_payload(
    payload: Any, *, provider: str, phase: str = "stream"
) -> APIError:
    """Build an APIError from an in-band error event (``{"error": {...}}``)."""
    error = payload.get("error", payload) if isinstance(payload, dict) else payload
    if isinstance(error, dict):
        kind = error.get("type") or error.get("code") or "error"
        detail = error.get("message") or str(error)
    else:
        kind, detail = "error", str(error)
    retryable = kind in ("overloaded_error", "api_error", "rate_limit_error", "server_error")
    err_cls: type[APIError] = RateLimitError if kind == "rate_limit_error" else APIError
    return err_cls(
        f"{provider} {phase} error ({kind}): {detail}",
        retryable=retryable,
        provider=provider,
        phase=phase,
    )

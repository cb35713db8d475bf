"""HTTP status and header helpers shared by provider error mapping and retry."""

from __future__ import annotations

from typing import Any

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})


def retry_after_seconds(headers: Any) -> float | None:
    """Read a numeric ``Retry-After`` header; HTTP-date values are ignored."""
    if headers is None:
        return None
    try:
        raw = headers.get("Retry-After")
    except (AttributeError, TypeError):
        return None
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None

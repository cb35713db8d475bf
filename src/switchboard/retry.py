"""Bounded async retry with explicit error contracts.

- Explicit state (policy + attempt counters)
- No brittle substring matching for retry decisions
- Every retry and every exhausted budget is published as an event
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from switchboard._http import RETRYABLE_STATUS_CODES
from switchboard.errors import (
    APIError,
    ConfigurationError,
    RetriesExhaustedError,
    StreamProtocolError,
    _walk_exception_chain,
)
from switchboard.instrumentation import event_name, notifier

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff.

    ``max_retries`` counts retries after the first attempt, so ``0`` means
    a single attempt whose failure is raised untouched.
    """

    max_retries: int = 3
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = False  # "full jitter" when enabled
    retry_on: tuple[type[BaseException], ...] = ()
    retry_statuses: frozenset[int] = RETRYABLE_STATUS_CODES

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_retries < 0:
            raise ConfigurationError("RetryPolicy.max_retries must be >= 0")
        if self.initial_delay_s < 0:
            raise ConfigurationError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ConfigurationError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ConfigurationError("RetryPolicy.max_delay_s must be >= 0")
        if not all(isinstance(t, type) for t in self.retry_on):
            raise ConfigurationError("RetryPolicy.retry_on must hold exception types")

    def delay_for(self, retry_index: int) -> float:
        """Backoff before retry *retry_index* (1-based)."""
        base = self.initial_delay_s * (
            self.backoff_multiplier ** max(0, retry_index - 1)
        )
        base = min(self.max_delay_s, base)
        if base <= 0:
            return 0.0
        if not self.jitter:
            return base
        return random.random() * base  # noqa: S311


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transient_network_error(exc: BaseException) -> bool:
    # Provider SDKs wrap httpx errors; look through the whole chain.
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return True
        if isinstance(e, (httpx.TimeoutException, httpx.TransportError)):
            return True
    return False


def should_retry(exc: BaseException, policy: RetryPolicy | None = None) -> bool:
    """Return True when *exc* is a transient failure worth retrying.

    Contract:
    - Cancellation, configuration and protocol errors are never retried.
    - Exceptions listed in ``policy.retry_on`` are always retried, matched
      anywhere in the cause chain so SDK errors wrapped as APIError count.
    - APIError is retried when the provider marks it retryable, or when it
      leaves the decision open and carries a status code in
      ``policy.retry_statuses``.
    - Raw transport timeouts and connection failures are retried.
    """
    policy = policy or RetryPolicy()
    if isinstance(
        exc,
        (asyncio.CancelledError, RetriesExhaustedError, ConfigurationError, StreamProtocolError),
    ):
        return False
    if policy.retry_on and any(
        isinstance(e, policy.retry_on) for e in _walk_exception_chain(exc)
    ):
        return True
    if isinstance(exc, APIError):
        if exc.retryable is not None:
            return exc.retryable
        return isinstance(exc.status_code, int) and exc.status_code in policy.retry_statuses
    return _is_transient_network_error(exc)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    classify: Callable[[BaseException, RetryPolicy], bool] = should_retry,
    payload: dict[str, Any] | None = None,
) -> T:
    """Run an async factory with bounded retries.

    Each retry publishes ``retry_attempt.provider.switchboard``; a retryable
    failure that outlives the budget publishes
    ``retry_exhausted.provider.switchboard`` and raises
    ``RetriesExhaustedError`` chained from the last failure. With
    ``max_retries=0`` the first failure propagates as-is.
    """
    base_payload = dict(payload or {})
    attempt = 0
    while True:
        try:
            return await factory()
        except Exception as exc:
            if not classify(exc, policy):
                raise
            if policy.max_retries == 0:
                raise
            if attempt >= policy.max_retries:
                notifier.notify(
                    event_name("retry_exhausted", provider_level=True),
                    {
                        **base_payload,
                        "max_retries": policy.max_retries,
                        "exception": type(exc).__name__,
                    },
                )
                logger.warning(
                    "Retries exhausted after %d attempts: %s", attempt + 1, exc
                )
                status = exc.status_code if isinstance(exc, APIError) else None
                raise RetriesExhaustedError(
                    f"Retries exhausted after {attempt + 1} attempts: {exc}",
                    hint="Check provider status or raise RetryPolicy.max_retries.",
                    retryable=False,
                    status_code=status,
                    provider=base_payload.get("provider"),
                    phase=getattr(exc, "phase", None),
                ) from exc

            attempt += 1
            delay = policy.delay_for(attempt)
            retry_after = _retry_after_from_error(exc)
            if retry_after is not None:
                delay = max(delay, retry_after)

            notifier.notify(
                event_name("retry_attempt", provider_level=True),
                {
                    **base_payload,
                    "attempt": attempt,
                    "max_retries": policy.max_retries,
                    "exception": type(exc).__name__,
                    "backoff_s": delay,
                },
            )
            logger.debug(
                "Retrying (%d/%d) in %.2fs after %s",
                attempt,
                policy.max_retries,
                delay,
                type(exc).__name__,
            )
            if delay > 0:
                await asyncio.sleep(delay)

"""Lifecycle events and subscribers.

Every provider phase publishes a named event (``prompt.switchboard``,
``retry_attempt.provider.switchboard``, ...) to a process-wide notifier.
Publishing is nearly free when nobody listens: the payload is still built by
the caller but no ``Event`` is created and no subscriber runs.

Subscribers are plain callables receiving an ``Event``. A failing subscriber
is logged and never breaks the call that emitted the event.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import re
import threading
import time
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

log = logging.getLogger(__name__)

NAMESPACE: Final[str] = "switchboard"

# Payload keys every provider event carries.
PROVIDER: Final[str] = "provider"
PROVIDER_MODULE: Final[str] = "provider_module"
TRACE_ID: Final[str] = "trace_id"


@dataclass(frozen=True)
class Event:
    """A published lifecycle event."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    start_wall_time_s: float = 0.0
    duration_s: float | None = None

    @property
    def suffix(self) -> str:
        """Event name without the ``switchboard`` namespace segments."""
        head, _, _ = self.name.partition(f".{NAMESPACE}")
        return head.removesuffix(".provider")


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``subscribe``; pass it to ``unsubscribe``."""

    pattern: re.Pattern[str] | str | None
    callback: Callable[[Event], Any]

    def matches(self, name: str) -> bool:
        if self.pattern is None:
            return True
        if isinstance(self.pattern, str):
            return self.pattern == name
        return self.pattern.search(name) is not None


class Notifier:
    """Thread-safe registry of event subscriptions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: tuple[Subscription, ...] = ()

    def subscribe(
        self,
        pattern: re.Pattern[str] | str | None,
        callback: Callable[[Event], Any],
    ) -> Subscription:
        """Register *callback* for events whose name matches *pattern*.

        A string matches exactly, a compiled regex matches with ``search``,
        and ``None`` matches every event.
        """
        subscription = Subscription(pattern, callback)
        with self._lock:
            self._subscriptions = (*self._subscriptions, subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions = tuple(
                s for s in self._subscriptions if s is not subscription
            )

    def listening(self, name: str) -> bool:
        return any(s.matches(name) for s in self._subscriptions)

    def publish(self, event: Event) -> None:
        for subscription in self._subscriptions:
            if not subscription.matches(event.name):
                continue
            try:
                subscription.callback(event)
            except Exception as e:
                log.error(
                    "Event subscriber '%s' failed on %s: %s",
                    getattr(subscription.callback, "__qualname__", subscription.callback),
                    event.name,
                    e,
                    exc_info=True,
                )

    def notify(self, name: str, payload: dict[str, Any] | None = None) -> None:
        """Publish an instantaneous event."""
        if not self.listening(name):
            return
        self.publish(Event(name, dict(payload or {}), time.time(), None))

    @contextmanager
    def instrument(
        self, name: str, payload: dict[str, Any] | None = None
    ) -> Iterator[dict[str, Any]]:
        """Time a block and publish *name* when it exits.

        Yields the mutable payload so the block can add fields it only
        learns at the end (usage, finish reason). If the block raises, the
        exception class and message are recorded under ``exception`` and the
        exception propagates.
        """
        data: dict[str, Any] = dict(payload or {})
        start_wall = time.time()
        start = time.perf_counter()
        try:
            yield data
        except BaseException as exc:
            data["exception"] = (type(exc).__name__, str(exc))
            raise
        finally:
            if self.listening(name):
                duration = time.perf_counter() - start
                self.publish(Event(name, data, start_wall, duration))


notifier = Notifier()


def subscribe(
    pattern: re.Pattern[str] | str | None, callback: Callable[[Event], Any]
) -> Subscription:
    """Subscribe to events on the process-wide notifier."""
    return notifier.subscribe(pattern, callback)


def unsubscribe(subscription: Subscription) -> None:
    notifier.unsubscribe(subscription)


@contextmanager
def subscribed(
    pattern: re.Pattern[str] | str | None, callback: Callable[[Event], Any]
) -> Iterator[Subscription]:
    """Subscribe for the duration of a ``with`` block."""
    subscription = notifier.subscribe(pattern, callback)
    try:
        yield subscription
    finally:
        notifier.unsubscribe(subscription)


def event_name(name: str, *, provider_level: bool = False) -> str:
    """Build a namespaced event name: ``prompt`` -> ``prompt.switchboard``."""
    if provider_level:
        return f"{name}.provider.{NAMESPACE}"
    return f"{name}.{NAMESPACE}"


class LogSubscriber:
    """Turn lifecycle events into log lines.

    Routine events log at DEBUG; retries, exhausted retries and connection
    errors log at WARNING so operators see them even when a retry succeeds.
    """

    _WARN = frozenset({"retry_attempt", "retry_exhausted", "connection_error"})

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(f"{NAMESPACE}.events")

    def __call__(self, event: Event) -> None:
        level = logging.WARNING if event.suffix in self._WARN else logging.DEBUG
        if not self.logger.isEnabledFor(level):
            return
        p = event.payload
        prefix = f"[{p.get(TRACE_ID)}] [Switchboard] [{p.get(PROVIDER_MODULE, '-')}]"
        self.logger.log(level, "%s %s", prefix, self._describe(event))

    def _describe(self, event: Event) -> str:
        p = event.payload
        timing = (
            f" in {event.duration_s * 1000:.1f}ms" if event.duration_s is not None else ""
        )
        match event.suffix:
            case "prompt":
                usage = p.get("usage") or {}
                return (
                    f"Prompt completed{timing}: model={p.get('model')} "
                    f"messages={p.get('message_count')} stream={p.get('stream')} "
                    f"tokens={usage.get('total_tokens')} finish={p.get('finish_reason')}"
                )
            case "embed":
                return (
                    f"Embed completed{timing}: model={p.get('model')} "
                    f"embeddings={p.get('embedding_count')}"
                )
            case "stream_open":
                return "Opening stream"
            case "stream_close":
                return "Closing stream"
            case "tool_call":
                return f"Executing tool: {p.get('tool_name')}{timing}"
            case "tool_choice_removed":
                return "Cleared forced tool_choice after tool use"
            case "retry_attempt":
                return (
                    f"Retry {p.get('attempt')}/{p.get('max_retries')} after "
                    f"{p.get('exception')} (backoff {p.get('backoff_s')}s)"
                )
            case "retry_exhausted":
                return f"Retries exhausted ({p.get('max_retries')}): {p.get('exception')}"
            case "connection_error":
                return (
                    f"Unable to reach {p.get('uri_base')}: "
                    f"{p.get('exception')}: {p.get('message')}"
                )
            case _:
                return f"{event.name}{timing}"


def attach_log_subscriber(logger: logging.Logger | None = None) -> Subscription:
    """Log every ``switchboard`` event through ``logging``."""
    pattern = re.compile(rf"\.{NAMESPACE}$")
    return notifier.subscribe(pattern, LogSubscriber(logger))

"""Explicit command dispatch table.

Maps action identifiers to handler callables so that a host application can
route named actions ("summarize", "translate", ...) to generation calls
without open-ended attribute lookups. Unknown identifiers fail loudly.

Example:
    actions = ActionTable()

    @actions.register("translate")
    async def translate(text: str) -> PromptResponse:
        return await switchboard.prompt({"messages": [text]}, service="Mock")

    response = await actions.adispatch("translate", "hello world")
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from switchboard.errors import ActionNotFoundError, ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)

F = TypeVar("F", bound="Callable[..., Any]")


class ActionTable:
    """Registry of named action handlers."""

    def __init__(self, name: str = "actions") -> None:
        self.name = name
        self._handlers: dict[str, Callable[..., Any]] = {}

    def register(self, action: str, *, replace: bool = False) -> Callable[[F], F]:
        """Decorator registering a handler under *action*."""
        if not action or not isinstance(action, str):
            raise ConfigurationError("Action identifiers must be non-empty strings")

        def decorator(handler: F) -> F:
            self.add(action, handler, replace=replace)
            return handler

        return decorator

    def add(
        self, action: str, handler: Callable[..., Any], *, replace: bool = False
    ) -> None:
        if not callable(handler):
            raise ConfigurationError(f"Handler for {action!r} is not callable")
        if action in self._handlers and not replace:
            raise ConfigurationError(
                f"Action {action!r} is already registered in {self.name}",
                hint="Pass replace=True to override the existing handler.",
            )
        self._handlers[action] = handler

    def get(self, action: str) -> Callable[..., Any]:
        try:
            return self._handlers[action]
        except KeyError:
            raise ActionNotFoundError(
                f"Unknown action {action!r} in {self.name}",
                hint=f"Registered actions: {', '.join(self.names()) or '(none)'}",
            ) from None

    def dispatch(self, action: str, *args: Any, **kwargs: Any) -> Any:
        """Call the handler for *action* and return whatever it returns."""
        handler = self.get(action)
        logger.debug("Dispatching %s.%s", self.name, action)
        return handler(*args, **kwargs)

    async def adispatch(self, action: str, *args: Any, **kwargs: Any) -> Any:
        """Like ``dispatch``, awaiting the result when the handler is async."""
        result = self.dispatch(action, *args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, action: object) -> bool:
        return action in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._handlers)

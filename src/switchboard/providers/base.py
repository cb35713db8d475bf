"""Provider orchestration engine.

``BaseProvider`` drives one logical call from a raw context to a final
``PromptResponse``: cast the context into a request, run API rounds until the
model stops asking for tools, and cast the accumulated conversation into the
common message model. Adapters subclass it and fill in the wire-specific
hooks (request building, execution, stream chunk handling, extraction).

Round structure, repeated until no tool calls remain:

1. prepare: clear a forced tool choice that has been used, merge the message
   stack into ``request.messages``
2. serialize the request to API parameters
3. execute under the retry policy (streamed rounds are consumed chunk by chunk)
4. extract messages onto the message stack and record the round's usage
5. run requested tools, push their results, go again
"""

from __future__ import annotations

from contextlib import contextmanager
import copy
import inspect
import logging
from typing import TYPE_CHECKING, Any, ClassVar

from switchboard.config import Config
from switchboard.errors import (
    APIError,
    ConfigurationError,
    StreamProtocolError,
    SwitchboardError,
    ToolLoopError,
)
from switchboard.instrumentation import (
    PROVIDER,
    PROVIDER_MODULE,
    TRACE_ID,
    event_name,
    notifier,
)
from switchboard.providers._errors import is_connection_error, wrap_provider_error
from switchboard.providers._tool_choice import should_clear_tool_choice
from switchboard.providers._utils import dump_tool_result, to_plain
from switchboard.responses import EmbedResponse, PromptResponse
from switchboard.retry import retry_async
from switchboard.usage import Usage

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from switchboard.messages import Message
    from switchboard.providers.models import RequestModel, ToolCall

logger = logging.getLogger(__name__)


def normalize_embed_data(raw: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Normalize an embeddings response into a list of ``{index, object, embedding}``.

    A ``list`` object passes its ``data`` through; a single ``embedding``
    object becomes a one-element list at index 0.
    """
    kind = raw.get("object")
    if kind == "list":
        return [dict(item) for item in raw.get("data") or []]
    if kind == "embedding":
        item = {k: raw[k] for k in ("object", "embedding") if k in raw}
        return [{**item, "index": 0}]
    raise APIError(
        f"Unexpected embed object type: {kind!r}",
        retryable=False,
        phase="embed",
    )


class BaseProvider:
    """Abstract request/response lifecycle shared by every adapter.

    One instance serves one logical call at a time; each call to ``prompt``
    or ``embed`` starts from fresh request, message and usage stacks.
    """

    service_name: ClassVar[str] = ""
    #: Value of ``provider_module`` in event payloads.
    tag_name: ClassVar[str] = ""
    request_class: ClassVar[type[RequestModel]]
    embed_request_class: ClassVar[type[RequestModel] | None] = None

    def __init__(
        self,
        config: Config | None = None,
        *,
        tools_function: Callable[..., Any] | None = None,
        stream_broadcaster: Callable[[Any, Any, str], Any] | None = None,
        trace_id: str | None = None,
    ) -> None:
        if config is None:
            config = Config.resolve(self.service_name)
        if config.service is not None and config.service != self.service_name:
            raise ConfigurationError(
                f"Unexpected service name: {config.service} != {self.service_name}",
                hint=f"Use provider_for({config.service!r}) to pick the matching adapter.",
            )
        self.config = config
        self.tools_function = tools_function
        self.stream_broadcaster = stream_broadcaster
        self.trace_id = trace_id
        self._client: Any = None
        self._reset({})

    def _reset(self, context: Mapping[str, Any]) -> None:
        self.context: dict[str, Any] = copy.deepcopy(dict(context))
        self.request: Any = None
        self.message_stack: list[dict[str, Any]] = []
        self.usage_stack: list[Usage] = []
        self.streaming = False
        self._round_finished = False
        self._round_response: Any = None

    # -- public API ------------------------------------------------------------

    async def prompt(self, context: Mapping[str, Any]) -> PromptResponse:
        """Run a full resolve cycle and return the final response."""
        self._reset(context)
        with self._instrument(event_name("prompt")) as payload:
            self.request = self.request_class.cast(self.context)
            response = await self._resolve_prompt()
            payload.update(self._prompt_payload(response.usage, response.finish_reason))
            payload["message_count"] = len(response.messages)
        return response

    async def embed(self, context: Mapping[str, Any]) -> EmbedResponse:
        """Run a single embeddings round."""
        if self.embed_request_class is None:
            raise ConfigurationError(
                f"{self.service_name} does not support embeddings",
                hint="Use the OpenAI, Ollama, OpenRouter or Mock provider for embed().",
            )
        self._reset(context)
        with self._instrument(event_name("embed")) as payload:
            self.request = self.embed_request_class.cast(self.context)
            response = await self._resolve_embed()
            payload.update(self._embed_payload(response))
        return response

    def preview(self, context: Mapping[str, Any]) -> str:
        """Render the request *context* would produce, without executing it."""
        from switchboard.preview import render_preview

        request = self.request_class.cast(copy.deepcopy(dict(context)))
        return render_preview(request.to_params())

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        close = getattr(client, "close", None)
        if close is not None:
            await close()

    # -- resolve loop ----------------------------------------------------------

    async def _resolve_prompt(self) -> PromptResponse:
        rounds = 0
        format_attempts = 0
        while True:
            rounds += 1
            if rounds > self.config.max_rounds:
                raise ToolLoopError(
                    f"Tool-calling loop exceeded {self.config.max_rounds} rounds",
                    hint="Raise Config.max_rounds or check that tools_function results let the model finish.",
                )

            self._prepare_round()
            params = self.request.to_params()
            mark = len(self.message_stack)
            with self._instrument(
                event_name("prompt", provider_level=True)
            ) as round_payload:
                raw = await self._run_round(params)
                if not params.get("stream"):
                    self.message_stack.extend(self.extract_messages(raw) or [])
                usage = self.extract_usage(raw) or Usage()
                self.usage_stack.append(usage)
                round_payload.update(self._prompt_payload(usage, self.finish_reason(raw)))
                round_payload["message_count"] = len(self.request.messages)

            round_messages = self.message_stack[mark:]
            if format_attempts < self.config.format_retries and self.round_needs_retry(
                round_messages
            ):
                format_attempts += 1
                logger.debug(
                    "Reissuing round for well-formed output (%d/%d)",
                    format_attempts,
                    self.config.format_retries,
                )
                del self.message_stack[mark:]
                continue

            tool_calls = self.extract_tool_calls(round_messages)
            if tool_calls:
                logger.debug("Round %d requested %d tool call(s)", rounds, len(tool_calls))
                await self._run_tools(tool_calls)
                continue

            self.broadcast_stream_close()
            return self._build_prompt_response(raw)

    async def _resolve_embed(self) -> EmbedResponse:
        params = self.request.to_params()
        with self._instrument(event_name("embed", provider_level=True)) as round_payload:
            raw = to_plain(await self._execute_with_retry("embed", params))
            data = self.extract_embed_data(raw)
            usage = self.extract_embed_usage(raw) or Usage()
            self.usage_stack.append(usage)
            round_payload.update(
                {
                    "model": params.get("model"),
                    "embedding_count": len(data),
                    "usage": usage.to_dict(),
                }
            )
        return EmbedResponse(
            context=self.context,
            data=tuple(data),
            raw_request=params,
            raw_response=raw,
            usages=tuple(self.usage_stack),
        )

    def _prepare_round(self) -> None:
        choice = getattr(self.request, "tool_choice", None)
        if should_clear_tool_choice(
            choice,
            self.used_function_names(),
            forces_required=self.tool_choice_forces_required(),
            forced_name=self.tool_choice_forced_name(),
        ):
            self.request.tool_choice = None
            notifier.notify(
                event_name("tool_choice_removed", provider_level=True),
                {**self._base_payload(), "tool_choice": choice},
            )
        self.append_messages(self.message_stack)
        self.message_stack = []
        self.prepare_round()

    async def _run_round(self, params: dict[str, Any]) -> Any:
        self._round_finished = False
        self._round_response = None
        result = await self._execute_with_retry("prompt", params)
        if not params.get("stream"):
            return to_plain(result)

        self.broadcast_stream_open()
        try:
            async for chunk in result:
                self.process_stream_chunk(to_plain(chunk))
        except SwitchboardError:
            raise
        except Exception as exc:
            raise wrap_provider_error(
                exc, provider=self.service_name, phase="stream", allow_network_errors=False
            ) from exc
        if not self._round_finished:
            raise StreamProtocolError(
                f"{self.service_name} stream ended before the message completed",
            )
        return self._round_response

    async def _execute_with_retry(self, phase: str, params: dict[str, Any]) -> Any:
        async def attempt() -> Any:
            try:
                if phase == "embed":
                    return await self.api_embed_execute(params)
                return await self.api_prompt_execute(params)
            except Exception as exc:
                if isinstance(exc, SwitchboardError) and not isinstance(exc, APIError):
                    raise
                if is_connection_error(exc):
                    notifier.notify(
                        event_name("connection_error", provider_level=True),
                        {
                            **self._base_payload(),
                            "uri_base": self.uri_base,
                            "exception": type(exc).__name__,
                            "message": str(exc),
                        },
                    )
                wrapped = wrap_provider_error(exc, provider=self.service_name, phase=phase)
                if wrapped is exc:
                    raise
                raise wrapped from exc

        return await retry_async(
            attempt, policy=self.config.retry, payload=self._base_payload()
        )

    async def _run_tools(self, tool_calls: list[ToolCall]) -> None:
        if self.tools_function is None:
            raise ConfigurationError(
                f"Model requested tool {tool_calls[0].name!r} but no tools_function is configured",
                hint="Pass tools_function=callable(name, **arguments) to the provider.",
            )
        for call in tool_calls:
            with self._instrument(event_name("tool_call"), {"tool_name": call.name}):
                result = self.tools_function(call.name, **call.arguments)
                if inspect.isawaitable(result):
                    result = await result
            self.message_stack.append(
                self.tool_result_message(call, dump_tool_result(result))
            )

    def _build_prompt_response(self, raw: Any) -> PromptResponse:
        conversation = [*self.request.messages, *self.message_stack]
        return PromptResponse(
            context=self.context,
            messages=tuple(self.cast_messages(conversation)),
            raw_request=self.request.to_params(),
            raw_response=raw,
            usages=tuple(self.usage_stack),
            format=self.response_format(),
            finish_reason=self.finish_reason(raw),
        )

    # -- streaming -------------------------------------------------------------

    def finish_round(self, raw_response: Any) -> None:
        """Mark the streamed round complete; *raw_response* stands in for the API response."""
        self._round_finished = True
        self._round_response = raw_response

    def broadcast_stream_open(self) -> None:
        if self.streaming:
            return
        self.streaming = True
        notifier.notify(event_name("stream_open"), self._base_payload())
        if self.stream_broadcaster is not None:
            self.stream_broadcaster(None, None, "open")

    def broadcast_stream_update(self, message: Any, delta: Any = None) -> None:
        if self.stream_broadcaster is not None:
            self.stream_broadcaster(message, delta, "update")

    def broadcast_stream_close(self) -> None:
        if not self.streaming:
            return
        self.streaming = False
        notifier.notify(event_name("stream_close"), self._base_payload())
        if self.stream_broadcaster is not None:
            last = self.message_stack[-1] if self.message_stack else None
            self.stream_broadcaster(last, None, "close")

    # -- instrumentation -------------------------------------------------------

    @property
    def provider_module(self) -> str:
        return self.tag_name or self.service_name

    def _base_payload(self) -> dict[str, Any]:
        return {
            PROVIDER: self.service_name,
            PROVIDER_MODULE: self.provider_module,
            TRACE_ID: self.trace_id,
        }

    @contextmanager
    def _instrument(
        self, name: str, payload: dict[str, Any] | None = None
    ) -> Iterator[dict[str, Any]]:
        with notifier.instrument(name, {**self._base_payload(), **(payload or {})}) as data:
            yield data

    def _prompt_payload(self, usage: Usage, finish_reason: str | None) -> dict[str, Any]:
        tools = getattr(self.request, "tools", None) or []
        return {
            "model": getattr(self.request, "model", None),
            "stream": bool(getattr(self.request, "stream", False)),
            "usage": usage.to_dict(),
            "finish_reason": finish_reason,
            "has_tools": bool(tools),
            "tool_count": len(tools),
        }

    def _embed_payload(self, response: EmbedResponse) -> dict[str, Any]:
        raw_input = getattr(self.request, "input", None)
        size = len(raw_input) if isinstance(raw_input, list) else 1
        return {
            "model": getattr(self.request, "model", None),
            "input_size": size,
            "embedding_count": len(response.data),
            "usage": response.usage.to_dict(),
        }

    # -- adapter hooks ---------------------------------------------------------

    @property
    def uri_base(self) -> str | None:
        """Base URI of the upstream API, reported on connection errors."""
        return self.config.base_url

    async def api_prompt_execute(self, params: dict[str, Any]) -> Any:
        raise NotImplementedError

    async def api_embed_execute(self, params: dict[str, Any]) -> Any:
        raise NotImplementedError

    def process_stream_chunk(self, chunk: dict[str, Any]) -> None:
        raise NotImplementedError

    def extract_messages(self, raw: Any) -> list[dict[str, Any]] | None:
        raise NotImplementedError

    def extract_usage(self, raw: Any) -> Usage | None:
        if isinstance(raw, dict):
            return Usage.from_provider_usage(raw.get("usage"))
        return None

    def extract_tool_calls(self, messages: list[dict[str, Any]]) -> list[ToolCall]:
        raise NotImplementedError

    def tool_result_message(self, call: ToolCall, content: str) -> dict[str, Any]:
        raise NotImplementedError

    def cast_messages(self, messages: list[dict[str, Any]]) -> list[Message]:
        raise NotImplementedError

    def finish_reason(self, raw: Any) -> str | None:
        return None

    def used_function_names(self) -> set[str]:
        """Names of tools called in the messages not yet merged into the request."""
        return {call.name for call in self.extract_tool_calls(self.message_stack)}

    def tool_choice_forces_required(self) -> bool:
        return getattr(self.request, "tool_choice", None) == "required"

    def tool_choice_forced_name(self) -> str | None:
        return None

    def append_messages(self, messages: list[dict[str, Any]]) -> None:
        self.request.messages.extend(messages)

    def prepare_round(self) -> None:
        """Adjust the request right before it is serialized for a round."""

    def round_needs_retry(self, messages: list[dict[str, Any]]) -> bool:
        return False

    def response_format(self) -> dict[str, Any] | None:
        fmt = getattr(self.request, "response_format", None)
        return dict(fmt) if isinstance(fmt, dict) else None

    def extract_embed_data(self, raw: Mapping[str, Any]) -> list[dict[str, Any]]:
        return normalize_embed_data(raw)

    def extract_embed_usage(self, raw: Mapping[str, Any]) -> Usage | None:
        return Usage.from_openai_embedding(raw.get("usage"))

"""Shared utilities for provider implementations."""

from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
import json
from types import SimpleNamespace
from typing import Any

from pydantic import BaseModel

from switchboard.errors import ConfigurationError


def to_plain(obj: Any) -> Any:
    """Normalize SDK objects, mappings and namespaces into plain dicts/lists.

    Applying it twice gives the same result as applying it once.
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, BaseModel):
        return to_plain(obj.model_dump(mode="json", by_alias=True, exclude_none=True))
    if isinstance(obj, Mapping):
        return {str(k): to_plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_plain(v) for v in obj]
    if isinstance(obj, SimpleNamespace):
        return to_plain(vars(obj))
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_plain(to_dict())
    return obj


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Normalize a JSON schema for strict structured-output requirements.

    Ensures that for all 'object' types:
    1. additionalProperties is False
    2. All defined properties are listed in 'required'
    """
    normalized = deepcopy(schema)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node

        updated: dict[str, Any] = {}
        for key, value in node.items():
            updated[key] = walk(value)

        if updated.get("type") == "object" or "properties" in updated:
            properties = updated.get("properties", {})
            if isinstance(properties, dict):
                updated["additionalProperties"] = False
                if "required" not in updated:
                    updated["required"] = list(properties.keys())

        return updated

    result = walk(normalized)
    if not isinstance(result, dict):
        raise ConfigurationError("Invalid response schema: expected object schema")
    return result


def normalize_response_format(value: Any) -> dict[str, Any] | None:
    """Accept ``"json_object"``, a format dict, or a pydantic model class.

    Returns the OpenAI-style ``{"type": ..., "json_schema": {...}}`` form.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if value not in ("text", "json_object", "json_schema"):
            raise ConfigurationError(
                f"Unknown response_format: {value!r}",
                hint="Use 'text', 'json_object', a json_schema dict, or a BaseModel class.",
            )
        return {"type": value}
    if isinstance(value, type) and issubclass(value, BaseModel):
        return {
            "type": "json_schema",
            "json_schema": {
                "name": value.__name__,
                "schema": to_strict_schema(value.model_json_schema()),
                "strict": True,
            },
        }
    if isinstance(value, Mapping):
        fmt = dict(value)
        if "type" not in fmt:
            raise ConfigurationError(
                "response_format dict needs a 'type' key",
                hint="Pass {'type': 'json_object'} or {'type': 'json_schema', ...}.",
            )
        return fmt
    raise ConfigurationError(
        f"response_format must be a string, dict or BaseModel class, got {type(value).__name__}"
    )


def tool_spec(tool: Mapping[str, Any]) -> tuple[str, str | None, dict[str, Any]]:
    """Return ``(name, description, parameters)`` of a tool in any known shape.

    Understands the common ``{name, description, parameters}`` form, Chat
    ``{"type": "function", "function": {...}}``, and Anthropic
    ``{name, description, input_schema}``.
    """
    spec: Mapping[str, Any] = tool
    if isinstance(tool.get("function"), Mapping):
        spec = tool["function"]
    name = spec.get("name")
    if not isinstance(name, str) or not name:
        raise ConfigurationError(
            "Tool definitions need a string 'name'",
            hint="Pass tools=[{'name': 'lookup', 'description': ..., 'parameters': {...}}].",
        )
    params = spec.get("parameters") or spec.get("input_schema") or {
        "type": "object",
        "properties": {},
    }
    return name, spec.get("description"), dict(params)


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Parse tool-call arguments that may arrive as JSON text or a dict."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            f"Tool call arguments are not valid JSON: {raw!r}",
        ) from e
    if not isinstance(parsed, dict):
        return {"value": parsed}
    return parsed


def dump_tool_result(value: Any) -> str:
    """Serialize a tool result for the provider's tool-result message."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return False
    return True


def text_of(content: Any) -> str:
    """Concatenate the text parts of a wire-shaped content value."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(part.get("text", ""))
            for part in content
            if isinstance(part, Mapping)
            and part.get("type") in ("text", "input_text", "output_text")
        )
    return str(content)


def drop_index_keys(value: Any) -> Any:
    """Strip the streaming ``index`` bookkeeping keys from nested dicts."""
    if isinstance(value, dict):
        return {k: drop_index_keys(v) for k, v in value.items() if k != "index"}
    if isinstance(value, list):
        return [drop_index_keys(v) for v in value]
    return value

"""Markdown preview of a built request, for debugging and UIs."""

from __future__ import annotations

import json
from typing import Any

import yaml

from switchboard.errors import ConfigurationError
from switchboard.providers._utils import text_of, tool_spec


def render_preview(params: dict[str, Any]) -> str:
    """Render API parameters as markdown.

    The scalar parameters come first as a YAML block, then the
    instructions, messages and tools sections, separated by ``---``.
    """
    params = dict(params)
    sections: list[str] = []

    instructions = params.pop("instructions", None) or params.pop("system", None)
    if instructions:
        sections.append(_render_instructions(instructions))

    messages = params.pop("messages", None) or params.pop("input", None)
    if messages:
        sections.append(_render_messages(messages))

    tools = params.pop("tools", None)
    if tools:
        sections.append(_render_tools(tools))

    head = yaml.safe_dump(params, sort_keys=False, default_flow_style=False).rstrip("\n")
    return "\n---\n".join([head, *sections])


def _render_instructions(instructions: Any) -> str:
    return f"## Instructions\n{text_of(instructions)}"


def _render_messages(messages: Any) -> str:
    if isinstance(messages, (str, dict)):
        messages = [messages]
    rendered = [_render_message(m, i) for i, m in enumerate(messages, start=1)]
    return "## Messages\n\n" + "\n\n".join(rendered)


def _render_message(message: Any, index: int) -> str:
    if isinstance(message, str):
        return f"### Message {index} (User)\n{message}"
    role = str(message.get("role") or message.get("type") or "user")
    content = message.get("content")
    if isinstance(content, list):
        body = " ".join(
            str(block.get("text", ""))
            for block in content
            if isinstance(block, dict) and block.get("type") in ("text", "input_text")
        )
    elif content is None:
        body = message.get("output") or message.get("arguments") or ""
    else:
        body = str(content)
    return f"### Message {index} ({role.capitalize()})\n{body}"


def _render_tools(tools: list[dict[str, Any]]) -> str:
    parts = ["## Tools\n"]
    for index, tool in enumerate(tools, start=1):
        try:
            name, description, parameters = tool_spec(tool)
        except ConfigurationError:
            name, description, parameters = f"Tool {index}", None, None
        parts.append(f"### {name}\n**Description:** {description or 'No description'}\n")
        if parameters:
            parts.append(
                f"**Parameters:**\n```json\n{json.dumps(parameters, indent=2)}\n```\n"
            )
    return "\n".join(parts).rstrip("\n")

"""Forced tool-choice clearing.

A ``tool_choice`` that forces a tool ("required", or one named tool) would
make the model call it again on every round. Once the forced tool has been
used in the current resolve cycle the choice is dropped so the model can
answer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Collection


def should_clear_tool_choice(
    tool_choice: Any,
    used_names: Collection[str],
    *,
    forces_required: bool,
    forced_name: str | None,
) -> bool:
    """Return True when *tool_choice* has done its job.

    - forcing any tool: clear as soon as any tool has been used
    - forcing a named tool: clear once that tool has been used
    """
    if tool_choice is None or not used_names:
        return False
    if forces_required:
        return True
    return forced_name is not None and forced_name in used_names

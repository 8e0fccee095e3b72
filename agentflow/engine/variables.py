"""``{{ name }}`` placeholder substitution in agent instructions."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from agentflow.engine.types import ExecutionState

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w-]*(?:\.[\w-]+)*)\s*\}\}")

_MISSING = object()


def _lookup(variables: Mapping[str, Any], path: str) -> Any:
    value: Any = variables
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def substitute_variables(template: str, state: ExecutionState) -> str:
    """Replace ``{{var}}`` and ``{{var.path}}`` with values from the state.

    Non-string values are JSON-encoded. Unknown placeholders are left as-is.
    """
    if not template or "{{" not in template:
        return template

    def _replace(match: re.Match[str]) -> str:
        value = _lookup(state.variables, match.group(1))
        if value is _MISSING or value is None:
            return match.group(0)
        return _render(value)

    return _PLACEHOLDER_RE.sub(_replace, template)

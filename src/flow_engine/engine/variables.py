"""Variable templates used in node configs.

A template looks like `{{$context.data.title}}`. A string that is exactly one
template resolves to the raw value; templates embedded in longer strings are
rendered as text. Dicts and lists are resolved recursively.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

TEMPLATE_RE = re.compile(r"{{\s*([^{}]+?)\s*}}")


def get_path(scope: Any, path: str) -> Any:
    """Follow a dotted path through mappings, sequences and attributes."""

    current = scope
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            current = getattr(current, part, None)
    return current() if callable(current) else current


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse(value: Any, scope: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        whole = TEMPLATE_RE.fullmatch(value.strip())
        if whole is not None:
            return get_path(scope, whole.group(1))
        return TEMPLATE_RE.sub(lambda m: _render(get_path(scope, m.group(1))), value)
    if isinstance(value, Mapping):
        return {k: parse(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [parse(item, scope) for item in value]
    return value

"""Built-in functions exposed to templates under `$system`."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from flow_engine.engine.registry import Registry

CustomFunction = Callable[[], Any]


def now() -> str:
    return datetime.now(tz=UTC).isoformat()


def register_builtin_functions(registry: Registry[CustomFunction]) -> None:
    registry.register("now", now)


def system_scope(registry: Registry[CustomFunction]) -> dict[str, CustomFunction]:
    # Values stay callables; templates call them lazily on lookup.
    return {name: registry.get(name) for name in registry}

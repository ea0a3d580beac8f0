"""Trigger contract.

A trigger type decides when a workflow of that type should run. There is one
instance per type, shared by all workflows of the type; `on`/`off` attach and
detach the listener bound to one workflow's config.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flow_engine.engine.events import EventOptions
from flow_engine.engine.models import Workflow

if TYPE_CHECKING:
    from flow_engine.engine.dispatcher import WorkflowEngine


class Trigger:
    # `None` defers to the workflow's own `sync` flag.
    sync: bool | None = None

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine

    def on(self, workflow: Workflow) -> None:
        raise NotImplementedError

    def off(self, workflow: Workflow) -> None:
        raise NotImplementedError

    def validate_event(self, workflow: Workflow, context: Any, options: EventOptions) -> bool:
        """Return False to discard an event without creating an execution."""

        return True

"""Fires workflows on record changes in a collection.

Config:
  - `collection`: collection name
  - `mode`: bitmask of CREATE (1), UPDATE (2), DESTROY (4)
  - `changed`: field names; update events touching none of them are ignored
  - `condition`: record filter, checked when the event is validated
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from flow_engine.engine.events import EventOptions
from flow_engine.engine.models import Workflow
from flow_engine.store.base import match_filter
from flow_engine.triggers.base import Trigger

if TYPE_CHECKING:
    from flow_engine.engine.dispatcher import WorkflowEngine

logger = logging.getLogger(__name__)

MODE_CREATE = 1
MODE_UPDATE = 2
MODE_DESTROY = 4

_MODE_EVENTS: dict[int, str] = {
    MODE_CREATE: "after_create",
    MODE_UPDATE: "after_update",
    MODE_DESTROY: "after_destroy",
}


class CollectionTrigger(Trigger):
    def __init__(self, engine: WorkflowEngine) -> None:
        super().__init__(engine)
        self._lock = threading.Lock()
        self._listeners: dict[int, list[tuple[str, Callable[..., None]]]] = {}

    def on(self, workflow: Workflow) -> None:
        collection = workflow.config.get("collection")
        mode = int(workflow.config.get("mode") or 0)
        if not collection or not mode:
            logger.warning(
                "Collection trigger is missing collection or mode",
                extra={"workflow_id": workflow.id},
            )
            return
        if workflow.id is None:
            raise ValueError("Workflow must be saved before its trigger is attached")

        self.off(workflow)
        listeners = []
        for bit, suffix in _MODE_EVENTS.items():
            if not mode & bit:
                continue
            event = f"{collection}.{suffix}"
            listener = self._make_listener(workflow, bit)
            self.engine.store.hooks.on(event, listener)
            listeners.append((event, listener))
        with self._lock:
            self._listeners[workflow.id] = listeners

    def off(self, workflow: Workflow) -> None:
        if workflow.id is None:
            return
        with self._lock:
            listeners = self._listeners.pop(workflow.id, [])
        for event, listener in listeners:
            self.engine.store.hooks.off(event, listener)

    def _make_listener(self, workflow: Workflow, bit: int) -> Callable[..., None]:
        workflow_id = workflow.id
        if workflow_id is None:
            raise ValueError("Workflow must be saved before its trigger is attached")
        watched = set(workflow.config.get("changed") or [])

        def listener(record: dict[str, Any], changed: list[str]) -> None:
            if bit == MODE_UPDATE and watched and not watched.intersection(changed):
                return
            # Always trigger with the latest cached version of the workflow.
            current = self.engine.enabled_cache.get(workflow_id, workflow)
            self.engine.trigger(current, {"data": record})

        return listener

    def validate_event(self, workflow: Workflow, context: Any, options: EventOptions) -> bool:
        condition = workflow.config.get("condition")
        if not condition:
            return True
        data = context.get("data") if isinstance(context, dict) else None
        if not isinstance(data, dict):
            return False
        return match_filter(data, condition)

    def execute(self, workflow: Workflow, context: Any, options: EventOptions) -> Any:
        """Run the workflow manually against the stored version of `context["data"]`."""

        data = context.get("data") if isinstance(context, dict) else None
        collection = workflow.config.get("collection")
        if isinstance(data, dict) and "id" in data and collection:
            found = self.engine.store.find_records(
                collection, {"id": data["id"]}, limit=1, transaction=options.transaction
            )
            if found:
                context = {**context, "data": found[0]}
        return self.engine.trigger(workflow, context, replace(options, manually=True))

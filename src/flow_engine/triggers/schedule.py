"""Fires workflows on a fixed interval.

Config:
  - `every_seconds`: interval between ticks
  - `limit`: stop creating executions once the workflow (all versions) has run
    this many times
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from flow_engine.engine.events import EventOptions
from flow_engine.engine.models import Workflow
from flow_engine.triggers.base import Trigger

if TYPE_CHECKING:
    from flow_engine.engine.dispatcher import WorkflowEngine

logger = logging.getLogger(__name__)


class ScheduleTrigger(Trigger):
    def __init__(self, engine: WorkflowEngine) -> None:
        super().__init__(engine)
        self._lock = threading.Lock()
        self._timers: dict[int, threading.Event] = {}

    def on(self, workflow: Workflow) -> None:
        interval = float(workflow.config.get("every_seconds") or 0)
        if interval <= 0:
            logger.warning(
                "Schedule trigger needs a positive every_seconds",
                extra={"workflow_id": workflow.id},
            )
            return
        if workflow.id is None:
            raise ValueError("Workflow must be saved before its trigger is attached")

        self.off(workflow)
        stop = threading.Event()
        with self._lock:
            self._timers[workflow.id] = stop

        thread = threading.Thread(
            target=self._tick,
            name=f"schedule-{workflow.id}",
            daemon=True,
            kwargs={"workflow_id": workflow.id, "interval": interval, "stop": stop},
        )
        thread.start()

    def off(self, workflow: Workflow) -> None:
        if workflow.id is None:
            return
        with self._lock:
            stop = self._timers.pop(workflow.id, None)
        if stop is not None:
            stop.set()

    def _tick(self, *, workflow_id: int, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            workflow = self.engine.enabled_cache.get(workflow_id)
            if workflow is None:
                return
            now = datetime.now(tz=UTC)
            try:
                self.engine.trigger(
                    workflow,
                    {"date": now.isoformat()},
                    EventOptions(event_key=f"{workflow_id}@{now.timestamp()}"),
                )
            except Exception:
                logger.exception("Schedule tick failed", extra={"workflow_id": workflow_id})

    def validate_event(self, workflow: Workflow, context: Any, options: EventOptions) -> bool:
        limit = workflow.config.get("limit")
        if limit is None:
            return True
        return workflow.all_executed < int(limit)

    def execute(self, workflow: Workflow, context: Any, options: EventOptions) -> Any:
        if not context:
            context = {"date": datetime.now(tz=UTC).isoformat()}
        return self.engine.trigger(workflow, context, replace(options, manually=True))

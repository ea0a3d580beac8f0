"""Test configuration and fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from flow_engine.engine.config import EngineSettings
from flow_engine.engine.dispatcher import WorkflowEngine
from flow_engine.engine.models import FlowNode, JobStatus, Workflow
from flow_engine.instructions.base import Instruction, JobResult
from flow_engine.store import JsonStore


def wait_until(predicate: Callable[[], Any], timeout: float = 5.0) -> Any:
    """Poll `predicate` until it returns something truthy, or fail."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


def chain(*specs: tuple[str, dict[str, Any]]) -> list[FlowNode]:
    """Build a linear node chain from `(type, config)` pairs; ids start at 1."""
    nodes = []
    for index, (type_, config) in enumerate(specs, start=1):
        nodes.append(
            FlowNode(
                id=index,
                key=f"n{index}",
                type=type_,
                config=config,
                upstream_id=index - 1 if index > 1 else None,
                downstream_id=index + 1 if index < len(specs) else None,
            )
        )
    return nodes


class BlockingInstruction(Instruction):
    """Records overlapping runs and blocks until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.started = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.intervals: list[tuple[float, float]] = []

    def run(self, node, prev_job, processor) -> JobResult:  # type: ignore[no-untyped-def]
        began = time.monotonic()
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        self.release.wait(timeout=5)
        with self._lock:
            self.active -= 1
            self.intervals.append((began, time.monotonic()))
        return JobResult(status=JobStatus.RESOLVED, result=processor.execution.id)


class FailingInstruction(Instruction):
    def run(self, node, prev_job, processor) -> JobResult:  # type: ignore[no-untyped-def]
        raise RuntimeError("instruction exploded")


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Provide engine settings isolated from the environment."""
    return EngineSettings(
        _env_file=None,
        state_path=tmp_path / "store.json",
        checker_interval_seconds=60,
    )


@pytest.fixture
def store() -> JsonStore:
    """Provide an in-memory store."""
    return JsonStore()


@pytest.fixture
def engine(store: JsonStore, settings: EngineSettings) -> Iterator[WorkflowEngine]:
    """Provide an engine that is torn down after the test."""
    flow = WorkflowEngine(store, settings)
    yield flow
    if flow.ready:
        flow.teardown()


@pytest.fixture
def blocking(engine: WorkflowEngine) -> Iterator[BlockingInstruction]:
    instruction = BlockingInstruction()
    engine.register_instruction("block", instruction)
    yield instruction
    instruction.release.set()


@pytest.fixture
def make_workflow(engine: WorkflowEngine) -> Callable[..., Workflow]:
    """Save an enabled collection workflow without trigger listeners."""

    def factory(nodes: list[FlowNode], **values: Any) -> Workflow:
        values.setdefault("type", "collection")
        values.setdefault("enabled", True)
        return engine.save_workflow(Workflow(nodes=nodes, **values))

    return factory

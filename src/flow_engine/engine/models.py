"""Persisted workflow domain records.

Workflows, executions and jobs are pydantic models so the store can persist
them as plain JSON and hand out fresh copies on every read.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class ExecutionStatus(str, Enum):
    QUEUEING = "queueing"
    STARTED = "started"
    RESOLVED = "resolved"
    FAILED = "failed"
    ERROR = "error"
    ABORTED = "aborted"
    CANCELED = "canceled"
    REJECTED = "rejected"
    RETRY_NEEDED = "retry_needed"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.QUEUEING, ExecutionStatus.STARTED)


class JobStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"
    ERROR = "error"
    ABORTED = "aborted"
    CANCELED = "canceled"
    REJECTED = "rejected"
    RETRY_NEEDED = "retry_needed"


TERMINAL_EXECUTION_STATUSES: frozenset[ExecutionStatus] = frozenset(
    status for status in ExecutionStatus if status.is_terminal
)

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.QUEUEING: frozenset({ExecutionStatus.STARTED}) | TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus.STARTED: TERMINAL_EXECUTION_STATUSES,
}

# A pending job leaves its execution running; every other job status ends the
# execution with the status of the same name.
JOB_TO_EXECUTION_STATUS: dict[JobStatus, ExecutionStatus] = {
    JobStatus.PENDING: ExecutionStatus.STARTED,
    JobStatus.RESOLVED: ExecutionStatus.RESOLVED,
    JobStatus.FAILED: ExecutionStatus.FAILED,
    JobStatus.ERROR: ExecutionStatus.ERROR,
    JobStatus.ABORTED: ExecutionStatus.ABORTED,
    JobStatus.CANCELED: ExecutionStatus.CANCELED,
    JobStatus.REJECTED: ExecutionStatus.REJECTED,
    JobStatus.RETRY_NEEDED: ExecutionStatus.RETRY_NEEDED,
}


class IllegalTransitionError(ValueError):
    pass


def check_transition(current: ExecutionStatus, to: ExecutionStatus) -> None:
    """Executions only move forward: QUEUEING -> STARTED -> terminal."""

    allowed = ALLOWED_TRANSITIONS.get(current, frozenset())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")


class FlowNode(BaseModel):
    """One instruction node of a workflow graph.

    `downstream_id` points to the next node of the same chain. A node whose
    `branch_index` is set starts a branch of its upstream node.
    """

    id: int
    key: str = Field(default_factory=lambda: uuid.uuid4().hex[:11])
    type: str
    title: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    upstream_id: int | None = None
    downstream_id: int | None = None
    branch_index: int | None = None


class WorkflowOptions(BaseModel):
    delete_execution_on_status: list[ExecutionStatus] = Field(default_factory=list)


class Workflow(BaseModel):
    id: int | None = None
    key: str = Field(default_factory=lambda: uuid.uuid4().hex[:11])
    title: str = ""
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = False
    # `None` rather than `False` for non-current versions, so that a unique
    # (key, current) index never collides.
    current: bool | None = None
    sync: bool = False
    executed: int = 0
    all_executed: int = 0
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)
    nodes: list[FlowNode] = Field(default_factory=list)

    created_at: str = Field(default_factory=utc_iso_now)
    updated_at: str = Field(default_factory=utc_iso_now)


class Execution(BaseModel):
    id: int | None = None
    workflow_id: int
    key: str
    event_key: str = Field(default_factory=lambda: uuid.uuid4().hex)
    context: Any = None
    status: ExecutionStatus = ExecutionStatus.QUEUEING

    created_at: str = Field(default_factory=utc_iso_now)
    updated_at: str = Field(default_factory=utc_iso_now)

    # Relation attached by the engine or the store; never persisted with the row.
    workflow: Workflow | None = Field(default=None, exclude=True)


class Job(BaseModel):
    id: int | None = None
    execution_id: int
    node_id: int
    node_key: str
    upstream_id: int | None = None
    status: JobStatus = JobStatus.PENDING
    result: Any = None

    created_at: str = Field(default_factory=utc_iso_now)
    updated_at: str = Field(default_factory=utc_iso_now)

    execution: Execution | None = Field(default=None, exclude=True)

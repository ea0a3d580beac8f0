"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from flow_engine.engine.models import Execution, FlowNode, Job, JobStatus, WorkflowOptions


class Health(BaseModel):
    status: str = "ok"
    ready: bool


class WorkflowCreate(BaseModel):
    type: str
    key: str | None = None
    title: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = False
    sync: bool = False
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)
    nodes: list[FlowNode] = Field(default_factory=list)


class WorkflowUpdate(BaseModel):
    title: str | None = None
    config: dict[str, Any] | None = None
    enabled: bool | None = None
    sync: bool | None = None
    options: WorkflowOptions | None = None
    nodes: list[FlowNode] | None = None


class RevisionRequest(BaseModel):
    title: str | None = None


class TriggerRequest(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)


class JobResumeRequest(BaseModel):
    status: JobStatus = JobStatus.RESOLVED
    result: Any = None


class ExecutionDetail(BaseModel):
    execution: Execution
    jobs: list[Job] = Field(default_factory=list)

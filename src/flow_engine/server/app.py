"""FastAPI app factory.

Endpoints are thin wrappers over :class:`flow_engine.engine.dispatcher.WorkflowEngine`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from flow_engine import __version__
from flow_engine.engine.config import EngineSettings
from flow_engine.engine.dispatcher import WorkflowEngine
from flow_engine.engine.models import (
    Execution,
    ExecutionStatus,
    IllegalTransitionError,
    Job,
    JobStatus,
    Workflow,
)
from flow_engine.engine.registry import UnknownTypeError, UnsupportedOperationError
from flow_engine.server.config import ServerSettings
from flow_engine.server.models import (
    ExecutionDetail,
    Health,
    JobResumeRequest,
    RevisionRequest,
    TriggerRequest,
    WorkflowCreate,
    WorkflowUpdate,
)
from flow_engine.store import IntegrityError, JsonStore, NotFoundError

logger = logging.getLogger(__name__)


def build_engine(settings: EngineSettings | None = None) -> WorkflowEngine:
    settings = settings or EngineSettings()
    store = JsonStore(settings.state_path, single_writer=settings.single_writer)
    return WorkflowEngine(store, settings)


def create_app(engine: WorkflowEngine | None = None) -> FastAPI:
    """Build the API app.

    When no engine is passed, one is built from :class:`EngineSettings` and
    started/stopped with the app. A passed engine is managed by the caller.
    """

    settings = ServerSettings()
    owns_engine = engine is None
    flow = engine if engine is not None else build_engine()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if owns_engine:
            flow.init()
        try:
            yield
        finally:
            if owns_engine:
                flow.teardown()

    app = FastAPI(
        title="flow-engine",
        version=__version__,
        description="REST API over the flow-engine workflow engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = flow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = flow.store

    def _workflow_or_404(workflow_id: int) -> Workflow:
        workflow = store.get_workflow(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return workflow

    def _execution_or_404(execution_id: int) -> Execution:
        execution = store.get_execution(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return execution

    def _detail(execution: Execution, jobs: list[Job] | None = None) -> ExecutionDetail:
        if jobs is None:
            assert execution.id is not None
            jobs = store.list_jobs(execution.id)
        return ExecutionDetail(execution=execution, jobs=jobs)

    @app.get("/api/health", response_model=Health)
    def health() -> Health:
        return Health(ready=flow.ready)

    @app.get("/api/workflows", response_model=list[Workflow])
    def list_workflows(enabled: bool | None = None, key: str | None = None) -> list[Workflow]:
        return store.list_workflows(enabled=enabled, key=key)

    @app.post("/api/workflows", response_model=Workflow, status_code=201)
    def create_workflow(req: WorkflowCreate) -> Workflow:
        values: dict[str, Any] = req.model_dump(exclude_none=True)
        try:
            return flow.save_workflow(Workflow.model_validate(values))
        except IntegrityError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

    @app.get("/api/workflows/{workflow_id}", response_model=Workflow)
    def get_workflow(workflow_id: int) -> Workflow:
        return _workflow_or_404(workflow_id)

    @app.patch("/api/workflows/{workflow_id}", response_model=Workflow)
    def update_workflow(workflow_id: int, req: WorkflowUpdate) -> Workflow:
        workflow = _workflow_or_404(workflow_id)
        changes = req.model_dump(exclude_unset=True, exclude_none=True)
        updated = Workflow.model_validate({**workflow.model_dump(), **changes})
        try:
            return flow.save_workflow(updated)
        except IntegrityError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

    @app.delete("/api/workflows/{workflow_id}", response_model=Workflow)
    def delete_workflow(workflow_id: int) -> Workflow:
        try:
            return flow.destroy_workflow(workflow_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail="Workflow not found") from e

    @app.post("/api/workflows/{workflow_id}/revision", response_model=Workflow, status_code=201)
    def create_revision(workflow_id: int, req: RevisionRequest | None = None) -> Workflow:
        values = req.model_dump(exclude_none=True) if req is not None else {}
        try:
            return flow.create_revision(workflow_id, values=values)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail="Workflow not found") from e

    @app.post("/api/workflows/{workflow_id}/trigger", response_model=ExecutionDetail)
    def trigger_workflow(workflow_id: int, req: TriggerRequest) -> ExecutionDetail:
        workflow = _workflow_or_404(workflow_id)
        if not flow.ready:
            raise HTTPException(status_code=503, detail="Engine is not ready")
        try:
            processor = flow.execute(workflow, req.context)
        except (UnknownTypeError, UnsupportedOperationError) as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        if processor is None:
            raise HTTPException(status_code=422, detail="Event was rejected or failed")
        # The execution may already be deleted by `delete_execution_on_status`.
        return _detail(processor.execution, list(processor.jobs_map.values()))

    @app.get("/api/executions", response_model=list[Execution])
    def list_executions(
        workflow_id: int | None = None, status: ExecutionStatus | None = None
    ) -> list[Execution]:
        return store.list_executions(workflow_id=workflow_id, status=status)

    @app.get("/api/executions/{execution_id}", response_model=ExecutionDetail)
    def get_execution(execution_id: int) -> ExecutionDetail:
        return _detail(_execution_or_404(execution_id))

    @app.post("/api/executions/{execution_id}/cancel", response_model=ExecutionDetail)
    def cancel_execution(execution_id: int) -> ExecutionDetail:
        execution = _execution_or_404(execution_id)
        try:
            flow.cancel(execution)
        except IllegalTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return _detail(execution)

    @app.post("/api/jobs/{job_id}/resume", response_model=Job, status_code=202)
    def resume_job(job_id: int, req: JobResumeRequest) -> Job:
        job = store.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status != JobStatus.PENDING:
            raise HTTPException(status_code=409, detail="Only pending jobs can be resumed")
        if not flow.ready:
            raise HTTPException(status_code=503, detail="Engine is not ready")
        job.status = req.status
        job.result = req.result
        flow.resume(job)
        logger.info("Job resume queued", extra={"job_id": job_id, "status": req.status.value})
        return job

    return app

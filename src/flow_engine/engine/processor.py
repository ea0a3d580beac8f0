"""Per-execution state machine.

A processor walks the node graph of one execution: it runs the instruction of
each node, persists the outcome as a job and follows the graph until the
execution is finished or a job is left pending for later resumption.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flow_engine.engine import variables
from flow_engine.engine.functions import system_scope
from flow_engine.engine.models import (
    JOB_TO_EXECUTION_STATUS,
    Execution,
    ExecutionStatus,
    FlowNode,
    Job,
    JobStatus,
    Workflow,
    check_transition,
)
from flow_engine.engine.registry import UnsupportedOperationError
from flow_engine.instructions.base import Outcome
from flow_engine.store.base import NotFoundError, Transaction

if TYPE_CHECKING:
    from flow_engine.engine.dispatcher import WorkflowEngine

_RUN = "run"
_RECALL = "recall"

Step = tuple[str, FlowNode, Job | None]


class Processor:
    def __init__(
        self,
        execution: Execution,
        *,
        engine: WorkflowEngine,
        transaction: Transaction | None = None,
    ) -> None:
        self.execution = execution
        self.engine = engine
        self.transaction = transaction
        self.logger = engine.get_logger(execution.workflow_id)

        self.nodes: list[FlowNode] = []
        self.nodes_map: dict[int, FlowNode] = {}
        self.jobs_map: dict[int, Job] = {}
        self.jobs_map_by_node_key: dict[str, Any] = {}
        self.last_saved_job: Job | None = None

    @property
    def workflow(self) -> Workflow:
        if self.execution.workflow is None:
            raise NotFoundError(f"Workflow of execution {self.execution.id} is not loaded")
        return self.execution.workflow

    def _prepare(self) -> None:
        execution = self.execution
        if execution.workflow is None:
            workflow = self.engine.store.get_workflow(
                execution.workflow_id, transaction=self.transaction
            )
            if workflow is None:
                raise NotFoundError(
                    f"Workflow {execution.workflow_id} of execution {execution.id} not found"
                )
            execution.workflow = workflow

        self.nodes = list(self.workflow.nodes)
        self.nodes_map = {node.id: node for node in self.nodes}

        if execution.id is None:
            raise NotFoundError("Execution has not been created")
        for job in self.engine.store.list_jobs(execution.id, transaction=self.transaction):
            self._remember(job)

    def _remember(self, job: Job) -> None:
        if job.id is None:
            raise ValueError(f"Job of node {job.node_id} has not been saved")
        self.jobs_map[job.id] = job
        self.jobs_map_by_node_key[job.node_key] = job.result

    def start(self) -> None:
        execution = self.execution
        if execution.status != ExecutionStatus.STARTED:
            self.logger.warning(
                f"execution was ended with status {execution.status.value} before, "
                "could not be started again",
                extra={"execution_id": execution.id},
            )
            return
        self._prepare()
        head = next((node for node in self.nodes if node.upstream_id is None), None)
        if head is None:
            self.exit(JobStatus.RESOLVED)
            return
        self._drive((_RUN, head, None))

    def resume(self, job: Job) -> None:
        execution = self.execution
        if execution.status != ExecutionStatus.STARTED:
            self.logger.warning(
                f"execution was ended with status {execution.status.value} before, "
                "could not be resumed",
                extra={"execution_id": execution.id, "job_id": job.id},
            )
            return
        self._prepare()
        node = self.nodes_map.get(job.node_id)
        if node is None:
            raise NotFoundError(f"Node {job.node_id} of job {job.id} not found")
        self._drive((_RECALL, node, job))

    def _drive(self, step: Step | None) -> None:
        while step is not None:
            action, node, job = step
            if action == _RUN:
                step = self._run(node, job)
            else:
                assert job is not None
                step = self._recall(node, job)

    def _run(self, node: FlowNode, prev_job: Job | None) -> Step | None:
        instruction = self.engine.instructions.get(node.type)
        self.logger.info(
            f"execution ({self.execution.id}) run instruction [{node.type}] for node ({node.id})",
            extra={"execution_id": self.execution.id, "node_id": node.id},
        )
        outcome = instruction.run(node, prev_job, self)
        return self._handle(node, prev_job, outcome)

    def _recall(self, node: FlowNode, job: Job) -> Step | None:
        instruction = self.engine.instructions.get(node.type)
        if not instruction.resumable:
            raise UnsupportedOperationError(
                f"`resume` should be implemented for {node.type!r} nodes"
            )
        self.logger.info(
            f"execution ({self.execution.id}) resume instruction [{node.type}] "
            f"for node ({node.id})",
            extra={"execution_id": self.execution.id, "node_id": node.id, "job_id": job.id},
        )
        outcome = instruction.resume(node, job, self)
        return self._handle(node, job, outcome)

    def _handle(self, node: FlowNode, prev_job: Job | None, outcome: Outcome) -> Step | None:
        if outcome is None:
            return None

        if isinstance(outcome, Job):
            job = self.save_job(outcome)
            branch = None
            terminate = False
        else:
            job = self.save_job(
                Job(
                    execution_id=self.execution.id,
                    node_id=node.id,
                    node_key=node.key,
                    upstream_id=prev_job.id if prev_job is not None else None,
                    status=outcome.status,
                    result=outcome.result,
                )
            )
            branch = outcome.branch
            terminate = outcome.terminate

        if job.status == JobStatus.PENDING:
            self.logger.info(
                f"execution ({self.execution.id}) suspended at node ({node.id}) by job ({job.id})",
                extra={"execution_id": self.execution.id, "job_id": job.id},
            )
            return None

        if terminate:
            self.exit(job.status)
            return None

        if job.status == JobStatus.RESOLVED:
            if branch is not None:
                head = self.find_branch_head(node, branch)
                if head is not None:
                    return (_RUN, head, job)
            if node.downstream_id is not None:
                return (_RUN, self.nodes_map[node.downstream_id], job)

        return self._end(node, job)

    def _end(self, node: FlowNode, job: Job) -> Step | None:
        parent = self.find_branch_parent_node(node)
        if parent is not None:
            return (_RECALL, parent, job)
        self.exit(job.status)
        return None

    def exit(self, job_status: JobStatus | None = None) -> None:
        """Finish the execution with the status matching `job_status`.

        A pending (or missing) status leaves the execution running.
        """

        if job_status is None:
            return
        status = JOB_TO_EXECUTION_STATUS[job_status]
        if status == self.execution.status:
            return
        check_transition(self.execution.status, status)
        self.engine.store.update_execution(
            self.execution, status=status, transaction=self.transaction
        )

    def save_job(self, job: Job) -> Job:
        saved = self.engine.store.save_job(job, transaction=self.transaction)
        self._remember(saved)
        self.last_saved_job = saved
        return saved

    # -- graph helpers -----------------------------------------------------

    def find_branch_head(self, node: FlowNode, branch_index: int) -> FlowNode | None:
        return next(
            (
                item
                for item in self.nodes
                if item.upstream_id == node.id and item.branch_index == branch_index
            ),
            None,
        )

    def find_branch_parent_node(self, node: FlowNode) -> FlowNode | None:
        current: FlowNode | None = node
        while current is not None:
            if current.branch_index is not None and current.upstream_id is not None:
                return self.nodes_map.get(current.upstream_id)
            current = (
                self.nodes_map.get(current.upstream_id) if current.upstream_id is not None else None
            )
        return None

    def find_branch_parent_job(self, job: Job, node: FlowNode) -> Job | None:
        """Walk the job chain upwards to the job recorded for `node`."""

        current: Job | None = job
        while current is not None:
            if current.node_id == node.id:
                return current
            current = self.jobs_map.get(current.upstream_id) if current.upstream_id else None
        return None

    # -- variables ---------------------------------------------------------

    def get_scope(self) -> dict[str, Any]:
        return {
            "$context": self.execution.context,
            "$jobsMapByNodeKey": self.jobs_map_by_node_key,
            "$system": system_scope(self.engine.functions),
            "$execution": {"id": self.execution.id, "key": self.execution.key},
        }

    def get_parsed_value(self, value: Any) -> Any:
        return variables.parse(value, self.get_scope())

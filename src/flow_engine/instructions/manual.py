from __future__ import annotations

from typing import TYPE_CHECKING

from flow_engine.engine.models import FlowNode, Job, JobStatus
from flow_engine.instructions.base import Instruction, JobResult

if TYPE_CHECKING:
    from flow_engine.engine.processor import Processor


class ManualInstruction(Instruction):
    """Suspends the execution until someone settles the job.

    The pending job carries the parsed `config.form` so the person handling it
    sees what to fill in. Whoever settles it updates the job's status and result
    and hands it back to `WorkflowEngine.resume`; a job that is still pending
    keeps the execution suspended.
    """

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        form = processor.get_parsed_value(node.config.get("form", {}))
        return JobResult(status=JobStatus.PENDING, result={"form": form})

    def resume(self, node: FlowNode, job: Job, processor: Processor) -> Job:
        return job

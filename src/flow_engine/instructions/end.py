from __future__ import annotations

from typing import TYPE_CHECKING

from flow_engine.engine.models import FlowNode, Job, JobStatus
from flow_engine.instructions.base import Instruction, JobResult

if TYPE_CHECKING:
    from flow_engine.engine.processor import Processor


class EndInstruction(Instruction):
    """Ends the execution right here with `config.end_status` (default resolved)."""

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        status = JobStatus(node.config.get("end_status", JobStatus.RESOLVED.value))
        return JobResult(status=status, terminate=True)

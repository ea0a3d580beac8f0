"""Instruction contract.

An instruction implements the behaviour of one node type. Instances are shared
by every execution, so they must not keep per-execution state; everything they
need comes from the node, the previous job and the processor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from flow_engine.engine.models import FlowNode, Job, JobStatus

if TYPE_CHECKING:
    from flow_engine.engine.dispatcher import WorkflowEngine
    from flow_engine.engine.processor import Processor


@dataclass(slots=True)
class JobResult:
    """The outcome of running one node.

    - `status` PENDING suspends the execution until it is resumed
    - `branch` picks the branch of the node to enter next (RESOLVED only)
    - `terminate` ends the whole execution with `status`
    """

    status: JobStatus
    result: Any = None
    branch: int | None = None
    terminate: bool = False


Outcome = JobResult | Job | None


class Instruction:
    """Base class for node behaviours.

    `run` returns a :class:`JobResult` for a fresh outcome, a persisted
    :class:`Job` when it re-used an existing one, or `None` when it already
    ended the flow itself. Subclasses that suspend (or own branches) also
    implement `resume`.
    """

    def __init__(self, engine: WorkflowEngine | None = None) -> None:
        self.engine = engine

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> Outcome:
        raise NotImplementedError

    def resume(self, node: FlowNode, job: Job, processor: Processor) -> Outcome:
        raise NotImplementedError(f"`resume` is not implemented for {node.type!r} nodes")

    @property
    def resumable(self) -> bool:
        return type(self).resume is not Instruction.resume

"""Record instructions: create, update, destroy and query collection records.

All of them write through the processor's transaction, so records touched by a
synchronous execution commit together with the caller's own work.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flow_engine.engine.models import FlowNode, Job, JobStatus
from flow_engine.instructions.base import Instruction, JobResult

if TYPE_CHECKING:
    from flow_engine.engine.processor import Processor


def _collection(node: FlowNode) -> str:
    collection = node.config.get("collection")
    if not isinstance(collection, str) or not collection:
        raise ValueError(f"Node ({node.id}) has no collection configured")
    return collection


def _params(node: FlowNode, processor: Processor) -> dict[str, Any]:
    params = processor.get_parsed_value(node.config.get("params", {}))
    return params if isinstance(params, dict) else {}


class CreateInstruction(Instruction):
    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        params = _params(node, processor)
        record = processor.engine.store.create_record(
            _collection(node),
            params.get("values", {}),
            transaction=processor.transaction,
        )
        return JobResult(status=JobStatus.RESOLVED, result=record)


class UpdateInstruction(Instruction):
    """Result is the number of updated records."""

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        params = _params(node, processor)
        updated = processor.engine.store.update_records(
            _collection(node),
            params.get("filter"),
            params.get("values", {}),
            transaction=processor.transaction,
        )
        return JobResult(status=JobStatus.RESOLVED, result=len(updated))


class DestroyInstruction(Instruction):
    """Result is the number of destroyed records."""

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        params = _params(node, processor)
        destroyed = processor.engine.store.destroy_records(
            _collection(node),
            params.get("filter"),
            transaction=processor.transaction,
        )
        return JobResult(status=JobStatus.RESOLVED, result=len(destroyed))


class QueryInstruction(Instruction):
    """Finds records.

    Config: `multiple` (list instead of first match), `params.filter`,
    `params.sort` (`field` or `-field`), `params.limit`, and `fail_on_empty`
    to fail the execution when nothing matches.
    """

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        params = _params(node, processor)
        multiple = bool(node.config.get("multiple"))
        records = processor.engine.store.find_records(
            _collection(node),
            params.get("filter"),
            sort=params.get("sort"),
            limit=params.get("limit") if multiple else 1,
            transaction=processor.transaction,
        )
        result: Any = records if multiple else (records[0] if records else None)
        if node.config.get("fail_on_empty") and not records:
            return JobResult(status=JobStatus.FAILED, result=result)
        return JobResult(status=JobStatus.RESOLVED, result=result)

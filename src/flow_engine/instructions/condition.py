from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from flow_engine.engine.models import FlowNode, Job, JobStatus
from flow_engine.instructions.base import Instruction, JobResult, Outcome
from flow_engine.instructions.calculation import CalculationError, evaluate

if TYPE_CHECKING:
    from flow_engine.engine.processor import Processor

BRANCH_ON_TRUE = 1
BRANCH_ON_FALSE = 0


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _safe(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def wrapped(a: Any, b: Any) -> bool:
        try:
            return bool(compare(a, b))
        except TypeError:
            return False

    return wrapped


CALCULATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equal": lambda a, b: a == b,
    "notEqual": lambda a, b: a != b,
    "gt": _safe(lambda a, b: a > b),
    "gte": _safe(lambda a, b: a >= b),
    "lt": _safe(lambda a, b: a < b),
    "lte": _safe(lambda a, b: a <= b),
    "in": _safe(lambda a, b: a in b),
    "notIn": _safe(lambda a, b: a not in b),
    "includes": _safe(lambda a, b: b in a),
    "notIncludes": _safe(lambda a, b: b not in a),
    "startsWith": _safe(lambda a, b: str(a).startswith(str(b))),
    "endsWith": _safe(lambda a, b: str(a).endswith(str(b))),
    "empty": lambda a, _b: _is_empty(a),
    "notEmpty": lambda a, _b: not _is_empty(a),
}


def calculate_group(group: Mapping[str, Any]) -> bool:
    """Evaluate `{"type": "and"|"or", "calculations": [...]}` with resolved operands.

    Items are either single calculations (`{"calculator": ..., "operands": [a, b]}`)
    or nested groups (`{"group": {...}}`).
    """

    results = []
    for item in group.get("calculations", []):
        if "group" in item:
            results.append(calculate_group(item["group"]))
            continue
        name = item.get("calculator", "equal")
        try:
            calculator = CALCULATORS[name]
        except KeyError:
            raise CalculationError(f"Unknown calculator: {name}") from None
        operands = list(item.get("operands", [])) + [None, None]
        results.append(calculator(operands[0], operands[1]))
    if group.get("type", "and") == "or":
        return any(results)
    return all(results)


class ConditionInstruction(Instruction):
    """Branches on a condition.

    Config:
      - `calculation`: a calculator group, or `expression`: a math expression
      - `reject_on_false`: fail the execution instead of continuing on false

    The job result is the boolean outcome; the processor enters branch 1 (true)
    or 0 (false) when such a branch exists, otherwise continues downstream.
    """

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        config = node.config
        try:
            if "expression" in config:
                result = bool(evaluate(str(config["expression"]), processor.get_scope()))
            else:
                group = processor.get_parsed_value(config.get("calculation", {}).get("group", {}))
                result = calculate_group(group)
        except CalculationError as e:
            return JobResult(status=JobStatus.ERROR, result=str(e))

        if not result and config.get("reject_on_false"):
            return JobResult(status=JobStatus.FAILED, result=result)

        return JobResult(
            status=JobStatus.RESOLVED,
            result=result,
            branch=BRANCH_ON_TRUE if result else BRANCH_ON_FALSE,
        )

    def resume(self, node: FlowNode, job: Job, processor: Processor) -> Outcome:
        # `job` is the last job of the finished branch.
        parent_job = processor.find_branch_parent_job(job, node)
        if parent_job is None:
            raise LookupError(f"No job recorded for condition node ({node.id})")
        if job.status == JobStatus.RESOLVED:
            return parent_job
        parent_job.status = job.status
        return parent_job

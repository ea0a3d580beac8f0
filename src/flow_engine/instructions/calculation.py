"""Arithmetic expressions over template variables.

Expressions are parsed with :mod:`ast` and evaluated by walking an allow-list
of node types, so config authors can write `{{$context.data.price}} * 1.2`
without gaining access to arbitrary Python.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from flow_engine.engine import variables
from flow_engine.engine.models import FlowNode, Job, JobStatus
from flow_engine.instructions.base import Instruction, JobResult

if TYPE_CHECKING:
    from flow_engine.engine.processor import Processor


class CalculationError(ValueError):
    pass


_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "len": len,
    "int": int,
    "float": float,
    "str": str,
}

# Results are persisted as JSON, so integers and repeated sequences stay small.
MAX_INT_BITS = 4096
MAX_SEQUENCE_LENGTH = 100_000


def _check_size(op: ast.operator, left: Any, right: Any) -> None:
    """Reject operations whose result would be too large to compute or store."""

    ints = (
        isinstance(left, int)
        and isinstance(right, int)
        and not isinstance(left, bool)
        and not isinstance(right, bool)
    )
    if isinstance(op, ast.Pow) and ints and right > 0 and abs(left) > 1:
        if left.bit_length() * right > MAX_INT_BITS:
            raise CalculationError("Result of power is too large")
    elif isinstance(op, ast.Mult):
        if ints and left.bit_length() + right.bit_length() > MAX_INT_BITS:
            raise CalculationError("Result of multiplication is too large")
        for sequence, times in ((left, right), (right, left)):
            if isinstance(sequence, (str, list)) and isinstance(times, int):
                if len(sequence) * times > MAX_SEQUENCE_LENGTH:
                    raise CalculationError("Repeated sequence is too long")
    elif isinstance(op, ast.Add) and isinstance(left, (str, list)):
        if isinstance(right, (str, list)) and len(left) + len(right) > MAX_SEQUENCE_LENGTH:
            raise CalculationError("Concatenated sequence is too long")


def _eval(node: ast.AST, names: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _eval(node.body, names)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in ("true", "false"):
            return node.id == "true"
        raise CalculationError(f"Unknown name: {node.id}")
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(item, names) for item in node.elts]
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left = _eval(node.left, names)
        right = _eval(node.right, names)
        _check_size(node.op, left, right)
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval(node.operand, names))
    if isinstance(node, ast.BoolOp):
        values = [_eval(item, names) for item in node.values]
        return all(values) if isinstance(node.op, ast.And) else any(values)
    if isinstance(node, ast.Compare):
        left = _eval(node.left, names)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = _eval(comparator, names)
            compare = _COMPARE_OPS.get(type(op))
            if compare is None or not compare(left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.IfExp):
        return _eval(node.body if _eval(node.test, names) else node.orelse, names)
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
        func = FUNCTIONS.get(node.func.id)
        if func is None:
            raise CalculationError(f"Unknown function: {node.func.id}")
        return func(*[_eval(arg, names) for arg in node.args])
    raise CalculationError(f"Unsupported expression: {type(node).__name__}")


def evaluate(expression: str, scope: Mapping[str, Any]) -> Any:
    """Evaluate `expression` with `{{...}}` templates bound from `scope`."""

    names: dict[str, Any] = {}

    def bind(match: Any) -> str:
        name = f"_v{len(names)}"
        names[name] = variables.get_path(scope, match.group(1))
        return name

    source = variables.TEMPLATE_RE.sub(bind, expression).strip()
    if not source:
        raise CalculationError("Empty expression")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise CalculationError(f"Invalid expression: {e.msg}") from e
    try:
        return _eval(tree, names)
    except CalculationError:
        raise
    except (ArithmeticError, TypeError, ValueError) as e:
        raise CalculationError(str(e)) from e


class CalculationInstruction(Instruction):
    """Evaluates `config.expression`; a failing expression yields an ERROR job."""

    def run(self, node: FlowNode, prev_job: Job | None, processor: Processor) -> JobResult:
        expression = node.config.get("expression", "")
        try:
            result = evaluate(str(expression), processor.get_scope())
        except CalculationError as e:
            return JobResult(status=JobStatus.ERROR, result=str(e))
        return JobResult(status=JobStatus.RESOLVED, result=result)

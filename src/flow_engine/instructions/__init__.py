"""Built-in instruction types."""

from flow_engine.instructions.base import Instruction, JobResult
from flow_engine.instructions.calculation import CalculationInstruction
from flow_engine.instructions.condition import ConditionInstruction
from flow_engine.instructions.end import EndInstruction
from flow_engine.instructions.manual import ManualInstruction
from flow_engine.instructions.records import (
    CreateInstruction,
    DestroyInstruction,
    QueryInstruction,
    UpdateInstruction,
)

BUILTIN_INSTRUCTIONS: dict[str, type[Instruction]] = {
    "calculation": CalculationInstruction,
    "condition": ConditionInstruction,
    "end": EndInstruction,
    "create": CreateInstruction,
    "update": UpdateInstruction,
    "destroy": DestroyInstruction,
    "query": QueryInstruction,
    "manual": ManualInstruction,
}

__all__ = ["BUILTIN_INSTRUCTIONS", "Instruction", "JobResult"]

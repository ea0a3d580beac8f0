"""Flow Engine.

A single-process workflow execution engine:
- triggers turn domain events into persisted executions
- a processor walks the instruction graph of each execution
- a dispatcher serializes processing and recovers unfinished work
"""

__version__ = "0.1.0"

from flow_engine.engine.config import EngineSettings
from flow_engine.engine.dispatcher import EventOptions, WorkflowEngine

__all__ = ["__version__", "EngineSettings", "EventOptions", "WorkflowEngine"]

"""CLI entrypoint for flow-engine.

Commands operate on the JSON store configured by `FLOW_ENGINE_STATE_PATH`.
The HTTP API is served separately, e.g.
`uvicorn flow_engine.server:create_app --factory`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from typing import Any

from pydantic import ValidationError

from flow_engine import __version__
from flow_engine.engine.config import EngineSettings
from flow_engine.engine.dispatcher import WorkflowEngine
from flow_engine.engine.logging import configure_logging
from flow_engine.engine.models import ExecutionStatus
from flow_engine.engine.registry import UnknownTypeError, UnsupportedOperationError
from flow_engine.store import JsonStore

logger = logging.getLogger(__name__)


def _parse_context(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("context must be a JSON object")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flow-engine",
        description="Single-process workflow execution engine",
    )
    parser.add_argument("--version", action="version", version=f"flow-engine {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "run",
        help="Start the engine (triggers and worker) and run until interrupted",
    )

    trigger = subparsers.add_parser(
        "trigger",
        help="Run a workflow manually and wait for it to finish or suspend",
    )
    trigger.add_argument("--workflow-id", type=int, required=True, help="Workflow id")
    trigger.add_argument(
        "--context",
        type=_parse_context,
        default={},
        help='Event context as a JSON object, e.g. \'{"data": {"id": 1}}\'',
    )

    executions = subparsers.add_parser("executions", help="List persisted executions")
    executions.add_argument("--workflow-id", type=int, default=None, help="Filter by workflow")
    executions.add_argument(
        "--status",
        choices=[status.value for status in ExecutionStatus],
        default=None,
        help="Filter by status",
    )

    return parser


def _build_engine(settings: EngineSettings) -> WorkflowEngine:
    store = JsonStore(settings.state_path, single_writer=settings.single_writer)
    return WorkflowEngine(store, settings)


def _run(engine: WorkflowEngine) -> int:
    stop = threading.Event()
    engine.init()
    print(f"flow-engine running ({len(engine.enabled_cache)} enabled workflows), Ctrl+C to stop")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        engine.teardown()
    return 0


def _trigger(engine: WorkflowEngine, workflow_id: int, context: dict[str, Any]) -> int:
    workflow = engine.store.get_workflow(workflow_id)
    if workflow is None:
        print(f"Workflow {workflow_id} not found", file=sys.stderr)
        return 1

    engine.init()
    try:
        processor = engine.execute(workflow, context)
    finally:
        engine.teardown()

    if processor is None:
        print("Event was rejected or the execution could not be created", file=sys.stderr)
        return 1
    execution = processor.execution
    print(f"Execution #{execution.id}: {execution.status.value}")
    return 0


def _list_executions(engine: WorkflowEngine, workflow_id: int | None, status: str | None) -> int:
    executions = engine.store.list_executions(
        workflow_id=workflow_id,
        status=ExecutionStatus(status) if status else None,
    )
    if not executions:
        print("No executions")
        return 0
    for execution in executions:
        print(
            f"#{execution.id}\tworkflow={execution.workflow_id}\t"
            f"{execution.status.value}\t{execution.created_at}"
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        engine = _build_engine(settings)

        if args.command == "run":
            return _run(engine)

        if args.command == "trigger":
            return _trigger(engine, args.workflow_id, args.context)

        if args.command == "executions":
            return _list_executions(engine, args.workflow_id, args.status)

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (UnknownTypeError, UnsupportedOperationError) as e:
        logger.warning(str(e))
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""Programmatic usage example.

This demonstrates using the engine components directly:

* load settings from `.env`
* create an enabled workflow fired by new `orders` records
* insert a record and wait for the queued execution to finish

The store file is passed as an argument (not read from `.env`).
"""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import Sequence

from flow_engine import EngineSettings, WorkflowEngine
from flow_engine.engine.logging import configure_logging
from flow_engine.engine.models import ExecutionStatus, FlowNode, Workflow
from flow_engine.store import JsonStore


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a small order workflow.")
    parser.add_argument("--state", default="flow_state/example.json", help="Store JSON file")
    parser.add_argument("--amount", type=float, default=42.0, help="Order amount")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    engine = WorkflowEngine(JsonStore(Path(args.state)), settings)
    engine.save_workflow(
        Workflow(
            title="Large orders",
            type="collection",
            enabled=True,
            config={"collection": "orders", "mode": 1},
            nodes=[
                FlowNode(
                    id=1,
                    key="big",
                    type="condition",
                    config={"expression": "{{$context.data.amount}} > 10", "reject_on_false": True},
                    downstream_id=2,
                ),
                FlowNode(
                    id=2,
                    key="flag",
                    type="update",
                    upstream_id=1,
                    config={
                        "collection": "orders",
                        "params": {
                            "filter": {"id": "{{$context.data.id}}"},
                            "values": {"flagged": True},
                        },
                    },
                ),
            ],
        )
    )

    engine.init()
    try:
        engine.store.create_record("orders", {"amount": args.amount})
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            executions = engine.store.list_executions()
            if executions and all(e.status.is_terminal for e in executions):
                break
            time.sleep(0.05)
    finally:
        engine.teardown()

    for execution in engine.store.list_executions():
        print(f"Execution #{execution.id}: {execution.status.value}")
    flagged = engine.store.find_records("orders", {"flagged": True})
    print(f"Flagged orders: {len(flagged)}")
    return 0 if all(
        e.status != ExecutionStatus.ERROR for e in engine.store.list_executions()
    ) else 1


if __name__ == "__main__":
    raise SystemExit(main())

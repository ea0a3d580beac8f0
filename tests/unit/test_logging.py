"""Unit tests for structured logging and per-workflow loggers."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from datetime import UTC, datetime

import pytest

from flow_engine.engine.logging import JsonFormatter, WorkflowLoggers, configure_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        "flow_engine.test", logging.WARNING, __file__, 1, "hi %s", ("x",), None
    )
    record.__dict__.update(extra)
    return record


def test_json_formatter_includes_extra_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record(workflow_id=7, path=object())))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "flow_engine.test"
    assert payload["message"] == "hi x"
    assert payload["extra"]["workflow_id"] == 7
    assert isinstance(payload["extra"]["path"], str)
    assert "exception" not in payload


def test_json_formatter_renders_exceptions() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "t", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info()
        )

    payload = json.loads(JsonFormatter().format(record))

    assert "ValueError: boom" in payload["exception"]
    assert "extra" not in payload


def test_configure_logging_replaces_root_handlers(restore_root_logger, capsys) -> None:
    configure_logging("warning")
    configure_logging("debug")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.DEBUG

    logging.getLogger("flow_engine.test").info("hello", extra={"n": 1})

    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert json.loads(line)["extra"] == {"n": 1}


def test_workflow_logger_carries_workflow_id(caplog) -> None:
    wf_logger = WorkflowLoggers().get(7)

    with caplog.at_level(logging.INFO, logger="flow_engine.workflows"):
        wf_logger.info("step done", extra={"execution_id": 3})

    record = caplog.records[-1]
    assert record.name == "flow_engine.workflows.7"
    assert record.workflow_id == 7
    assert record.execution_id == 3


def test_workflow_loggers_write_daily_files(tmp_path) -> None:
    loggers = WorkflowLoggers(tmp_path)
    wf_logger = loggers.get(5)
    wf_logger.logger.setLevel(logging.INFO)
    try:
        wf_logger.info("written")
    finally:
        loggers.close()
        wf_logger.logger.setLevel(logging.NOTSET)

    date = datetime.now(tz=UTC).strftime("%Y-%m-%d")
    lines = (tmp_path / "workflows" / "5" / f"{date}.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["message"] == "written"
    assert json.loads(lines[-1])["extra"]["workflow_id"] == 5


def test_workflow_loggers_close_least_recently_used(tmp_path) -> None:
    loggers = WorkflowLoggers(tmp_path, max_size=2)

    loggers.get(1)
    loggers.get(2)
    loggers.get(1)
    loggers.get(3)

    assert len(loggers) == 2
    assert logging.getLogger("flow_engine.workflows.2").handlers == []
    assert len(logging.getLogger("flow_engine.workflows.1").handlers) == 1

    loggers.close()
    assert len(loggers) == 0
    assert logging.getLogger("flow_engine.workflows.1").handlers == []

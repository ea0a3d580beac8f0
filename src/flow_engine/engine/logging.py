"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Each workflow gets its own
logger (`flow_engine.workflows.<id>`) so that its events can be filtered or
written to a dedicated daily file.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections import OrderedDict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

WORKFLOW_LOGGER_PREFIX = "flow_engine.workflows"


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter for logging records."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    logging.getLogger("uvicorn.access").setLevel(max(root.level, logging.INFO))


class WorkflowLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Adds `workflow_id` to every record, keeping per-call `extra` fields."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


class WorkflowLoggers:
    """Hands out per-workflow loggers.

    Loggers are adapters carrying `workflow_id` in every record. When a log
    directory is configured, each (date, workflow) pair gets a JSON file
    handler; at most `max_size` of them stay open, the least recently used one
    is closed first.
    """

    def __init__(self, log_path: Path | None = None, *, max_size: int = 20) -> None:
        self.log_path = log_path
        self.max_size = max_size
        self._lock = threading.Lock()
        self._handlers: OrderedDict[str, tuple[logging.Logger, logging.Handler]] = OrderedDict()

    def get(self, workflow_id: int | str) -> WorkflowLoggerAdapter:
        logger = logging.getLogger(f"{WORKFLOW_LOGGER_PREFIX}.{workflow_id}")
        if self.log_path is not None:
            self._ensure_file_handler(logger, workflow_id)
        return WorkflowLoggerAdapter(logger, {"workflow_id": workflow_id})

    def _ensure_file_handler(self, logger: logging.Logger, workflow_id: int | str) -> None:
        assert self.log_path is not None
        date = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        key = f"{date}-{workflow_id}"
        with self._lock:
            if key in self._handlers:
                self._handlers.move_to_end(key)
                return

            path = self.log_path / "workflows" / str(workflow_id) / f"{date}.log"
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, encoding="utf-8")
            handler.setFormatter(JsonFormatter())
            logger.addHandler(handler)
            self._handlers[key] = (logger, handler)

            while len(self._handlers) > self.max_size:
                _, (old_logger, old_handler) = self._handlers.popitem(last=False)
                old_logger.removeHandler(old_handler)
                old_handler.close()

    def close(self) -> None:
        with self._lock:
            while self._handlers:
                _, (logger, handler) = self._handlers.popitem(last=False)
                logger.removeHandler(handler)
                handler.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

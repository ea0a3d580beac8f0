"""Storage contract consumed by the engine.

The engine never talks to a database directly. It needs:
- transactional create/update/destroy of workflows, executions and jobs
- a poll for the oldest queueing execution of an enabled workflow
- record collections for the record instructions and the collection trigger
- transaction handles that can be passed down and reused by nested calls
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager
from typing import Any, Protocol

from flow_engine.engine.models import Execution, ExecutionStatus, Job, Workflow

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class StoreError(RuntimeError):
    pass


class IntegrityError(StoreError):
    """A uniqueness constraint was violated."""


class NotFoundError(StoreError, LookupError):
    pass


class ConflictError(IntegrityError):
    """A row written by a transaction was changed by another one since it was read."""


class Transaction:
    """A unit of work bound to one store.

    Writes are buffered until commit. Callbacks registered with
    :meth:`after_commit` run once the writes are visible to everyone.
    """

    def __init__(self, store: object) -> None:
        self.store = store
        self.writes: dict[tuple[str, int], Record | None] = {}
        # Committed version of every row as first seen by this transaction.
        self.versions: dict[tuple[str, int], int] = {}
        self._after_commit: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("After-commit callback failed")


HookListener = Callable[..., None]


class Hooks:
    """Named event listeners (e.g. `posts.after_create`)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[HookListener]] = {}

    def on(self, event: str, listener: HookListener) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: HookListener) -> None:
        with self._lock:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)

    def emit(self, event: str, *args: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            listener(*args)

    def count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda a, b: a == b,
    "$ne": lambda a, b: a != b,
    "$gt": lambda a, b: a is not None and a > b,
    "$gte": lambda a, b: a is not None and a >= b,
    "$lt": lambda a, b: a is not None and a < b,
    "$lte": lambda a, b: a is not None and a <= b,
    "$in": lambda a, b: a in b,
    "$notIn": lambda a, b: a not in b,
    "$empty": lambda a, b: (a in (None, "", [], {})) == bool(b),
}


def match_filter(record: Mapping[str, Any], filter_: Mapping[str, Any] | None) -> bool:
    """Match a record against a filter.

    Keys are field names (compared for equality, or with an operator dict such
    as `{"$gt": 3}`) or the logical groups `$and` / `$or` holding sub-filters.
    """

    if not filter_:
        return True
    for key, expected in filter_.items():
        if key == "$and":
            if not all(match_filter(record, sub) for sub in expected):
                return False
            continue
        if key == "$or":
            if not any(match_filter(record, sub) for sub in expected):
                return False
            continue

        actual = record.get(key)
        if isinstance(expected, Mapping) and expected and all(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                try:
                    compare = _OPERATORS[op]
                except KeyError:
                    raise StoreError(f"Unsupported filter operator: {op}") from None
                try:
                    if not compare(actual, operand):
                        return False
                except TypeError:
                    return False
        elif actual != expected:
            return False
    return True


class Store(Protocol):
    """What the engine expects from its storage backend."""

    hooks: Hooks
    # Only one writer at a time (e.g. SQLite): drain waits for processing.
    single_writer: bool
    # Increments return the updated row; otherwise the engine reloads it.
    returning: bool

    def transaction(
        self, transaction: Transaction | None = None
    ) -> AbstractContextManager[Transaction]: ...

    # workflows
    def get_workflow(
        self, workflow_id: int, *, transaction: Transaction | None = None
    ) -> Workflow | None: ...

    def list_workflows(
        self,
        *,
        enabled: bool | None = None,
        key: str | None = None,
        transaction: Transaction | None = None,
    ) -> list[Workflow]: ...

    def find_current_workflow(
        self, key: str, *, exclude_id: int | None = None, transaction: Transaction | None = None
    ) -> Workflow | None: ...

    def save_workflow(
        self, workflow: Workflow, *, transaction: Transaction | None = None
    ) -> Workflow: ...

    def update_workflow(
        self, workflow: Workflow, *, transaction: Transaction | None = None, **values: Any
    ) -> Workflow: ...

    def update_workflows(
        self, *, key: str, values: Mapping[str, Any], transaction: Transaction | None = None
    ) -> int: ...

    def increment_workflow(
        self,
        workflow_id: int,
        fields: Sequence[str],
        *,
        transaction: Transaction | None = None,
    ) -> Workflow | None: ...

    def destroy_workflow(
        self, workflow_id: int, *, transaction: Transaction | None = None
    ) -> None: ...

    # executions
    def create_execution(
        self, execution: Execution, *, transaction: Transaction | None = None
    ) -> Execution: ...

    def get_execution(
        self,
        execution_id: int,
        *,
        with_workflow: bool = False,
        transaction: Transaction | None = None,
    ) -> Execution | None: ...

    def list_executions(
        self,
        *,
        workflow_id: int | None = None,
        status: ExecutionStatus | None = None,
        transaction: Transaction | None = None,
    ) -> list[Execution]: ...

    def update_execution(
        self, execution: Execution, *, transaction: Transaction | None = None, **values: Any
    ) -> Execution: ...

    def destroy_execution(
        self, execution_id: int, *, transaction: Transaction | None = None
    ) -> None: ...

    def find_queueing_execution(
        self, *, transaction: Transaction | None = None
    ) -> Execution | None: ...

    # jobs
    def save_job(self, job: Job, *, transaction: Transaction | None = None) -> Job: ...

    def get_job(self, job_id: int, *, transaction: Transaction | None = None) -> Job | None: ...

    def list_jobs(
        self, execution_id: int, *, transaction: Transaction | None = None
    ) -> list[Job]: ...

    # records
    def create_record(
        self,
        collection: str,
        values: Mapping[str, Any],
        *,
        transaction: Transaction | None = None,
    ) -> Record: ...

    def update_records(
        self,
        collection: str,
        filter_: Mapping[str, Any] | None,
        values: Mapping[str, Any],
        *,
        transaction: Transaction | None = None,
    ) -> list[Record]: ...

    def destroy_records(
        self,
        collection: str,
        filter_: Mapping[str, Any] | None,
        *,
        transaction: Transaction | None = None,
    ) -> list[Record]: ...

    def find_records(
        self,
        collection: str,
        filter_: Mapping[str, Any] | None = None,
        *,
        sort: str | None = None,
        limit: int | None = None,
        transaction: Transaction | None = None,
    ) -> list[Record]: ...


def iter_sorted(records: Iterator[Record] | list[Record], sort: str | None) -> list[Record]:
    """Sort records by a field name; a leading `-` sorts descending."""

    items = list(records)
    if not sort:
        return sorted(items, key=lambda r: r.get("id") or 0)
    descending = sort.startswith("-")
    field = sort.lstrip("-")
    return sorted(
        items,
        key=lambda r: (r.get(field) is None, r.get(field)),
        reverse=descending,
    )

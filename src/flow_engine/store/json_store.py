"""In-memory tables with optional JSON file persistence.

This is the reference storage backend. It keeps every table as rows of plain
JSON data, buffers writes per transaction and, when a path is given, rewrites
the whole file on every commit so a restarted process sees the same state.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from flow_engine.engine.models import (
    Execution,
    ExecutionStatus,
    Job,
    JobStatus,
    Workflow,
    utc_iso_now,
)
from flow_engine.store.base import (
    ConflictError,
    Hooks,
    IntegrityError,
    NotFoundError,
    Record,
    Transaction,
    iter_sorted,
    match_filter,
)

logger = logging.getLogger(__name__)

WORKFLOWS = "workflows"
EXECUTIONS = "executions"
JOBS = "jobs"
COLLECTION_PREFIX = "collection:"


def _collection_table(name: str) -> str:
    if not name:
        raise ValueError("collection name must not be empty")
    return f"{COLLECTION_PREFIX}{name}"


class JsonStore:
    def __init__(
        self,
        path: Path | None = None,
        *,
        single_writer: bool = False,
        returning: bool = True,
    ) -> None:
        self.path = path
        self.single_writer = single_writer
        self.returning = returning
        self.hooks = Hooks()

        self._lock = threading.RLock()
        self._tables: dict[str, dict[int, Record]] = {}
        self._sequences: dict[str, int] = {}
        # Bumped on every committed write of a row.
        self._versions: dict[tuple[str, int], int] = {}
        self._load_unlocked()

    # -- persistence -------------------------------------------------------

    def _load_unlocked(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable store file", extra={"path": str(self.path)})
            return
        if not isinstance(raw, dict):
            return

        tables = raw.get("tables", {})
        for name, rows in tables.items():
            self._tables[name] = {int(row["id"]): row for row in rows if "id" in row}
        sequences = raw.get("sequences", {})
        self._sequences = {name: int(value) for name, value in sequences.items()}

    def _save_unlocked(self, tables: Mapping[str, Mapping[int, Record]]) -> None:
        """Write `tables` to the file; raises before touching it if they don't serialize."""

        if self.path is None:
            return
        payload = {
            "sequences": self._sequences,
            "tables": {
                name: [rows[row_id] for row_id in sorted(rows)] for name, rows in tables.items()
            },
        }
        text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(self.path)

    # -- transactions ------------------------------------------------------

    @contextmanager
    def transaction(self, transaction: Transaction | None = None) -> Iterator[Transaction]:
        """Open a transaction, or reuse `transaction` if it belongs to this store.

        A reused transaction is left for its owner to commit. Commit fails with
        :class:`ConflictError` when a row it writes was committed by someone
        else after this transaction first read it.
        """

        if transaction is not None and transaction.store is self:
            yield transaction
            return

        tx = Transaction(self)
        try:
            yield tx
        except BaseException:
            logger.debug("Transaction rolled back", extra={"writes": len(tx.writes)})
            raise
        self._commit(tx)

    def _commit(self, tx: Transaction) -> None:
        if tx.writes:
            with self._lock:
                self._check_unique(tx)
                for key in tx.writes:
                    if self._versions.get(key, 0) != tx.versions.get(key, 0):
                        table, row_id = key
                        raise ConflictError(f"Row {row_id} of {table} was changed concurrently")

                tables = dict(self._tables)
                for (table, row_id), row in tx.writes.items():
                    if table not in tables or tables[table] is self._tables.get(table):
                        tables[table] = dict(tables.get(table, {}))
                    if row is None:
                        tables[table].pop(row_id, None)
                    else:
                        tables[table][row_id] = row
                # Nothing changes in memory unless the file was written.
                self._save_unlocked(tables)
                self._tables = tables
                for key in tx.writes:
                    self._versions[key] = self._versions.get(key, 0) + 1
            tx.writes = {}
        tx.run_after_commit()

    def _check_unique(self, tx: Transaction) -> None:
        for (table, row_id), row in tx.writes.items():
            if row is None:
                continue
            if table == EXECUTIONS:
                field, value = "event_key", row.get("event_key")
            elif table == WORKFLOWS and row.get("current"):
                field, value = "current", True
            else:
                continue
            for other_id, other in self._tables.get(table, {}).items():
                if other_id == row_id or (table, other_id) in tx.writes:
                    continue
                if other.get(field) != value:
                    continue
                if table == EXECUTIONS:
                    raise IntegrityError(f"Duplicate execution event key {value!r}")
                if other.get("key") == row.get("key"):
                    raise IntegrityError(
                        f"Workflow {other_id} is already the current version of {row['key']!r}"
                    )

    def _next_id(self, table: str) -> int:
        with self._lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    def _rows(self, table: str, tx: Transaction | None) -> dict[int, Record]:
        with self._lock:
            rows = dict(self._tables.get(table, {}))
            if tx is not None:
                for row_id in rows:
                    key = (table, row_id)
                    tx.versions.setdefault(key, self._versions.get(key, 0))
        if tx is not None:
            for (name, row_id), row in tx.writes.items():
                if name != table:
                    continue
                if row is None:
                    rows.pop(row_id, None)
                else:
                    rows[row_id] = row
        return rows

    def _row(self, table: str, row_id: int, tx: Transaction | None) -> Record | None:
        key = (table, row_id)
        if tx is not None and key in tx.writes:
            return tx.writes[key]
        with self._lock:
            if tx is not None:
                tx.versions.setdefault(key, self._versions.get(key, 0))
            return self._tables.get(table, {}).get(row_id)

    def _write(self, tx: Transaction, table: str, row_id: int, row: Record | None) -> None:
        key = (table, row_id)
        with self._lock:
            tx.versions.setdefault(key, self._versions.get(key, 0))
        tx.writes[key] = copy.deepcopy(row) if row is not None else None

    # -- workflows ---------------------------------------------------------

    def get_workflow(
        self, workflow_id: int, *, transaction: Transaction | None = None
    ) -> Workflow | None:
        row = self._row(WORKFLOWS, workflow_id, transaction)
        return Workflow.model_validate(copy.deepcopy(row)) if row is not None else None

    def list_workflows(
        self,
        *,
        enabled: bool | None = None,
        key: str | None = None,
        transaction: Transaction | None = None,
    ) -> list[Workflow]:
        out: list[Workflow] = []
        for row_id, row in sorted(self._rows(WORKFLOWS, transaction).items()):
            if enabled is not None and bool(row.get("enabled")) != enabled:
                continue
            if key is not None and row.get("key") != key:
                continue
            out.append(Workflow.model_validate(copy.deepcopy(row)))
        return out

    def find_current_workflow(
        self, key: str, *, exclude_id: int | None = None, transaction: Transaction | None = None
    ) -> Workflow | None:
        for row_id, row in sorted(self._rows(WORKFLOWS, transaction).items()):
            if row.get("key") == key and row.get("current") is True and row_id != exclude_id:
                return Workflow.model_validate(copy.deepcopy(row))
        return None

    def save_workflow(
        self, workflow: Workflow, *, transaction: Transaction | None = None
    ) -> Workflow:
        """Insert (no id yet) or replace a workflow row."""

        with self.transaction(transaction) as tx:
            if workflow.id is None:
                workflow.id = self._next_id(WORKFLOWS)
            elif self._row(WORKFLOWS, workflow.id, tx) is None:
                raise NotFoundError(f"Workflow {workflow.id} not found")
            if workflow.current:
                for row_id, row in self._rows(WORKFLOWS, tx).items():
                    if (
                        row_id != workflow.id
                        and row.get("key") == workflow.key
                        and row.get("current")
                    ):
                        raise IntegrityError(
                            f"Workflow {row_id} is already the current version of {workflow.key!r}"
                        )
            workflow.updated_at = utc_iso_now()
            self._write(tx, WORKFLOWS, workflow.id, workflow.model_dump(mode="json"))
        return workflow

    def update_workflow(
        self, workflow: Workflow, *, transaction: Transaction | None = None, **values: Any
    ) -> Workflow:
        for name, value in values.items():
            setattr(workflow, name, value)
        return self.save_workflow(workflow, transaction=transaction)

    def update_workflows(
        self, *, key: str, values: Mapping[str, Any], transaction: Transaction | None = None
    ) -> int:
        count = 0
        with self.transaction(transaction) as tx:
            for row_id, row in self._rows(WORKFLOWS, tx).items():
                if row.get("key") != key:
                    continue
                self._write(tx, WORKFLOWS, row_id, {**row, **values, "updated_at": utc_iso_now()})
                count += 1
        return count

    def increment_workflow(
        self,
        workflow_id: int,
        fields: Sequence[str],
        *,
        transaction: Transaction | None = None,
    ) -> Workflow | None:
        with self.transaction(transaction) as tx:
            row = self._row(WORKFLOWS, workflow_id, tx)
            if row is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
            updated = {**row, **{field: int(row.get(field) or 0) + 1 for field in fields}}
            self._write(tx, WORKFLOWS, workflow_id, updated)
        if not self.returning:
            return None
        return Workflow.model_validate(copy.deepcopy(updated))

    def destroy_workflow(self, workflow_id: int, *, transaction: Transaction | None = None) -> None:
        with self.transaction(transaction) as tx:
            if self._row(WORKFLOWS, workflow_id, tx) is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
            self._write(tx, WORKFLOWS, workflow_id, None)

    # -- executions --------------------------------------------------------

    def create_execution(
        self, execution: Execution, *, transaction: Transaction | None = None
    ) -> Execution:
        with self.transaction(transaction) as tx:
            for row in self._rows(EXECUTIONS, tx).values():
                if row.get("event_key") == execution.event_key:
                    raise IntegrityError(f"Duplicate execution event key {execution.event_key!r}")
            execution.id = self._next_id(EXECUTIONS)
            self._write(tx, EXECUTIONS, execution.id, execution.model_dump(mode="json"))
        return execution

    def get_execution(
        self,
        execution_id: int,
        *,
        with_workflow: bool = False,
        transaction: Transaction | None = None,
    ) -> Execution | None:
        row = self._row(EXECUTIONS, execution_id, transaction)
        if row is None:
            return None
        execution = Execution.model_validate(copy.deepcopy(row))
        if with_workflow:
            execution.workflow = self.get_workflow(execution.workflow_id, transaction=transaction)
        return execution

    def list_executions(
        self,
        *,
        workflow_id: int | None = None,
        status: ExecutionStatus | None = None,
        transaction: Transaction | None = None,
    ) -> list[Execution]:
        out: list[Execution] = []
        for _, row in sorted(self._rows(EXECUTIONS, transaction).items()):
            if workflow_id is not None and row.get("workflow_id") != workflow_id:
                continue
            if status is not None and row.get("status") != status.value:
                continue
            out.append(Execution.model_validate(copy.deepcopy(row)))
        return out

    def update_execution(
        self, execution: Execution, *, transaction: Transaction | None = None, **values: Any
    ) -> Execution:
        if execution.id is None:
            raise NotFoundError("Execution has not been created")
        for name, value in values.items():
            setattr(execution, name, value)
        execution.updated_at = utc_iso_now()
        with self.transaction(transaction) as tx:
            if self._row(EXECUTIONS, execution.id, tx) is None:
                raise NotFoundError(f"Execution {execution.id} not found")
            self._write(tx, EXECUTIONS, execution.id, execution.model_dump(mode="json"))
        return execution

    def destroy_execution(
        self, execution_id: int, *, transaction: Transaction | None = None
    ) -> None:
        with self.transaction(transaction) as tx:
            self._write(tx, EXECUTIONS, execution_id, None)
            for job_id, row in self._rows(JOBS, tx).items():
                if row.get("execution_id") == execution_id:
                    self._write(tx, JOBS, job_id, None)

    def find_queueing_execution(
        self, *, transaction: Transaction | None = None
    ) -> Execution | None:
        """Oldest (lowest id) queueing execution whose workflow exists and is enabled."""

        workflows = self._rows(WORKFLOWS, transaction)
        for _, row in sorted(self._rows(EXECUTIONS, transaction).items()):
            if row.get("status") != ExecutionStatus.QUEUEING.value:
                continue
            workflow_row = workflows.get(row.get("workflow_id"))
            if workflow_row is None or not workflow_row.get("enabled"):
                continue
            execution = Execution.model_validate(copy.deepcopy(row))
            execution.workflow = Workflow.model_validate(copy.deepcopy(workflow_row))
            return execution
        return None

    # -- jobs --------------------------------------------------------------

    def save_job(self, job: Job, *, transaction: Transaction | None = None) -> Job:
        with self.transaction(transaction) as tx:
            if job.id is None:
                job.id = self._next_id(JOBS)
            job.updated_at = utc_iso_now()
            self._write(tx, JOBS, job.id, job.model_dump(mode="json"))
        return job

    def get_job(self, job_id: int, *, transaction: Transaction | None = None) -> Job | None:
        row = self._row(JOBS, job_id, transaction)
        return Job.model_validate(copy.deepcopy(row)) if row is not None else None

    def list_jobs(self, execution_id: int, *, transaction: Transaction | None = None) -> list[Job]:
        return [
            Job.model_validate(copy.deepcopy(row))
            for _, row in sorted(self._rows(JOBS, transaction).items())
            if row.get("execution_id") == execution_id
        ]

    def list_pending_jobs(
        self, execution_id: int, *, transaction: Transaction | None = None
    ) -> list[Job]:
        return [
            job
            for job in self.list_jobs(execution_id, transaction=transaction)
            if job.status == JobStatus.PENDING
        ]

    # -- records -----------------------------------------------------------

    def create_record(
        self,
        collection: str,
        values: Mapping[str, Any],
        *,
        transaction: Transaction | None = None,
    ) -> Record:
        table = _collection_table(collection)
        with self.transaction(transaction) as tx:
            row_id = self._next_id(table)
            now = utc_iso_now()
            record: Record = {**values, "id": row_id, "created_at": now, "updated_at": now}
            self._write(tx, table, row_id, record)
            created = copy.deepcopy(record)
            tx.after_commit(
                lambda: self.hooks.emit(f"{collection}.after_create", created, sorted(values))
            )
        return copy.deepcopy(record)

    def update_records(
        self,
        collection: str,
        filter_: Mapping[str, Any] | None,
        values: Mapping[str, Any],
        *,
        transaction: Transaction | None = None,
    ) -> list[Record]:
        table = _collection_table(collection)
        updated: list[Record] = []
        with self.transaction(transaction) as tx:
            for row_id, row in sorted(self._rows(table, tx).items()):
                if not match_filter(row, filter_):
                    continue
                changed = sorted(k for k, v in values.items() if row.get(k) != v)
                record = {**row, **values, "id": row_id, "updated_at": utc_iso_now()}
                self._write(tx, table, row_id, record)
                snapshot = copy.deepcopy(record)
                updated.append(copy.deepcopy(record))
                tx.after_commit(
                    lambda r=snapshot, c=changed: self.hooks.emit(
                        f"{collection}.after_update", r, c
                    )
                )
        return updated

    def destroy_records(
        self,
        collection: str,
        filter_: Mapping[str, Any] | None,
        *,
        transaction: Transaction | None = None,
    ) -> list[Record]:
        table = _collection_table(collection)
        destroyed: list[Record] = []
        with self.transaction(transaction) as tx:
            for row_id, row in sorted(self._rows(table, tx).items()):
                if not match_filter(row, filter_):
                    continue
                self._write(tx, table, row_id, None)
                snapshot = copy.deepcopy(row)
                destroyed.append(copy.deepcopy(row))
                tx.after_commit(
                    lambda r=snapshot: self.hooks.emit(f"{collection}.after_destroy", r, [])
                )
        return destroyed

    def find_records(
        self,
        collection: str,
        filter_: Mapping[str, Any] | None = None,
        *,
        sort: str | None = None,
        limit: int | None = None,
        transaction: Transaction | None = None,
    ) -> list[Record]:
        rows = self._rows(_collection_table(collection), transaction).values()
        matched = [copy.deepcopy(row) for row in rows if match_filter(row, filter_)]
        ordered = iter_sorted(matched, sort)
        return ordered[:limit] if limit is not None else ordered

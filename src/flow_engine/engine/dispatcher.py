"""The workflow engine: trigger registry, event intake and the execution worker.

Events fired by triggers are turned into executions in the background and a
single worker thread advances them one at a time. Synchronous workflows (and
manual runs) skip the queue and are processed in the caller's thread, under the
same lock the worker holds, so at most one processor is ever running.

Lifecycle::

    engine = WorkflowEngine(JsonStore(path))
    engine.init()       # reload enabled workflows, start the worker
    ...
    engine.teardown()   # detach triggers, flush queued events, stop the worker
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import replace
from typing import Any

from flow_engine.engine.config import EngineSettings
from flow_engine.engine.events import EventOptions
from flow_engine.engine.functions import CustomFunction, register_builtin_functions
from flow_engine.engine.logging import WorkflowLoggerAdapter, WorkflowLoggers
from flow_engine.engine.models import (
    Execution,
    ExecutionStatus,
    Job,
    JobStatus,
    Workflow,
    check_transition,
)
from flow_engine.engine.processor import Processor
from flow_engine.engine.registry import Registry, UnsupportedOperationError
from flow_engine.engine.sync import SyncBus, SyncMessage
from flow_engine.instructions import BUILTIN_INSTRUCTIONS
from flow_engine.instructions.base import Instruction
from flow_engine.store.base import ConflictError, NotFoundError, Store, Transaction
from flow_engine.triggers import BUILTIN_TRIGGERS
from flow_engine.triggers.base import Trigger

__all__ = ["EventOptions", "WorkflowEngine"]

logger = logging.getLogger(__name__)

# Attempts at creating an execution in its own transaction when a concurrent
# commit touched the same workflow row.
CONFLICT_RETRIES = 3

Event = tuple[Workflow, Any, EventOptions]
PendingItem = tuple[Execution, Job | None]


class WorkflowEngine:
    def __init__(
        self,
        store: Store,
        settings: EngineSettings | None = None,
        sync_bus: SyncBus | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.sync_bus = sync_bus
        # Identifies this engine as the sender on the sync bus.
        self.name = uuid.uuid4().hex
        self.loggers = WorkflowLoggers(
            self.settings.log_path, max_size=self.settings.logger_cache_size
        )

        self.triggers: Registry[Trigger] = Registry("trigger")
        self.instructions: Registry[Instruction] = Registry("instruction")
        self.functions: Registry[CustomFunction] = Registry("function")

        self.enabled_cache: dict[int, Workflow] = {}
        self._events: deque[Event] = deque()
        self._pending: deque[PendingItem] = deque()

        # Guards the queues and flags below; the worker sleeps on `_wakeup`.
        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        # Held around every `process()` call, by the worker and by synchronous runs.
        self._executing = threading.RLock()

        self._ready = False
        self._stopping = False
        self._preparing = False
        self._dispatch_requested = False
        self._in_flight = 0
        self._worker: threading.Thread | None = None
        self._preparer: threading.Thread | None = None

        for name, trigger in BUILTIN_TRIGGERS.items():
            self.register_trigger(name, trigger)
        for name, instruction in BUILTIN_INSTRUCTIONS.items():
            self.register_instruction(name, instruction)
        register_builtin_functions(self.functions)

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def events_count(self) -> int:
        with self._lock:
            return len(self._events)

    def get_logger(self, workflow_id: int | str | None) -> WorkflowLoggerAdapter:
        return self.loggers.get(workflow_id if workflow_id is not None else "unsaved")

    # -- registration ------------------------------------------------------

    def register_trigger(self, type_: str, trigger: type[Trigger] | Trigger) -> None:
        if isinstance(trigger, type) and issubclass(trigger, Trigger):
            instance = trigger(self)
        elif isinstance(trigger, Trigger):
            instance = trigger
        else:
            raise ValueError(f"Trigger for {type_!r} must be a Trigger class or instance")
        self.triggers.register(type_, instance)

    def register_instruction(
        self, type_: str, instruction: type[Instruction] | Instruction
    ) -> None:
        if isinstance(instruction, type) and issubclass(instruction, Instruction):
            instance = instruction(self)
        elif isinstance(instruction, Instruction):
            instance = instruction
        else:
            raise ValueError(f"Instruction for {type_!r} must be an Instruction class or instance")
        self.instructions.register(type_, instance)

    def register_function(self, name: str, function: CustomFunction) -> None:
        if not callable(function):
            raise ValueError(f"Function {name!r} must be callable")
        self.functions.register(name, function)

    def is_workflow_sync(self, workflow: Workflow) -> bool:
        trigger = self.triggers.find(workflow.type)
        if trigger is not None and trigger.sync is not None:
            return trigger.sync
        return workflow.sync

    # -- workflow lifecycle ------------------------------------------------

    def toggle(
        self,
        workflow: Workflow,
        enable: bool | None = None,
        *,
        previous: Workflow | None = None,
        silent: bool = False,
        transaction: Transaction | None = None,
    ) -> None:
        """Attach (or detach) the trigger listening for `workflow`.

        `previous` is the version of the same row before an update; its
        listener is detached first when the trigger config changed.
        """

        trigger = self.triggers.find(workflow.type)
        if trigger is None:
            logger.error(
                "Trigger type of workflow is not registered",
                extra={"workflow_id": workflow.id, "type": workflow.type},
            )
            return
        if workflow.id is None:
            raise ValueError("Workflow must be saved before it can be toggled")

        enabled = workflow.enabled if enable is None else enable
        if enabled:
            if previous is not None and previous.config != workflow.config:
                trigger.off(previous)
            trigger.on(workflow)
            self.enabled_cache[workflow.id] = workflow
        else:
            trigger.off(workflow)
            self.enabled_cache.pop(workflow.id, None)

        if silent or self.sync_bus is None:
            return
        message = SyncMessage(workflow_id=workflow.id, enabled=enabled)
        bus = self.sync_bus

        def publish() -> None:
            bus.publish(self.name, message)

        if transaction is not None:
            transaction.after_commit(publish)
        else:
            publish()

    def handle_sync_message(self, message: SyncMessage) -> None:
        cached = self.enabled_cache.get(message.workflow_id)
        if message.enabled:
            workflow = self.store.get_workflow(message.workflow_id)
            if workflow is None:
                logger.warning(
                    "Workflow from sync message not found",
                    extra={"workflow_id": message.workflow_id},
                )
                return
            self.toggle(workflow, True, previous=cached, silent=True)
        elif cached is not None:
            self.toggle(cached, False, silent=True)

    def save_workflow(
        self, workflow: Workflow, *, transaction: Transaction | None = None
    ) -> Workflow:
        """Create or update a workflow, keeping one current version per key.

        An enabled version is always the current one: saving it demotes the
        previous current version (disabled, not current) and detaches its
        trigger. The first version of a key becomes current even if disabled.
        Triggers are toggled once the write is committed.
        """

        with self.store.transaction(transaction) as tx:
            previous = (
                self.store.get_workflow(workflow.id, transaction=tx)
                if workflow.id is not None
                else None
            )
            if previous is not None:
                # Counters only change when executions are created.
                workflow.executed = previous.executed
                workflow.all_executed = previous.all_executed
            prior = self.store.find_current_workflow(
                workflow.key, exclude_id=workflow.id, transaction=tx
            )
            if workflow.enabled:
                workflow.current = True
            elif not workflow.current and prior is None:
                workflow.current = True

            demoted: Workflow | None = None
            if workflow.current and prior is not None:
                demoted = self.store.update_workflow(
                    prior, enabled=False, current=None, transaction=tx
                )

            saved = self.store.save_workflow(workflow, transaction=tx)
            snapshot = saved.model_copy(deep=True)

            def after_commit() -> None:
                if demoted is not None:
                    self.toggle(demoted, False)
                if snapshot.enabled or (previous is not None and previous.enabled):
                    self.toggle(snapshot, previous=previous)

            tx.after_commit(after_commit)
        return saved

    def destroy_workflow(
        self, workflow_id: int, *, transaction: Transaction | None = None
    ) -> Workflow:
        with self.store.transaction(transaction) as tx:
            workflow = self.store.get_workflow(workflow_id, transaction=tx)
            if workflow is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
            self.store.destroy_workflow(workflow_id, transaction=tx)
            if workflow.enabled:
                tx.after_commit(lambda: self.toggle(workflow, False))
        return workflow

    def create_revision(
        self,
        workflow_id: int,
        *,
        values: dict[str, Any] | None = None,
        transaction: Transaction | None = None,
    ) -> Workflow:
        """Copy a workflow (with its nodes) as a new disabled version of the same key."""

        with self.store.transaction(transaction) as tx:
            source = self.store.get_workflow(workflow_id, transaction=tx)
            if source is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
            data = source.model_dump(
                exclude={"id", "enabled", "current", "executed", "created_at", "updated_at"}
            )
            data.update(values or {})
            revision = Workflow.model_validate({**data, "enabled": False, "current": None})
            return self.save_workflow(revision, transaction=tx)

    # -- event intake ------------------------------------------------------

    def trigger(
        self, workflow: Workflow, context: Any, options: EventOptions | None = None
    ) -> Processor | None:
        """Fire an event for `workflow`.

        Synchronous workflows (and manual runs) are processed before this
        returns and their processor is returned. Everything else is queued and
        `None` is returned immediately.
        """

        options = options or EventOptions()
        wf_logger = self.get_logger(workflow.id)
        if not self._ready:
            wf_logger.warning("Engine is not ready, event of workflow ignored")
            return None
        if not workflow.enabled and not options.manually:
            wf_logger.warning("Workflow is disabled, event ignored")
            return None
        if context is None:
            wf_logger.warning("Event context is empty, event ignored")
            return None
        if workflow.type not in self.triggers:
            wf_logger.error(
                "Trigger type of workflow is not registered, event ignored",
                extra={"type": workflow.type},
            )
            return None

        if options.manually or self.is_workflow_sync(workflow):
            return self._trigger_sync(workflow, context, options)

        # The caller's transaction is over by the time the event is drained.
        event = (workflow, context, replace(options, transaction=None))
        with self._lock:
            self._events.append(event)
            count = len(self._events)
        wf_logger.info("New event queued", extra={"events": count})
        if count == 1:
            self._kick_prepare()
        return None

    def _trigger_sync(
        self, workflow: Workflow, context: Any, options: EventOptions
    ) -> Processor | None:
        options = replace(options, deferred=False)
        wf_logger = self.get_logger(workflow.id)
        with self._executing:
            try:
                execution = self.create_execution(workflow, context, options)
            except Exception:
                wf_logger.exception("Creating execution of synchronous event failed")
                return None
            if execution is None:
                return None
            return self.process(execution, transaction=options.transaction)

    def create_execution(
        self, workflow: Workflow, context: Any, options: EventOptions | None = None
    ) -> Execution | None:
        """Persist a new execution for an event, or `None` if the trigger rejects it.

        Store errors (for example a duplicate `event_key`) roll the transaction
        back and propagate. A write conflict on the workflow row is retried when
        the execution gets its own transaction.
        """

        options = options or EventOptions()
        if workflow.id is None:
            raise ValueError("Workflow must be saved before it can be executed")
        attempt = 1
        while True:
            try:
                return self._create_execution(workflow, context, options)
            except ConflictError:
                # A caller-owned transaction can only be retried by its owner.
                if options.transaction is not None or attempt >= CONFLICT_RETRIES:
                    raise
                self.get_logger(workflow.id).info(
                    "Workflow changed while creating execution, retrying",
                    extra={"attempt": attempt},
                )
                attempt += 1

    def _create_execution(
        self, workflow: Workflow, context: Any, options: EventOptions
    ) -> Execution | None:
        assert workflow.id is not None
        trigger = self.triggers.get(workflow.type)
        wf_logger = self.get_logger(workflow.id)

        with self.store.transaction(options.transaction) as tx:
            if not trigger.validate_event(workflow, context, options):
                wf_logger.info("Event rejected by trigger")
                return None

            values: dict[str, Any] = {
                "workflow_id": workflow.id,
                "key": workflow.key,
                "context": context,
                "status": (
                    ExecutionStatus.STARTED if options.deferred else ExecutionStatus.QUEUEING
                ),
            }
            if options.event_key:
                values["event_key"] = options.event_key
            execution = self.store.create_execution(Execution(**values), transaction=tx)

            updated = self.store.increment_workflow(
                workflow.id, ["executed", "all_executed"], transaction=tx
            )
            if updated is None:
                updated = self.store.get_workflow(workflow.id, transaction=tx)
                if updated is None:
                    raise NotFoundError(f"Workflow {workflow.id} not found")
            self.store.update_workflows(
                key=workflow.key,
                values={"all_executed": updated.all_executed},
                transaction=tx,
            )
            workflow.executed = updated.executed
            workflow.all_executed = updated.all_executed
            execution.workflow = workflow

        wf_logger.info(
            "Execution created",
            extra={"execution_id": execution.id, "status": execution.status.value},
        )
        return execution

    def prepare(self) -> None:
        """Turn every queued event into an execution, then dispatch.

        Returns at once if a drain is already running.
        """

        with self._lock:
            if self._preparing:
                return
            self._preparing = True
        self._drain_events()

    def _kick_prepare(self) -> None:
        with self._lock:
            if self._preparing:
                return
            self._preparing = True
            self._preparer = threading.Thread(
                target=self._drain_events, name="flow-engine-prepare", daemon=True
            )
            self._preparer.start()

    def _drain_events(self) -> None:
        while True:
            with self._lock:
                if not self._events:
                    self._preparing = False
                    break
                workflow, context, options = self._events.popleft()
            self._prepare_event(workflow, context, options)
        self.dispatch()

    def _prepare_event(self, workflow: Workflow, context: Any, options: EventOptions) -> None:
        if self.store.single_writer:
            # Wait for the running execution before writing.
            with self._executing:
                pass
        wf_logger = self.get_logger(workflow.id)
        try:
            execution = self.create_execution(workflow, context, options)
        except Exception:
            # Dropped, not requeued: a failing event would be retried forever.
            wf_logger.exception("Creating execution of queued event failed, event dropped")
            return
        if execution is None or execution.status != ExecutionStatus.QUEUEING:
            return
        with self._lock:
            if self._in_flight == 0 and not self._pending:
                self._pending.append((execution, None))

    # -- dispatching -------------------------------------------------------

    def dispatch(self) -> None:
        """Wake the worker to pick up the next unit of work."""

        if not self._ready:
            logger.warning("Engine is not ready, dispatch ignored")
            return
        with self._wakeup:
            self._dispatch_requested = True
            self._wakeup.notify_all()

    def _work(self) -> None:
        interval = self.settings.checker_interval_seconds
        while True:
            with self._wakeup:
                if not self._dispatch_requested and not self._stopping:
                    # A timeout doubles as the periodic check for queueing executions.
                    self._wakeup.wait(timeout=interval)
                if self._stopping:
                    return
                self._dispatch_requested = False
            self._drain_pending()

    def _drain_pending(self) -> None:
        while True:
            with self._lock:
                if not self._ready or self._stopping or self._events:
                    return
                item = self._pending.popleft() if self._pending else None
            with self._executing:
                try:
                    if item is None:
                        execution = self.store.find_queueing_execution()
                        if execution is None:
                            return
                        job = None
                        logger.info(
                            "Queueing execution picked from store",
                            extra={"execution_id": execution.id},
                        )
                    else:
                        execution, job = item
                        fresh = self._reload_pending(execution, job)
                        if fresh is None:
                            continue
                        execution = fresh
                except Exception:
                    logger.exception("Dispatching failed")
                    return
                self.process(execution, job)

    def _reload_pending(self, execution: Execution, job: Job | None) -> Execution | None:
        """Re-read a pending item; `None` if it was already handled.

        The same execution may have been picked up by polling, or the same
        job resumed twice, since the item was queued.
        """

        if execution.id is None:
            return None
        fresh = self.store.get_execution(execution.id, with_workflow=True)
        if fresh is None:
            runnable = False
        elif job is not None:
            stored = self.store.get_job(job.id) if job.id is not None else None
            runnable = (
                fresh.status == ExecutionStatus.STARTED
                and stored is not None
                and stored.status == JobStatus.PENDING
            )
        elif execution.status == ExecutionStatus.QUEUEING:
            runnable = fresh.status == ExecutionStatus.QUEUEING
        else:
            # A deferred execution runs once, before any job exists.
            runnable = fresh.status == ExecutionStatus.STARTED and not self.store.list_jobs(
                execution.id
            )
        if not runnable or fresh is None:
            self.get_logger(execution.workflow_id).info(
                "Pending item already handled, skipped",
                extra={"execution_id": execution.id, "job_id": job.id if job else None},
            )
            return None
        if job is not None:
            job.execution = fresh
        return fresh

    # -- processing --------------------------------------------------------

    def create_processor(
        self, execution: Execution, *, transaction: Transaction | None = None
    ) -> Processor:
        return Processor(execution, engine=self, transaction=transaction)

    def process(
        self,
        execution: Execution,
        job: Job | None = None,
        *,
        transaction: Transaction | None = None,
    ) -> Processor | None:
        """Run (or resume at `job`) one execution until it ends or suspends.

        Instruction errors are logged and leave the execution at its last
        persisted status. Returns `None` only if no processor could be created.
        """

        wf_logger = self.get_logger(execution.workflow_id)
        extra = {"execution_id": execution.id, "job_id": job.id if job is not None else None}
        processor: Processor | None = None
        with self._executing:
            with self._lock:
                self._in_flight += 1
            try:
                if execution.status == ExecutionStatus.QUEUEING:
                    check_transition(execution.status, ExecutionStatus.STARTED)
                    self.store.update_execution(
                        execution, status=ExecutionStatus.STARTED, transaction=transaction
                    )
                processor = self.create_processor(execution, transaction=transaction)
                wf_logger.info(
                    "Resuming execution" if job is not None else "Starting execution",
                    extra=extra,
                )
                if job is not None:
                    processor.resume(job)
                else:
                    processor.start()
                wf_logger.info(
                    "Execution processed",
                    extra={**extra, "status": execution.status.value},
                )
                self._delete_on_status(execution, transaction=transaction)
                return processor
            except Exception:
                wf_logger.exception("Execution failed", extra=extra)
                return processor
            finally:
                with self._lock:
                    self._in_flight -= 1

    def _delete_on_status(
        self, execution: Execution, *, transaction: Transaction | None = None
    ) -> None:
        workflow = execution.workflow
        if workflow is None or execution.id is None:
            return
        if execution.status in workflow.options.delete_execution_on_status:
            self.store.destroy_execution(execution.id, transaction=transaction)
            self.get_logger(execution.workflow_id).info(
                "Execution deleted on status",
                extra={"execution_id": execution.id, "status": execution.status.value},
            )

    # -- resumption --------------------------------------------------------

    def resume(self, job: Job) -> None:
        """Continue a suspended execution from `job` on the worker."""

        execution = job.execution
        if execution is None:
            execution = self.store.get_execution(job.execution_id, with_workflow=True)
            if execution is None:
                raise NotFoundError(f"Execution {job.execution_id} of job {job.id} not found")
            job.execution = execution
        with self._lock:
            self._pending.append((execution, job))
        self.dispatch()

    def start(self, execution: Execution) -> None:
        """Queue a deferred (already STARTED) execution for its first run."""

        if execution.status != ExecutionStatus.STARTED:
            self.get_logger(execution.workflow_id).warning(
                "Only started executions can be started",
                extra={"execution_id": execution.id, "status": execution.status.value},
            )
            return
        with self._lock:
            self._pending.append((execution, None))
        self.dispatch()

    def cancel(self, execution: Execution) -> Execution:
        """Cancel a queueing or started execution and its pending jobs.

        Waits for the execution being processed, if any.
        """

        if execution.id is None:
            raise NotFoundError("Execution has not been created")
        with self._executing:
            with self.store.transaction() as tx:
                current = self.store.get_execution(execution.id, transaction=tx)
                if current is None:
                    raise NotFoundError(f"Execution {execution.id} not found")
                check_transition(current.status, ExecutionStatus.CANCELED)
                self.store.update_execution(
                    current, status=ExecutionStatus.CANCELED, transaction=tx
                )
                for job in self.store.list_jobs(execution.id, transaction=tx):
                    if job.status == JobStatus.PENDING:
                        job.status = JobStatus.CANCELED
                        self.store.save_job(job, transaction=tx)
            with self._lock:
                self._pending = deque(
                    item for item in self._pending if item[0].id != execution.id
                )
        execution.status = current.status
        execution.updated_at = current.updated_at
        self.get_logger(execution.workflow_id).info(
            "Execution canceled", extra={"execution_id": execution.id}
        )
        return execution

    def execute(
        self, workflow: Workflow, context: Any, options: EventOptions | None = None
    ) -> Any:
        """Run `workflow` manually through its trigger's `execute`."""

        trigger = self.triggers.get(workflow.type)
        execute = getattr(trigger, "execute", None)
        if execute is None:
            raise UnsupportedOperationError(
                f"Trigger type {workflow.type!r} does not support manual execution"
            )
        return execute(workflow, context, options or EventOptions())

    # -- lifecycle ---------------------------------------------------------

    def init(self) -> None:
        """Reload enabled workflows, subscribe to the sync bus and start the worker."""

        with self._lock:
            if self._ready:
                return
            self._ready = True
            self._stopping = False

        for workflow in self.store.list_workflows(enabled=True):
            try:
                self.toggle(workflow, True, silent=True)
            except Exception:
                logger.exception("Enabling workflow failed", extra={"workflow_id": workflow.id})

        if self.sync_bus is not None:
            self.sync_bus.subscribe(self.name, self.handle_sync_message)

        self._worker = threading.Thread(target=self._work, name="flow-engine-worker", daemon=True)
        self._worker.start()
        logger.info(
            "Workflow engine ready",
            extra={"engine": self.name, "enabled_workflows": len(self.enabled_cache)},
        )
        self.dispatch()

    def teardown(self) -> None:
        """Stop the engine without losing queued events.

        Triggers are detached first, queued events are still turned into
        executions, and the execution being processed is allowed to finish.
        """

        for workflow in list(self.enabled_cache.values()):
            try:
                self.toggle(workflow, False, silent=True)
            except Exception:
                logger.exception("Disabling workflow failed", extra={"workflow_id": workflow.id})

        with self._lock:
            self._ready = False
            preparer = self._preparer

        self.prepare()
        if preparer is not None and preparer is not threading.current_thread():
            preparer.join()

        with self._wakeup:
            self._stopping = True
            self._wakeup.notify_all()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join()
        self._worker = None

        if self.sync_bus is not None:
            self.sync_bus.unsubscribe(self.name)
        self.loggers.close()
        logger.info("Workflow engine stopped", extra={"engine": self.name})

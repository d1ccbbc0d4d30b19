"""Workflow engine tying definitions, runs, the queue and the worker pool together."""

import logging
import threading
import uuid
from typing import Any

from models.definition import WorkflowDefinition
from models.graph import WorkflowGraph
from models.state import Run, RunStatus, TaskExecution, TaskExecutionStatus, TriggerType
from services.backfill import BackfillJob, BackfillRequest
from services.definition_store import (
    DefinitionConflictError,
    DefinitionStore,
    VersionNotFoundError,
)
from services.executors import ExecutorRegistry
from services.graph_validator import GraphValidator
from services.monitor import AttemptMonitor
from services.notifier import EventDispatcher
from services.resolver import DependencyResolver
from services.rollback import RollbackManager
from services.run_coordinator import RunCoordinator
from services.state_store import ExecutionStateStore, InvalidTransitionError
from services.task_queue import PriorityTaskQueue, QueuedTask
from services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class WorkflowNotRunnableError(Exception):
    """Raised when executing a workflow that is inactive or disabled."""

    def __init__(self, workflow_name: str, active: bool, enabled: bool):
        self.workflow_name = workflow_name
        self.active = active
        self.enabled = enabled
        reason = "inactive" if not active else "disabled"
        super().__init__(f"Workflow {workflow_name} is {reason}")


class BackfillNotFoundError(Exception):
    def __init__(self, backfill_id: str):
        self.backfill_id = backfill_id
        super().__init__(f"Backfill not found: {backfill_id}")


class WorkflowEngine:
    """Orchestrates workflow runs using the state store, queue and workers."""

    def __init__(
        self,
        definition_store: DefinitionStore,
        state_store: ExecutionStateStore,
        registry: ExecutorRegistry,
        task_queue: PriorityTaskQueue | None = None,
        dispatcher: EventDispatcher | None = None,
        resolver: DependencyResolver | None = None,
        pool_size: int = 4,
        poll_interval: float = 0.5,
        wait_seconds: float = 1.0,
        enqueue_timeout: float | None = None,
    ):
        if definition_store is None:
            raise ValueError("definition_store is required")
        if state_store is None:
            raise ValueError("state_store is required")
        if registry is None:
            raise ValueError("registry is required")

        self.definitions = definition_store
        self._state_store = state_store
        self._registry = registry
        self._task_queue = task_queue or PriorityTaskQueue()
        self._dispatcher = dispatcher or EventDispatcher()
        self._resolver = resolver or DependencyResolver()
        self._validator = GraphValidator(registry)
        self._wait_seconds = wait_seconds
        self._enqueue_timeout = enqueue_timeout

        self._monitor = AttemptMonitor(state_store, registry, self._dispatcher, self._enqueue)
        self._rollback = RollbackManager(state_store, registry, self._dispatcher)
        self._pool = WorkerPool(self._task_queue, self._handle_task, pool_size, poll_interval)

        self._coordinators: dict[str, RunCoordinator] = {}
        self._backfills: dict[str, BackfillJob] = {}
        self._lock = threading.Lock()

    # Lifecycle

    def start(self, recover: bool = True) -> None:
        """Start event delivery and workers; optionally resume unfinished runs."""
        self._dispatcher.start()
        self._pool.start()
        if recover:
            self.recover_runs()

    def stop(self, timeout: float | None = None) -> None:
        """Stop workers after their current attempts. Unfinished runs stay recoverable."""
        with self._lock:
            coordinators = list(self._coordinators.values())
        for coordinator in coordinators:
            coordinator.shutdown()
        self._pool.stop(timeout)
        self._monitor.shutdown()
        for coordinator in coordinators:
            coordinator.wait(timeout)
        self._dispatcher.stop()
        logger.info("Workflow engine stopped")

    # Definitions

    def validate(self, definition: WorkflowDefinition) -> WorkflowGraph:
        return self._validator.validate(definition)

    def delete_workflow(self, workflow_name: str) -> bool:
        """Delete a workflow. Returns False if it was deactivated instead because runs reference it."""
        self.definitions.get(workflow_name)
        if self._state_store.has_runs(workflow_name):
            self.definitions.deactivate(workflow_name)
            logger.info(f"Workflow {workflow_name} has run history; deactivated instead of deleted")
            return False
        self.definitions.delete(workflow_name)
        return True

    def delete_version(self, workflow_name: str, version: int) -> None:
        """Delete a past version unless an unfinished run still uses it."""
        in_use = [
            run.run_id
            for run in self._state_store.list_active_runs()
            if run.workflow_name == workflow_name and run.workflow_version == version
        ]
        if in_use:
            runs = ", ".join(in_use)
            raise DefinitionConflictError(
                workflow_name, f"Version {version} of {workflow_name} is used by unfinished runs: {runs}"
            )
        self.definitions.delete_version(workflow_name, version)

    # Runs

    def execute_workflow(
        self,
        workflow_name: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        parameters: dict[str, Any] | None = None,
    ) -> Run:
        """Start a run of the current version of a stored workflow."""
        definition = self.definitions.get(workflow_name)
        if not definition.active or not definition.enabled:
            raise WorkflowNotRunnableError(workflow_name, definition.active, definition.enabled)
        return self.start_run(definition, trigger_type, parameters)

    def start_run(
        self,
        definition: WorkflowDefinition,
        trigger_type: TriggerType = TriggerType.MANUAL,
        parameters: dict[str, Any] | None = None,
    ) -> Run:
        """Validate the definition, create the run and hand it to a coordinator."""
        if definition is None:
            raise ValueError("definition is required")

        graph = self._validator.validate(definition)
        run_id = f"run-{uuid.uuid4().hex[:12]}"
        run = self._state_store.create_run(
            run_id,
            definition.workflow_name,
            definition.version,
            trigger_type,
            parameters,
        )
        coordinator = self._new_coordinator(run, definition, graph)
        coordinator.start()
        logger.info(
            f"Run {run_id} of {definition.workflow_name} v{definition.version} "
            f"created ({trigger_type.value})"
        )
        return run

    def cancel_run(self, run_id: str) -> Run:
        """Request cooperative cancellation. The run ends CANCELLED asynchronously."""
        run = self._state_store.get_run(run_id)
        if run.status.is_terminal:
            raise InvalidTransitionError(f"run {run_id}", run.status.value, RunStatus.CANCELLED.value)

        with self._lock:
            coordinator = self._coordinators.get(run_id)
        if coordinator is None:
            # Run left over from a previous process
            coordinator = self._resume(run)
            if coordinator is None:
                return self._state_store.get_run(run_id)
            coordinator.cancel()
            coordinator.start()
        else:
            coordinator.cancel()
        logger.info(f"Cancellation requested for run {run_id}")
        return self._state_store.get_run(run_id)

    def wait_for_run(self, run_id: str, timeout: float | None = None) -> Run:
        """Block until the run is terminal or the timeout passes; return its state."""
        with self._lock:
            coordinator = self._coordinators.get(run_id)
        if coordinator is not None:
            coordinator.wait(timeout)
        return self._state_store.get_run(run_id)

    def get_run(self, run_id: str) -> Run:
        return self._state_store.get_run(run_id)

    def run_history(self, workflow_name: str, limit: int = 50) -> list[Run]:
        return self._state_store.list_runs(workflow_name, limit)

    def task_executions(self, run_id: str) -> list[TaskExecution]:
        return self._state_store.list_executions(run_id)

    def run_summary(self, run_id: str) -> dict[str, int]:
        """Task counters derived from the latest attempt of every task."""
        run = self._state_store.get_run(run_id)
        latest = self._state_store.latest_executions(run_id)
        try:
            total = len(self.definitions.get_version(run.workflow_name, run.workflow_version).definition.tasks)
        except VersionNotFoundError:
            total = len(latest)

        def count(*statuses: TaskExecutionStatus) -> int:
            return sum(1 for e in latest.values() if e.status in statuses)

        return {
            "total_tasks": total,
            "completed_tasks": count(TaskExecutionStatus.SUCCESS),
            "failed_tasks": count(TaskExecutionStatus.FAILED),
            "skipped_tasks": count(TaskExecutionStatus.SKIPPED),
            "cancelled_tasks": count(TaskExecutionStatus.CANCELLED),
            "running_tasks": count(
                TaskExecutionStatus.QUEUED,
                TaskExecutionStatus.RUNNING,
                TaskExecutionStatus.RETRY_SCHEDULED,
            ),
        }

    # Backfill

    def backfill(self, workflow_name: str, request: BackfillRequest) -> BackfillJob:
        """Start one run per period of the request, in the background."""
        definition = self.definitions.get(workflow_name)
        if not definition.active or not definition.enabled:
            raise WorkflowNotRunnableError(workflow_name, definition.active, definition.enabled)

        job = BackfillJob(
            workflow_name,
            request,
            start_run=lambda params: self.execute_workflow(
                workflow_name, TriggerType.BACKFILL, params
            ).run_id,
            wait_for_run=self.wait_for_run,
        )
        with self._lock:
            self._backfills[job.backfill_id] = job
        job.start()
        return job

    def get_backfill(self, backfill_id: str) -> BackfillJob:
        with self._lock:
            job = self._backfills.get(backfill_id)
        if job is None:
            raise BackfillNotFoundError(backfill_id)
        return job

    # Queue and pool

    def queue_size(self) -> int:
        return self._task_queue.queue_length()

    def get_pool_size(self) -> int:
        return self._pool.size

    def set_pool_size(self, size: int) -> int:
        return self._pool.set_size(size)

    # Recovery

    def recover_runs(self) -> list[str]:
        """Resume every non-terminal run found in the state store."""
        recovered = []
        for run in self._state_store.list_active_runs():
            with self._lock:
                if run.run_id in self._coordinators:
                    continue
            coordinator = self._resume(run)
            if coordinator is not None:
                coordinator.start()
                recovered.append(run.run_id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} runs: {recovered}")
        return recovered

    def _resume(self, run: Run) -> RunCoordinator | None:
        try:
            version = self.definitions.get_version(run.workflow_name, run.workflow_version)
        except VersionNotFoundError as e:
            logger.error(f"Cannot resume run {run.run_id}: {e}")
            self._state_store.update_run_status(
                run.run_id, RunStatus.FAILED, error=f"Definition unavailable: {e}"
            )
            return None

        definition = version.definition
        coordinator = self._new_coordinator(run, definition, WorkflowGraph.from_definition(definition))
        for execution in self._state_store.latest_executions(run.run_id).values():
            item = QueuedTask(
                run_id=run.run_id,
                task_id=execution.task_id,
                attempt_number=execution.attempt_number,
                priority=execution.priority,
            )
            if execution.status == TaskExecutionStatus.QUEUED:
                self._enqueue(item)
            elif execution.status == TaskExecutionStatus.RUNNING:
                self._monitor.fail_interrupted(execution, coordinator.context)
            elif execution.status == TaskExecutionStatus.RETRY_SCHEDULED:
                self._monitor.schedule_retry(item, coordinator.context, 0)
        logger.info(f"Resuming run {run.run_id} ({run.status.value})")
        return coordinator

    # Internals

    def _new_coordinator(
        self, run: Run, definition: WorkflowDefinition, graph: WorkflowGraph
    ) -> RunCoordinator:
        coordinator = RunCoordinator(
            run.run_id,
            definition,
            graph,
            self._state_store,
            self._task_queue,
            self._resolver,
            self._monitor,
            self._rollback,
            self._dispatcher,
            parameters=run.parameters,
            wait_seconds=self._wait_seconds,
            on_finished=self._on_finished,
        )
        with self._lock:
            self._coordinators[run.run_id] = coordinator
        return coordinator

    def _on_finished(self, run_id: str) -> None:
        with self._lock:
            self._coordinators.pop(run_id, None)

    def _enqueue(self, item: QueuedTask) -> None:
        self._task_queue.enqueue_task(item, timeout=self._enqueue_timeout)

    def _handle_task(self, item: QueuedTask) -> None:
        with self._lock:
            coordinator = self._coordinators.get(item.run_id)
        if coordinator is None:
            logger.warning(f"No active run for {item.run_id}/{item.task_id}; dropping")
            return
        self._monitor.run_attempt(item, coordinator.context)

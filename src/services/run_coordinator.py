"""Drives a single workflow run from start to terminal state."""

import logging
import queue
import threading
from typing import Any, Callable

from models.definition import DependencyKind, WorkflowDefinition
from models.events import EngineEvent, EventType
from models.graph import WorkflowGraph
from models.state import (
    RollbackOutcome,
    RollbackStatus,
    RunStatus,
    TaskExecution,
    TaskExecutionStatus,
)
from services.monitor import AttemptMonitor, RunContext
from services.notifier import EventDispatcher
from services.resolver import DependencyResolver, Resolution
from services.rollback import RollbackManager
from services.state_store import (
    DuplicateAttemptError,
    ExecutionStateStore,
    InvalidTransitionError,
)
from services.task_queue import PriorityTaskQueue, QueuedTask

logger = logging.getLogger(__name__)


class RunCoordinator:
    """Resolves ready tasks, feeds the queue and finalizes the run.

    The coordinator runs on its own thread and sleeps on a signal channel that
    workers and retry timers poke whenever an attempt changes state. The wait
    is bounded so a lost signal only delays progress.
    """

    def __init__(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        graph: WorkflowGraph,
        state_store: ExecutionStateStore,
        task_queue: PriorityTaskQueue,
        resolver: DependencyResolver,
        monitor: AttemptMonitor,
        rollback_manager: RollbackManager,
        dispatcher: EventDispatcher,
        parameters: dict[str, Any] | None = None,
        wait_seconds: float = 1.0,
        on_finished: Callable[[str], None] | None = None,
    ):
        if not run_id:
            raise ValueError("run_id is required")
        if definition is None:
            raise ValueError("definition is required")
        if graph is None:
            raise ValueError("graph is required")
        if wait_seconds <= 0:
            raise ValueError("wait_seconds must be positive")

        self.run_id = run_id
        self.definition = definition
        self._graph = graph
        self._order = graph.topological_order()
        self._store = state_store
        self._queue = task_queue
        self._resolver = resolver
        self._monitor = monitor
        self._rollback = rollback_manager
        self._dispatcher = dispatcher
        self._wait_seconds = wait_seconds
        self._on_finished = on_finished

        self._signals: queue.Queue[None] = queue.Queue()
        self._cancel_requested = threading.Event()
        self._shutdown = threading.Event()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None

        self.context = RunContext(
            run_id=run_id,
            definition=definition,
            parameters=dict(parameters or {}),
            notify=self.notify,
        )

    # Control

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name=f"run-{self.run_id}", daemon=True
        )
        self._thread.start()

    def notify(self) -> None:
        """Wake the coordinator; called whenever an attempt changes state."""
        self._signals.put(None)

    def cancel(self) -> None:
        self._cancel_requested.set()
        self.notify()

    def shutdown(self) -> None:
        """Stop driving without finalizing; the run stays recoverable."""
        self._shutdown.set()
        self.notify()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run is finalized. Returns False on timeout."""
        return self._done.wait(timeout)

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    # Main loop

    def run(self) -> None:
        try:
            self._drive()
        except Exception as e:
            logger.exception(f"Coordinator for run {self.run_id} crashed")
            self._abort(f"Coordinator error: {e}")
        finally:
            self._done.set()
            if self._on_finished is not None:
                self._on_finished(self.run_id)

    def _drive(self) -> None:
        run = self._store.get_run(self.run_id)
        if run.status == RunStatus.PENDING:
            self._store.update_run_status(self.run_id, RunStatus.RUNNING)
            logger.info(
                f"Run {self.run_id} started for {self.definition.workflow_name} "
                f"v{self.definition.version}"
            )

        while True:
            if self._shutdown.is_set():
                logger.info(f"Coordinator for run {self.run_id} shut down")
                return
            if self._cancel_requested.is_set():
                self._finish_cancelled()
                return

            latest = self._store.latest_executions(self.run_id)
            conditions = self._resolver.evaluate_conditions(self._graph, latest)
            resolution = self._resolver.resolve(self._graph, latest, conditions)

            failures = self._required_failures(latest)
            if failures:
                # Only COMPLETION follow-ups of failed tasks still start
                followups = self._failure_followups(resolution, latest)
                if not followups.is_empty:
                    self._apply(followups)
                    continue
                if not self._awaiting_followups(latest):
                    self._finish_failed(failures)
                    return
                self._wait_for_signal()
                continue

            if not resolution.is_empty:
                self._apply(resolution)
                continue

            if all(
                task_id in latest and latest[task_id].status.is_task_terminal
                for task_id in self._graph.tasks
            ):
                self._finish_succeeded()
                return

            self._wait_for_signal()

    def _wait_for_signal(self) -> None:
        try:
            self._signals.get(timeout=self._wait_seconds)
        except queue.Empty:
            return
        # Collapse bursts into one re-resolve
        while True:
            try:
                self._signals.get_nowait()
            except queue.Empty:
                return

    def _apply(self, resolution: Resolution) -> None:
        for task_id, reason in resolution.skipped.items():
            self._store.create_execution(
                self.run_id, task_id, 1, TaskExecutionStatus.SKIPPED, note=reason
            )
            logger.info(f"Task {self.run_id}/{task_id} skipped: {reason}")

        for task_id, reason in resolution.blocked.items():
            self._store.create_execution(
                self.run_id, task_id, 1, TaskExecutionStatus.CANCELLED, note=reason
            )
            logger.info(f"Task {self.run_id}/{task_id} cancelled: {reason}")

        for task_id in resolution.ready:
            priority = self._graph.tasks[task_id].priority
            self._store.create_execution(
                self.run_id, task_id, 1, TaskExecutionStatus.QUEUED, priority=priority
            )
            self._queue.enqueue_task(
                QueuedTask(run_id=self.run_id, task_id=task_id, attempt_number=1, priority=priority)
            )
            logger.info(f"Task {self.run_id}/{task_id} queued (priority {priority})")

    def _is_tolerated_failure(self, task_id: str) -> bool:
        """A failure is covered only by a SKIP_ON_FAILURE edge and no SUCCESS edge."""
        kinds = {dep.kind for dep in self._graph.outbound.get(task_id, [])}
        return DependencyKind.SKIP_ON_FAILURE in kinds and DependencyKind.SUCCESS not in kinds

    def _follows_failure(self, task_id: str, latest: dict[str, TaskExecution]) -> bool:
        return any(
            dep.kind == DependencyKind.COMPLETION
            and dep.upstream_task_id in latest
            and latest[dep.upstream_task_id].status == TaskExecutionStatus.FAILED
            for dep in self._graph.inbound[task_id]
        )

    def _failure_followups(
        self, resolution: Resolution, latest: dict[str, TaskExecution]
    ) -> Resolution:
        def keep(task_id: str) -> bool:
            return self._follows_failure(task_id, latest)

        return Resolution(
            ready=[t for t in resolution.ready if keep(t)],
            skipped={t: r for t, r in resolution.skipped.items() if keep(t)},
            blocked={t: r for t, r in resolution.blocked.items() if keep(t)},
        )

    def _awaiting_followups(self, latest: dict[str, TaskExecution]) -> bool:
        """Whether a follow-up of a failed task is unfinished while work is still in flight."""
        unfinished = [
            task_id
            for task_id in self._graph.tasks
            if self._follows_failure(task_id, latest)
            and (task_id not in latest or not latest[task_id].status.is_task_terminal)
        ]
        if not unfinished:
            return False
        return any(not e.status.is_task_terminal for e in latest.values())

    def _required_failures(self, latest: dict[str, TaskExecution]) -> list[TaskExecution]:
        return [
            latest[task_id]
            for task_id in self._order
            if task_id in latest
            and latest[task_id].status == TaskExecutionStatus.FAILED
            and not self._is_tolerated_failure(task_id)
        ]

    # Finalization

    def _close(self, note: str, interrupt: bool) -> None:
        """Stop new work: cancel retry timers and pull queued items of this run."""
        self._monitor.close_run(self.run_id)
        for item in self._queue.remove_run(self.run_id):
            try:
                self._store.update_execution_status(
                    item.run_id,
                    item.task_id,
                    item.attempt_number,
                    TaskExecutionStatus.CANCELLED,
                    note=note,
                )
            except InvalidTransitionError:
                pass
        if interrupt:
            self._monitor.cancel_active(self.run_id)

    def _settle(self, note: str) -> None:
        """Cancel every unfinished task once no attempt of the run is executing."""
        while True:
            latest = self._store.latest_executions(self.run_id)
            in_flight = False
            for task_id in self._order:
                execution = latest.get(task_id)
                try:
                    if execution is None:
                        self._store.create_execution(
                            self.run_id, task_id, 1, TaskExecutionStatus.CANCELLED, note=note
                        )
                    elif execution.status == TaskExecutionStatus.QUEUED:
                        self._store.update_execution_status(
                            self.run_id,
                            task_id,
                            execution.attempt_number,
                            TaskExecutionStatus.CANCELLED,
                            note=note,
                        )
                    elif execution.status == TaskExecutionStatus.RETRY_SCHEDULED:
                        self._store.create_execution(
                            self.run_id,
                            task_id,
                            execution.attempt_number + 1,
                            TaskExecutionStatus.CANCELLED,
                            priority=execution.priority,
                            note=note,
                        )
                    elif execution.status == TaskExecutionStatus.RUNNING:
                        in_flight = True
                except (InvalidTransitionError, DuplicateAttemptError):
                    # A worker or retry timer got there first; look again
                    in_flight = True
            if not in_flight:
                return
            self._wait_for_signal()

    def _finish_succeeded(self) -> None:
        run = self._store.update_run_status(self.run_id, RunStatus.SUCCESS)
        logger.info(f"Run {self.run_id} succeeded in {run.duration_seconds:.2f}s")
        self._emit_terminal(run.status)
        self._monitor.release_run(self.run_id)

    def _finish_cancelled(self) -> None:
        logger.info(f"Cancelling run {self.run_id}")
        self._close("run cancelled", interrupt=True)
        self._settle("run cancelled")
        run = self._store.update_run_status(self.run_id, RunStatus.CANCELLED)
        logger.info(f"Run {self.run_id} cancelled")
        self._emit_terminal(run.status)
        self._monitor.release_run(self.run_id)

    def _finish_failed(self, failures: list[TaskExecution]) -> None:
        first = failures[0]
        logger.error(f"Run {self.run_id} failing: task {first.task_id} failed: {first.error}")
        self._close("run failed", interrupt=False)
        self._settle("run failed")

        # Attempts still in flight when the first failure was seen may have failed too
        latest = self._store.latest_executions(self.run_id)
        failures = self._required_failures(latest) or failures
        self._run_rollback(failures)

        error = f"Task {first.task_id} failed: {first.error}"
        run = self._store.update_run_status(
            self.run_id, RunStatus.FAILED, error=error, failed_task_id=first.task_id
        )
        self._emit_terminal(run.status, {"failed_task_id": first.task_id, "error": first.error})
        self._monitor.release_run(self.run_id)

    def _run_rollback(self, failures: list[TaskExecution]) -> None:
        config = self.definition.rollback_config
        if config is None:
            return
        if not config.enabled:
            self._store.set_rollback(
                self.run_id,
                RollbackOutcome(status=RollbackStatus.SKIPPED, error_message="rollback disabled"),
            )
            return

        first = failures[0]
        sla = self.definition.sla_config_for(self.definition.get_task(first.task_id))
        timed_out = first.sla_breached and sla is not None and sla.breach_is_failure
        if (timed_out and not config.on_timeout) or (not timed_out and not config.on_failure):
            reason = "timeout" if timed_out else "failure"
            self._store.set_rollback(
                self.run_id,
                RollbackOutcome(
                    status=RollbackStatus.SKIPPED,
                    error_message=f"rollback not configured for {reason}",
                ),
            )
            return

        depth = config.max_rollback_depth
        if depth is None:
            depth = self._graph.longest_path_length()
        self._rollback.rollback(
            self.run_id,
            self.definition,
            [f.task_id for f in failures],
            depth,
        )

    def _abort(self, error: str) -> None:
        try:
            self._close("run aborted", interrupt=True)
            run = self._store.update_run_status(self.run_id, RunStatus.FAILED, error=error)
            self._emit_terminal(run.status, {"error": error})
        except Exception as e:
            logger.error(f"Could not mark run {self.run_id} failed: {e}")
        finally:
            self._monitor.release_run(self.run_id)

    def _emit_terminal(self, status: RunStatus, details: dict[str, Any] | None = None) -> None:
        self._dispatcher.emit(
            EngineEvent(
                event_type=EventType.RUN_TERMINAL,
                run_id=self.run_id,
                workflow_name=self.definition.workflow_name,
                details={"status": status.value, **(details or {})},
            )
        )

"""Runs task attempts under their SLA and schedules retries for failures."""

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from models.definition import TaskDefinition, WorkflowDefinition
from models.events import EngineEvent, EventType
from models.state import TaskExecution, TaskExecutionStatus
from services.executors import ExecutorNotFoundError, ExecutorRegistry
from services.notifier import EventDispatcher
from services.state_store import (
    DuplicateAttemptError,
    ExecutionStateStore,
    InvalidTransitionError,
)
from services.task_queue import QueuedTask

logger = logging.getLogger(__name__)


class SLABreachError(Exception):
    """Raised into an attempt whose SLA breach is configured as fatal."""

    def __init__(self, task_id: str, limit_seconds: float):
        self.task_id = task_id
        self.limit_seconds = limit_seconds
        super().__init__(f"Task {task_id} exceeded SLA of {limit_seconds:g}s")


@dataclass
class RunContext:
    """What the monitor needs to know about the run an attempt belongs to."""
    run_id: str
    definition: WorkflowDefinition
    parameters: dict[str, Any] = field(default_factory=dict)
    notify: Callable[[], None] = lambda: None


@dataclass
class AttemptOutcome:
    output: dict[str, Any] | None = None
    error: Exception | None = None
    timed_out: bool = False


class AttemptMonitor:
    """Executes attempts, watches their SLA and owns retry timers.

    Every retry creates a fresh attempt record at the same priority. Once a
    run is closed no further retries are scheduled for it.
    """

    def __init__(
        self,
        state_store: ExecutionStateStore,
        registry: ExecutorRegistry,
        dispatcher: EventDispatcher,
        enqueue: Callable[[QueuedTask], None],
    ):
        if state_store is None:
            raise ValueError("state_store is required")
        if registry is None:
            raise ValueError("registry is required")
        if dispatcher is None:
            raise ValueError("dispatcher is required")
        if enqueue is None:
            raise ValueError("enqueue is required")

        self._store = state_store
        self._registry = registry
        self._dispatcher = dispatcher
        self._enqueue = enqueue

        self._lock = threading.Lock()
        self._timers: dict[tuple[str, str], threading.Timer] = {}
        self._closed_runs: set[str] = set()
        self._active: dict[str, dict[tuple[str, int], threading.Event]] = {}

    # Attempt execution

    def run_attempt(self, item: QueuedTask, context: RunContext) -> TaskExecution | None:
        """Execute one dequeued attempt to its terminal state.

        Returns None if the attempt was no longer queued when picked up.
        """
        if item is None:
            raise ValueError("item is required")
        if context is None:
            raise ValueError("context is required")

        task = context.definition.get_task(item.task_id)
        try:
            self._store.update_execution_status(
                item.run_id, item.task_id, item.attempt_number, TaskExecutionStatus.RUNNING
            )
        except InvalidTransitionError as e:
            logger.info(f"Dropping {item.run_id}/{item.task_id}#{item.attempt_number}: {e}")
            return None

        logger.info(f"Running {item.run_id}/{item.task_id} attempt {item.attempt_number}")
        cancel_signal = self._register_active(item)
        try:
            outcome = self._invoke(task, item, context, cancel_signal)
        finally:
            self._unregister_active(item)

        execution = self._finish(task, item, context, outcome)
        context.notify()
        return execution

    def _invoke(
        self,
        task: TaskDefinition,
        item: QueuedTask,
        context: RunContext,
        cancel_signal: threading.Event,
    ) -> AttemptOutcome:
        try:
            executor = self._registry.get(task.task_type)
        except ExecutorNotFoundError as e:
            return AttemptOutcome(error=e)

        config = dict(task.config)
        if context.parameters:
            config["run_parameters"] = dict(context.parameters)
        upstream_outputs = self._upstream_outputs(context, task.task_id)

        future: Future = Future()
        thread = threading.Thread(
            target=self._call_executor,
            args=(future, executor, config, upstream_outputs, cancel_signal),
            name=f"attempt-{item.task_id}-{item.attempt_number}",
            daemon=True,
        )
        thread.start()

        sla = context.definition.sla_config_for(task)
        try:
            if sla is None:
                return AttemptOutcome(output=future.result())
            try:
                return AttemptOutcome(output=future.result(timeout=sla.max_execution_seconds))
            except FutureTimeoutError:
                self._on_sla_breach(item, context, sla.max_execution_seconds, sla.alert_on_breach)
                if sla.breach_is_failure:
                    cancel_signal.set()
                    return AttemptOutcome(
                        error=SLABreachError(task.task_id, sla.max_execution_seconds),
                        timed_out=True,
                    )
                return AttemptOutcome(output=future.result())
        except Exception as e:
            return AttemptOutcome(error=e)

    @staticmethod
    def _call_executor(future, executor, config, upstream_outputs, cancel_signal) -> None:
        try:
            output = executor.execute(config, upstream_outputs, cancel_signal)
        except Exception as e:
            future.set_exception(e)
            return
        if output is None:
            future.set_result({})
        elif isinstance(output, Mapping):
            future.set_result(dict(output))
        else:
            future.set_result({"result": output})

    def _upstream_outputs(self, context: RunContext, task_id: str) -> dict[str, dict[str, Any]]:
        upstream_ids = [
            dep.upstream_task_id
            for dep in context.definition.dependencies
            if dep.downstream_task_id == task_id
        ]
        if not upstream_ids:
            return {}
        latest = self._store.latest_executions(context.run_id)
        outputs = {}
        for upstream_id in upstream_ids:
            execution = latest.get(upstream_id)
            if execution is not None and execution.status == TaskExecutionStatus.SUCCESS:
                outputs[upstream_id] = dict(execution.output or {})
        return outputs

    def _on_sla_breach(
        self, item: QueuedTask, context: RunContext, limit: float, alert: bool
    ) -> None:
        self._store.mark_sla_breached(item.run_id, item.task_id, item.attempt_number)
        logger.warning(
            f"SLA breach: {item.run_id}/{item.task_id} attempt {item.attempt_number} "
            f"still running after {limit:g}s"
        )
        if alert:
            self._emit(
                EventType.SLA_BREACH, item, context, {"max_execution_seconds": limit}
            )

    def _finish(
        self,
        task: TaskDefinition,
        item: QueuedTask,
        context: RunContext,
        outcome: AttemptOutcome,
    ) -> TaskExecution:
        key = (item.run_id, item.task_id, item.attempt_number)
        if outcome.error is None:
            logger.info(f"Task {item.run_id}/{item.task_id} succeeded on attempt {item.attempt_number}")
            return self._store.update_execution_status(
                *key, TaskExecutionStatus.SUCCESS, output=outcome.output
            )
        return self._handle_failure(task, item, context, outcome.error, outcome.timed_out)

    def _handle_failure(
        self,
        task: TaskDefinition,
        item: QueuedTask,
        context: RunContext,
        error: Exception,
        timed_out: bool = False,
    ) -> TaskExecution:
        key = (item.run_id, item.task_id, item.attempt_number)
        error_text = str(error) or type(error).__name__
        policy = context.definition.retry_policy_for(task)

        if self.is_closed(item.run_id):
            logger.info(f"Task {item.run_id}/{item.task_id} failed while run is closing: {error_text}")
            return self._store.update_execution_status(
                *key, TaskExecutionStatus.FAILED, error=error_text, note="run closing, no retry"
            )

        if item.attempt_number <= policy.max_retries:
            delay = policy.delay_for_attempt(item.attempt_number)
            execution = self._store.update_execution_status(
                *key,
                TaskExecutionStatus.RETRY_SCHEDULED,
                error=error_text,
                note=f"retry in {delay:g}s",
            )
            logger.warning(
                f"Task {item.run_id}/{item.task_id} attempt {item.attempt_number} failed: "
                f"{error_text}; retrying in {delay:g}s"
            )
            self._emit(
                EventType.RETRY_SCHEDULED,
                item,
                context,
                {"error": error_text, "delay_seconds": delay, "next_attempt": item.attempt_number + 1},
            )
            self.schedule_retry(item, context, delay)
            return execution

        logger.error(
            f"Task {item.run_id}/{item.task_id} failed after {item.attempt_number} attempts: {error_text}"
        )
        execution = self._store.update_execution_status(
            *key,
            TaskExecutionStatus.FAILED,
            error=error_text,
            note="sla timeout" if timed_out else None,
        )
        self._emit(
            EventType.RETRY_EXHAUSTED,
            item,
            context,
            {"error": error_text, "attempts": item.attempt_number, "max_retries": policy.max_retries},
        )
        return execution

    def fail_interrupted(self, execution: TaskExecution, context: RunContext) -> TaskExecution:
        """Fail an attempt left RUNNING by a previous process; normal retry applies."""
        task = context.definition.get_task(execution.task_id)
        item = QueuedTask(
            run_id=execution.run_id,
            task_id=execution.task_id,
            attempt_number=execution.attempt_number,
            priority=execution.priority,
        )
        return self._handle_failure(
            task, item, context, RuntimeError("attempt interrupted by engine restart")
        )

    # Retries

    def schedule_retry(self, item: QueuedTask, context: RunContext, delay: float) -> bool:
        """Start a timer that queues the next attempt after `delay` seconds."""
        key = (item.run_id, item.task_id)
        with self._lock:
            if item.run_id in self._closed_runs:
                logger.info(f"Run {item.run_id} closed, retry of {item.task_id} dropped")
                return False
            timer = threading.Timer(
                max(delay, 0.0), self._fire_retry, args=(item, context)
            )
            timer.daemon = True
            self._timers[key] = timer
            timer.start()
            return True

    def _fire_retry(self, item: QueuedTask, context: RunContext) -> None:
        next_attempt = item.attempt_number + 1
        with self._lock:
            # close_run already took this timer
            if self._timers.pop((item.run_id, item.task_id), None) is None:
                return
            try:
                self._store.create_execution(
                    item.run_id,
                    item.task_id,
                    next_attempt,
                    TaskExecutionStatus.QUEUED,
                    priority=item.priority,
                )
            except (InvalidTransitionError, DuplicateAttemptError) as e:
                logger.warning(f"Retry of {item.run_id}/{item.task_id} not queued: {e}")
                return

        self._enqueue(
            QueuedTask(
                run_id=item.run_id,
                task_id=item.task_id,
                attempt_number=next_attempt,
                priority=item.priority,
            )
        )
        logger.info(f"Queued {item.run_id}/{item.task_id} attempt {next_attempt}")
        context.notify()

    def pending_retries(self, run_id: str) -> list[str]:
        with self._lock:
            return sorted(task_id for (rid, task_id) in self._timers if rid == run_id)

    def close_run(self, run_id: str) -> list[str]:
        """Stop scheduling retries for a run; return tasks whose timers were cancelled."""
        if not run_id:
            raise ValueError("run_id is required")
        with self._lock:
            self._closed_runs.add(run_id)
            cancelled = [key for key in self._timers if key[0] == run_id]
            for key in cancelled:
                self._timers.pop(key).cancel()
        if cancelled:
            logger.info(f"Cancelled pending retries for {run_id}: {[k[1] for k in cancelled]}")
        return [key[1] for key in cancelled]

    def release_run(self, run_id: str) -> None:
        with self._lock:
            self._closed_runs.discard(run_id)

    def is_closed(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._closed_runs

    def cancel_active(self, run_id: str) -> int:
        """Set the cancel signal of every attempt of the run that is executing."""
        with self._lock:
            signals = list(self._active.get(run_id, {}).values())
        for signal in signals:
            signal.set()
        return len(signals)

    def shutdown(self) -> None:
        """Cancel every retry timer."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _register_active(self, item: QueuedTask) -> threading.Event:
        signal = threading.Event()
        with self._lock:
            self._active.setdefault(item.run_id, {})[(item.task_id, item.attempt_number)] = signal
        return signal

    def _unregister_active(self, item: QueuedTask) -> None:
        with self._lock:
            attempts = self._active.get(item.run_id)
            if attempts is None:
                return
            attempts.pop((item.task_id, item.attempt_number), None)
            if not attempts:
                del self._active[item.run_id]

    def _emit(
        self,
        event_type: EventType,
        item: QueuedTask,
        context: RunContext,
        details: dict[str, Any],
    ) -> None:
        self._dispatcher.emit(
            EngineEvent(
                event_type=event_type,
                run_id=item.run_id,
                workflow_name=context.definition.workflow_name,
                task_id=item.task_id,
                attempt_number=item.attempt_number,
                details=details,
            )
        )

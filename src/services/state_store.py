"""Execution state store: runs and per-task attempt records."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from redis import Redis

from models.state import (
    RollbackOutcome,
    Run,
    RunStatus,
    TaskExecution,
    TaskExecutionStatus,
    TriggerType,
)


class RunNotFoundError(Exception):
    """Raised when run is not found."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class TaskExecutionNotFoundError(Exception):
    """Raised when a task attempt is not found."""

    def __init__(self, run_id: str, task_id: str, attempt_number: int):
        self.run_id = run_id
        self.task_id = task_id
        self.attempt_number = attempt_number
        super().__init__(f"Task execution not found: {run_id}/{task_id}#{attempt_number}")


class InvalidTransitionError(Exception):
    """Raised when a state change is not allowed from the current state."""

    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition for {entity}: {current} -> {requested}")


class DuplicateAttemptError(Exception):
    """Raised when an attempt number is recorded twice for a task."""

    def __init__(self, run_id: str, task_id: str, attempt_number: int):
        self.run_id = run_id
        self.task_id = task_id
        self.attempt_number = attempt_number
        super().__init__(f"Attempt already exists: {run_id}/{task_id}#{attempt_number}")


_RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED},
}

_EXECUTION_TRANSITIONS = {
    TaskExecutionStatus.QUEUED: {TaskExecutionStatus.RUNNING, TaskExecutionStatus.CANCELLED},
    TaskExecutionStatus.RUNNING: {
        TaskExecutionStatus.SUCCESS,
        TaskExecutionStatus.FAILED,
        TaskExecutionStatus.RETRY_SCHEDULED,
    },
}

_INITIAL_EXECUTION_STATES = {
    TaskExecutionStatus.QUEUED,
    TaskExecutionStatus.SKIPPED,
    TaskExecutionStatus.CANCELLED,
}


class ExecutionStateStore(ABC):
    """Source of truth for run and attempt state.

    Writes are serialized; a record in a terminal state never changes again.
    Subclasses provide the storage primitives.
    """

    def __init__(self):
        self._lock = threading.RLock()

    # Storage primitives

    @abstractmethod
    def _load_run(self, run_id: str) -> Run | None: ...

    @abstractmethod
    def _save_run(self, run: Run, is_new: bool = False) -> None: ...

    @abstractmethod
    def _run_ids(self, workflow_name: str, limit: int | None) -> list[str]:
        """Run ids of a workflow, newest first."""

    @abstractmethod
    def _active_run_ids(self) -> list[str]: ...

    @abstractmethod
    def _load_execution(
        self, run_id: str, task_id: str, attempt_number: int
    ) -> TaskExecution | None: ...

    @abstractmethod
    def _save_execution(self, execution: TaskExecution) -> None: ...

    @abstractmethod
    def _load_executions(self, run_id: str) -> list[TaskExecution]: ...

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Runs

    def create_run(
        self,
        run_id: str,
        workflow_name: str,
        workflow_version: int,
        trigger_type: TriggerType = TriggerType.MANUAL,
        parameters: dict[str, Any] | None = None,
    ) -> Run:
        """Create a new run in pending state."""
        if not run_id:
            raise ValueError("run_id is required")
        if not workflow_name:
            raise ValueError("workflow_name is required")

        with self._lock:
            if self._load_run(run_id) is not None:
                raise ValueError(f"Run already exists: {run_id}")
            run = Run(
                run_id=run_id,
                workflow_name=workflow_name,
                workflow_version=workflow_version,
                status=RunStatus.PENDING,
                trigger_type=trigger_type,
                parameters=parameters or {},
                created_at=self._utc_now(),
            )
            self._save_run(run, is_new=True)
            return run

    def get_run(self, run_id: str) -> Run:
        """Get run by ID."""
        if not run_id:
            raise ValueError("run_id is required")
        with self._lock:
            run = self._load_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(self, workflow_name: str, limit: int = 50) -> list[Run]:
        """Runs of a workflow, newest first."""
        if not workflow_name:
            raise ValueError("workflow_name is required")
        if limit < 1:
            raise ValueError("limit must be positive")
        with self._lock:
            return [self.get_run(run_id) for run_id in self._run_ids(workflow_name, limit)]

    def has_runs(self, workflow_name: str) -> bool:
        if not workflow_name:
            raise ValueError("workflow_name is required")
        with self._lock:
            return bool(self._run_ids(workflow_name, 1))

    def list_active_runs(self) -> list[Run]:
        """Runs that have not reached a terminal state."""
        with self._lock:
            runs = [self.get_run(run_id) for run_id in self._active_run_ids()]
        return sorted(runs, key=lambda r: r.created_at)

    def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        error: str | None = None,
        failed_task_id: str | None = None,
    ) -> Run:
        """Move a run to a new status."""
        with self._lock:
            run = self.get_run(run_id)
            if status not in _RUN_TRANSITIONS.get(run.status, set()):
                raise InvalidTransitionError(
                    f"run {run_id}", run.status.value, status.value
                )
            now = self._utc_now()
            update: dict[str, Any] = {"status": status}
            if status == RunStatus.RUNNING:
                update["started_at"] = now
            if status.is_terminal:
                update["finished_at"] = now
            if error is not None:
                update["error"] = error
            if failed_task_id is not None:
                update["failed_task_id"] = failed_task_id
            updated = run.model_copy(update=update)
            self._save_run(updated)
            return updated

    def set_rollback(self, run_id: str, outcome: RollbackOutcome) -> Run:
        """Record rollback progress on a run that is still finishing."""
        if outcome is None:
            raise ValueError("outcome is required")
        with self._lock:
            run = self.get_run(run_id)
            if run.status.is_terminal:
                raise InvalidTransitionError(f"run {run_id}", run.status.value, "ROLLBACK")
            updated = run.model_copy(update={"rollback": outcome})
            self._save_run(updated)
            return updated

    def add_run_warning(self, run_id: str, warning: str) -> Run:
        if not warning:
            raise ValueError("warning is required")
        with self._lock:
            run = self.get_run(run_id)
            updated = run.model_copy(update={"warnings": list(run.warnings) + [warning]})
            self._save_run(updated)
            return updated

    # Task executions

    def create_execution(
        self,
        run_id: str,
        task_id: str,
        attempt_number: int,
        status: TaskExecutionStatus = TaskExecutionStatus.QUEUED,
        priority: int = 0,
        note: str | None = None,
    ) -> TaskExecution:
        """Record a new attempt. Attempt N requires attempt N-1 to be terminal."""
        if not run_id:
            raise ValueError("run_id is required")
        if not task_id:
            raise ValueError("task_id is required")
        if attempt_number < 1:
            raise ValueError("attempt_number must be positive")
        if status not in _INITIAL_EXECUTION_STATES:
            raise ValueError(f"attempt cannot start in status {status.value}")

        with self._lock:
            run = self.get_run(run_id)
            if run.status.is_terminal:
                raise InvalidTransitionError(f"run {run_id}", run.status.value, "NEW_ATTEMPT")
            if self._load_execution(run_id, task_id, attempt_number) is not None:
                raise DuplicateAttemptError(run_id, task_id, attempt_number)
            if attempt_number > 1:
                previous = self._load_execution(run_id, task_id, attempt_number - 1)
                if previous is None:
                    raise TaskExecutionNotFoundError(run_id, task_id, attempt_number - 1)
                if not previous.status.is_terminal:
                    raise InvalidTransitionError(
                        f"task {run_id}/{task_id}", previous.status.value, "NEW_ATTEMPT"
                    )

            now = self._utc_now()
            execution = TaskExecution(
                run_id=run_id,
                task_id=task_id,
                attempt_number=attempt_number,
                status=status,
                priority=priority,
                created_at=now,
                finished_at=now if status.is_terminal else None,
                note=note,
            )
            self._save_execution(execution)
            return execution

    def get_execution(self, run_id: str, task_id: str, attempt_number: int) -> TaskExecution:
        if not run_id:
            raise ValueError("run_id is required")
        if not task_id:
            raise ValueError("task_id is required")
        with self._lock:
            execution = self._load_execution(run_id, task_id, attempt_number)
        if execution is None:
            raise TaskExecutionNotFoundError(run_id, task_id, attempt_number)
        return execution

    def update_execution_status(
        self,
        run_id: str,
        task_id: str,
        attempt_number: int,
        status: TaskExecutionStatus,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        note: str | None = None,
    ) -> TaskExecution:
        """Transition an attempt; terminal attempts are rejected."""
        with self._lock:
            execution = self.get_execution(run_id, task_id, attempt_number)
            if status not in _EXECUTION_TRANSITIONS.get(execution.status, set()):
                raise InvalidTransitionError(
                    f"task {run_id}/{task_id}#{attempt_number}",
                    execution.status.value,
                    status.value,
                )
            now = self._utc_now()
            update: dict[str, Any] = {"status": status}
            if status == TaskExecutionStatus.RUNNING:
                update["started_at"] = now
            if status.is_terminal:
                update["finished_at"] = now
            if output is not None:
                update["output"] = output
            if error is not None:
                update["error"] = error
            if note is not None:
                update["note"] = note
            updated = execution.model_copy(update=update)
            self._save_execution(updated)
            return updated

    def mark_sla_breached(self, run_id: str, task_id: str, attempt_number: int) -> TaskExecution:
        with self._lock:
            execution = self.get_execution(run_id, task_id, attempt_number)
            if execution.sla_breached:
                return execution
            updated = execution.model_copy(update={"sla_breached": True})
            self._save_execution(updated)
            return updated

    def list_executions(self, run_id: str) -> list[TaskExecution]:
        """All attempt records of a run in creation order."""
        with self._lock:
            self.get_run(run_id)
            records = self._load_executions(run_id)
        return sorted(records, key=lambda e: (e.created_at, e.task_id, e.attempt_number))

    def latest_executions(self, run_id: str) -> dict[str, TaskExecution]:
        """Highest attempt record per task."""
        latest: dict[str, TaskExecution] = {}
        for execution in self.list_executions(run_id):
            current = latest.get(execution.task_id)
            if current is None or execution.attempt_number > current.attempt_number:
                latest[execution.task_id] = execution
        return latest


class InMemoryStateStore(ExecutionStateStore):
    """Process-local store."""

    def __init__(self):
        super().__init__()
        self._runs: dict[str, Run] = {}
        self._run_order: list[str] = []
        self._executions: dict[str, dict[tuple[str, int], TaskExecution]] = {}

    def _load_run(self, run_id: str) -> Run | None:
        return self._runs.get(run_id)

    def _save_run(self, run: Run, is_new: bool = False) -> None:
        self._runs[run.run_id] = run
        if is_new:
            self._run_order.append(run.run_id)
            self._executions[run.run_id] = {}

    def _run_ids(self, workflow_name: str, limit: int | None) -> list[str]:
        ids = [
            run_id
            for run_id in reversed(self._run_order)
            if self._runs[run_id].workflow_name == workflow_name
        ]
        return ids[:limit] if limit is not None else ids

    def _active_run_ids(self) -> list[str]:
        return [r for r in self._run_order if not self._runs[r].status.is_terminal]

    def _load_execution(self, run_id: str, task_id: str, attempt_number: int) -> TaskExecution | None:
        return self._executions.get(run_id, {}).get((task_id, attempt_number))

    def _save_execution(self, execution: TaskExecution) -> None:
        key = (execution.task_id, execution.attempt_number)
        self._executions[execution.run_id][key] = execution

    def _load_executions(self, run_id: str) -> list[TaskExecution]:
        return list(self._executions.get(run_id, {}).values())


class RedisStateStore(ExecutionStateStore):
    """Manages run and task execution state in Redis."""

    def __init__(self, redis_client: Redis):
        super().__init__()
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client

    def _run_key(self, run_id: str) -> str:
        return f"run:{run_id}"

    def _executions_key(self, run_id: str) -> str:
        return f"run:{run_id}:executions"

    def _workflow_runs_key(self, workflow_name: str) -> str:
        return f"workflow:{workflow_name}:runs"

    def _active_runs_key(self) -> str:
        return "runs:active"

    def _execution_field(self, task_id: str, attempt_number: int) -> str:
        return f"{task_id}#{attempt_number}"

    @staticmethod
    def _decode(value):
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def _load_run(self, run_id: str) -> Run | None:
        data = self._redis.get(self._run_key(run_id))
        if data is None:
            return None
        return Run.model_validate_json(data)

    def _save_run(self, run: Run, is_new: bool = False) -> None:
        pipe = self._redis.pipeline()
        pipe.set(self._run_key(run.run_id), run.model_dump_json())
        if is_new:
            pipe.zadd(
                self._workflow_runs_key(run.workflow_name),
                {run.run_id: run.created_at.timestamp()},
            )
        if run.status.is_terminal:
            pipe.srem(self._active_runs_key(), run.run_id)
        else:
            pipe.sadd(self._active_runs_key(), run.run_id)
        pipe.execute()

    def _run_ids(self, workflow_name: str, limit: int | None) -> list[str]:
        end = -1 if limit is None else limit - 1
        ids = self._redis.zrevrange(self._workflow_runs_key(workflow_name), 0, end)
        return [self._decode(run_id) for run_id in ids]

    def _active_run_ids(self) -> list[str]:
        return [self._decode(r) for r in self._redis.smembers(self._active_runs_key())]

    def _load_execution(self, run_id: str, task_id: str, attempt_number: int) -> TaskExecution | None:
        data = self._redis.hget(
            self._executions_key(run_id), self._execution_field(task_id, attempt_number)
        )
        if data is None:
            return None
        return TaskExecution.model_validate_json(data)

    def _save_execution(self, execution: TaskExecution) -> None:
        self._redis.hset(
            self._executions_key(execution.run_id),
            self._execution_field(execution.task_id, execution.attempt_number),
            execution.model_dump_json(),
        )

    def _load_executions(self, run_id: str) -> list[TaskExecution]:
        values = self._redis.hvals(self._executions_key(run_id))
        return [TaskExecution.model_validate_json(v) for v in values]


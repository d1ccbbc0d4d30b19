"""Task executor contract and the type -> executor registry."""

import threading
from typing import Any, Mapping, Protocol, runtime_checkable

from models.definition import TaskType


class ExecutorNotFoundError(Exception):
    """Raised when no executor is registered for a task type."""

    def __init__(self, task_type: TaskType):
        self.task_type = task_type
        super().__init__(f"No executor registered for task type: {task_type.value}")


@runtime_checkable
class TaskExecutor(Protocol):
    """Performs the work of one task type.

    `execute` returns the task output or raises to report failure. It should
    check `cancel_signal` and stop early once it is set.
    """

    def execute(
        self,
        config: Mapping[str, Any],
        upstream_outputs: Mapping[str, Mapping[str, Any]],
        cancel_signal: threading.Event,
    ) -> Mapping[str, Any] | None:
        ...


@runtime_checkable
class CompensatingExecutor(TaskExecutor, Protocol):
    """Executor that can also undo a previously successful task."""

    def compensate(
        self,
        config: Mapping[str, Any],
        prior_output: Mapping[str, Any] | None,
    ) -> None:
        ...


class ExecutorRegistry:
    """Maps task types to executors. Populated at start-up."""

    def __init__(self):
        self._executors: dict[TaskType, TaskExecutor] = {}
        self._lock = threading.Lock()

    def register(self, task_type: TaskType, executor: TaskExecutor) -> None:
        if task_type is None:
            raise ValueError("task_type is required")
        if executor is None:
            raise ValueError("executor is required")
        if not callable(getattr(executor, "execute", None)):
            raise ValueError("executor must define execute()")
        with self._lock:
            self._executors[TaskType(task_type)] = executor

    def get(self, task_type: TaskType) -> TaskExecutor:
        with self._lock:
            executor = self._executors.get(task_type)
        if executor is None:
            raise ExecutorNotFoundError(task_type)
        return executor

    def supports_compensation(self, task_type: TaskType) -> bool:
        executor = self.get(task_type)
        return callable(getattr(executor, "compensate", None))

    def registered_types(self) -> frozenset[TaskType]:
        with self._lock:
            return frozenset(self._executors)

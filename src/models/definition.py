"""Workflow definition models: tasks, dependencies and policies."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class TaskType(str, Enum):
    """Task types an executor can be registered for."""

    CUSTOM_JOB = "CUSTOM_JOB"
    DATA_WAREHOUSE = "DATA_WAREHOUSE"
    DATA_VAULT = "DATA_VAULT"
    SYNC = "SYNC"
    API_CALL = "API_CALL"
    SCRIPT = "SCRIPT"
    SUB_WORKFLOW = "SUB_WORKFLOW"


class DependencyKind(str, Enum):
    """How an inbound edge is satisfied by its upstream task."""

    SUCCESS = "SUCCESS"
    COMPLETION = "COMPLETION"
    SKIP_ON_FAILURE = "SKIP_ON_FAILURE"


class RetryPolicy(BaseModel):
    """Re-attempt policy for a single task."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = 3
    retry_delay_seconds: float = 60.0
    backoff_multiplier: float = 2.0

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be non-negative")
        return v

    @field_validator("retry_delay_seconds")
    @classmethod
    def validate_retry_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry_delay_seconds must be non-negative")
        return v

    @field_validator("backoff_multiplier")
    @classmethod
    def validate_backoff_multiplier(cls, v: float) -> float:
        if v < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        return v

    def delay_for_attempt(self, attempt_number: int) -> float:
        """Delay before the attempt following `attempt_number`."""
        if attempt_number < 1:
            raise ValueError("attempt_number must be positive")
        return self.retry_delay_seconds * self.backoff_multiplier ** (attempt_number - 1)


class SLAConfig(BaseModel):
    """Maximum execution time for a single attempt."""

    model_config = ConfigDict(frozen=True)

    max_execution_seconds: float
    alert_on_breach: bool = True
    breach_is_failure: bool = False

    @field_validator("max_execution_seconds")
    @classmethod
    def validate_max_execution_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("max_execution_seconds must be positive")
        return v


class RollbackConfig(BaseModel):
    """When and how far to compensate after a failed run."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    on_failure: bool = True
    on_timeout: bool = True
    # None compensates every upstream task of the failure
    max_rollback_depth: int | None = None

    @field_validator("max_rollback_depth")
    @classmethod
    def validate_depth(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("max_rollback_depth must be non-negative")
        return v


class TaskDefinition(BaseModel):
    """A unit of work inside a workflow."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    task_type: TaskType
    task_reference: str = ""
    description: str | None = None
    config: dict[str, Any] = {}
    priority: int = 0
    retry_policy: RetryPolicy | None = None
    sla_config: SLAConfig | None = None
    compensation: dict[str, Any] | None = None
    metadata: dict[str, Any] = {}

    @field_validator("task_id")
    @classmethod
    def validate_task_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("task_id is required")
        return v


class Dependency(BaseModel):
    """Directed edge upstream -> downstream."""

    model_config = ConfigDict(frozen=True)

    upstream_task_id: str
    downstream_task_id: str
    kind: DependencyKind = DependencyKind.SUCCESS
    condition: str | None = None

    @property
    def edge(self) -> tuple[str, str]:
        return (self.upstream_task_id, self.downstream_task_id)


class WorkflowDefinition(BaseModel):
    """A versioned DAG of tasks with its execution policies."""

    model_config = ConfigDict(frozen=True)

    workflow_name: str
    version: int = 1
    description: str | None = None
    tasks: list[TaskDefinition] = []
    dependencies: list[Dependency] = []
    active: bool = True
    enabled: bool = True
    schedule_cron: str | None = None
    retry_policy: RetryPolicy = RetryPolicy()
    sla_config: SLAConfig | None = None
    rollback_config: RollbackConfig | None = None
    metadata: dict[str, Any] = {}
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("workflow_name")
    @classmethod
    def validate_workflow_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("workflow_name is required")
        if "/" in v or ":" in v:
            raise ValueError("workflow_name must not contain '/' or ':'")
        return v

    def get_task(self, task_id: str) -> TaskDefinition:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        raise KeyError(task_id)

    def retry_policy_for(self, task: TaskDefinition) -> RetryPolicy:
        """Task policy, falling back to the workflow default."""
        return task.retry_policy or self.retry_policy

    def sla_config_for(self, task: TaskDefinition) -> SLAConfig | None:
        return task.sla_config or self.sla_config


class WorkflowVersion(BaseModel):
    """Append-only snapshot of a definition."""

    model_config = ConfigDict(frozen=True)

    workflow_name: str
    version: int
    definition: WorkflowDefinition
    created_at: datetime
    change_description: str | None = None
    restored_from: int | None = None

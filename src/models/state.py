"""State models for run and task execution tracking."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class RunStatus(str, Enum):
    """Run execution status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED)


class TaskExecutionStatus(str, Enum):
    """Status of one attempt record."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Whether the attempt record can no longer change."""
        return self not in (TaskExecutionStatus.QUEUED, TaskExecutionStatus.RUNNING)

    @property
    def is_task_terminal(self) -> bool:
        """Whether the logical task is done when this is its latest attempt."""
        return self in (
            TaskExecutionStatus.SUCCESS,
            TaskExecutionStatus.FAILED,
            TaskExecutionStatus.SKIPPED,
            TaskExecutionStatus.CANCELLED,
        )


class TriggerType(str, Enum):
    """What created a run."""

    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"
    API = "API"
    EVENT = "EVENT"
    BACKFILL = "BACKFILL"


class RollbackStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    SKIPPED = "SKIPPED"


class RollbackStepStatus(str, Enum):
    COMPENSATED = "COMPENSATED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class RollbackStep(BaseModel):
    """Outcome of compensating one task."""

    task_id: str
    status: RollbackStepStatus
    note: str | None = None


class RollbackOutcome(BaseModel):
    """Rollback record attached to a failed run."""

    status: RollbackStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    steps: list[RollbackStep] = []
    error_message: str | None = None


class Run(BaseModel):
    """Persistent state of one workflow run."""

    run_id: str
    workflow_name: str
    workflow_version: int
    status: RunStatus
    trigger_type: TriggerType = TriggerType.MANUAL
    parameters: dict[str, Any] = {}
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    failed_task_id: str | None = None
    warnings: list[str] = []
    rollback: RollbackOutcome | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class TaskExecution(BaseModel):
    """Persistent state of one attempt of one task in a run."""

    run_id: str
    task_id: str
    attempt_number: int
    status: TaskExecutionStatus
    priority: int = 0
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    sla_breached: bool = False
    note: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

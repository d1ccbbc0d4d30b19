"""Request and response models for REST API."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from models.definition import (
    Dependency,
    RetryPolicy,
    RollbackConfig,
    SLAConfig,
    TaskDefinition,
    WorkflowDefinition,
    WorkflowVersion,
)
from models.state import RollbackOutcome, Run, TaskExecution, TriggerType


class WorkflowRequest(BaseModel):
    """Body of workflow create and update calls."""

    model_config = ConfigDict(extra="forbid")

    workflow_name: str | None = None
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
    change_description: str | None = None

    def to_definition(self, workflow_name: str | None = None) -> WorkflowDefinition:
        """Build the definition; a path name overrides the body name."""
        name = workflow_name or self.workflow_name
        if not name:
            raise ValueError("workflow_name is required")
        return WorkflowDefinition(
            workflow_name=name,
            description=self.description,
            tasks=self.tasks,
            dependencies=self.dependencies,
            active=self.active,
            enabled=self.enabled,
            schedule_cron=self.schedule_cron,
            retry_policy=self.retry_policy,
            sla_config=self.sla_config,
            rollback_config=self.rollback_config,
            metadata=self.metadata,
        )


class WorkflowListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    page: int
    limit: int
    workflows: list[WorkflowDefinition]


class VersionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_name: str
    current_version: int
    versions: list[WorkflowVersion]


class DeleteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str


class ExecuteRequest(BaseModel):
    """Request to start a run."""

    model_config = ConfigDict(extra="forbid")

    trigger_type: TriggerType = TriggerType.API
    parameters: dict[str, Any] = {}

    @field_validator("trigger_type")
    @classmethod
    def trigger_not_backfill(cls, v: TriggerType) -> TriggerType:
        if v == TriggerType.BACKFILL:
            raise ValueError("use the backfill endpoint for backfill runs")
        return v


class RunResponse(BaseModel):
    """Run state with task counters."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    workflow_name: str
    workflow_version: int
    status: str
    trigger_type: str
    parameters: dict[str, Any] = {}
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    error: str | None = None
    failed_task_id: str | None = None
    warnings: list[str] = []
    rollback: RollbackOutcome | None = None
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    cancelled_tasks: int = 0
    running_tasks: int = 0

    @classmethod
    def from_run(cls, run: Run, summary: dict[str, int] | None = None) -> "RunResponse":
        return cls(
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            workflow_version=run.workflow_version,
            status=run.status.value,
            trigger_type=run.trigger_type.value,
            parameters=run.parameters,
            created_at=run.created_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=run.duration_seconds,
            error=run.error,
            failed_task_id=run.failed_task_id,
            warnings=run.warnings,
            rollback=run.rollback,
            **(summary or {}),
        )


class RunListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_name: str
    runs: list[RunResponse]


class TaskExecutionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    executions: list[TaskExecution]


class BackfillResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    backfill_id: str
    workflow_name: str
    periods: list[date]
    run_ids: list[str] = []
    done: bool = False
    error: str | None = None


class QueueSizeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: int


class PoolSizeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    size: int


class PoolSizeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: int


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(frozen=True)

    status: str


class ErrorResponse(BaseModel):
    """Error response."""

    model_config = ConfigDict(frozen=True)

    detail: str

"""Models package."""

from models.definition import (
    Dependency,
    DependencyKind,
    RetryPolicy,
    RollbackConfig,
    SLAConfig,
    TaskDefinition,
    TaskType,
    WorkflowDefinition,
    WorkflowVersion,
)
from models.events import EngineEvent, EventType
from models.graph import WorkflowGraph
from models.state import (
    RollbackOutcome,
    RollbackStatus,
    RollbackStep,
    RollbackStepStatus,
    Run,
    RunStatus,
    TaskExecution,
    TaskExecutionStatus,
    TriggerType,
)

__all__ = [
    "Dependency",
    "DependencyKind",
    "EngineEvent",
    "EventType",
    "RetryPolicy",
    "RollbackConfig",
    "RollbackOutcome",
    "RollbackStatus",
    "RollbackStep",
    "RollbackStepStatus",
    "Run",
    "RunStatus",
    "SLAConfig",
    "TaskDefinition",
    "TaskExecution",
    "TaskExecutionStatus",
    "TaskType",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowGraph",
    "WorkflowVersion",
]

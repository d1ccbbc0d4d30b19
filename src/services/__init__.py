# Services package

from services.backfill import BackfillInterval, BackfillJob, BackfillRequest
from services.definition_store import (
    DefinitionConflictError,
    DefinitionExistsError,
    DefinitionNotFoundError,
    DefinitionStore,
    VersionNotFoundError,
)
from services.executors import (
    CompensatingExecutor,
    ExecutorNotFoundError,
    ExecutorRegistry,
    TaskExecutor,
)
from services.graph_validator import (
    DanglingReferenceError,
    DuplicateTaskError,
    GraphValidationError,
    GraphValidator,
    InvalidGraphError,
    RollbackDepthError,
    UnsupportedTaskTypeError,
)
from services.log_service import SizeAndTimeRotatingHandler, configure_logging
from services.monitor import AttemptMonitor, RunContext, SLABreachError
from services.notifier import EventDispatcher, LoggingSink, WebhookSink
from services.remote_executor import RemoteExecutor, RemoteExecutorError
from services.resolver import DependencyResolver, OutputFlagEvaluator, Resolution
from services.rollback import RollbackManager
from services.run_coordinator import RunCoordinator
from services.state_store import (
    DuplicateAttemptError,
    ExecutionStateStore,
    InMemoryStateStore,
    InvalidTransitionError,
    RedisStateStore,
    RunNotFoundError,
    TaskExecutionNotFoundError,
)
from services.task_queue import PriorityTaskQueue, QueuedTask, QueueFullError
from services.worker_pool import Worker, WorkerPool
from services.workflow_engine import (
    BackfillNotFoundError,
    WorkflowEngine,
    WorkflowNotRunnableError,
)

__all__ = [
    "AttemptMonitor",
    "BackfillInterval",
    "BackfillJob",
    "BackfillNotFoundError",
    "BackfillRequest",
    "CompensatingExecutor",
    "DanglingReferenceError",
    "DefinitionConflictError",
    "DefinitionExistsError",
    "DefinitionNotFoundError",
    "DefinitionStore",
    "DependencyResolver",
    "DuplicateAttemptError",
    "DuplicateTaskError",
    "EventDispatcher",
    "ExecutionStateStore",
    "ExecutorNotFoundError",
    "ExecutorRegistry",
    "GraphValidationError",
    "GraphValidator",
    "InMemoryStateStore",
    "InvalidGraphError",
    "InvalidTransitionError",
    "LoggingSink",
    "OutputFlagEvaluator",
    "PriorityTaskQueue",
    "QueueFullError",
    "QueuedTask",
    "RedisStateStore",
    "RemoteExecutor",
    "RemoteExecutorError",
    "Resolution",
    "RollbackDepthError",
    "RollbackManager",
    "RunContext",
    "RunCoordinator",
    "RunNotFoundError",
    "SLABreachError",
    "SizeAndTimeRotatingHandler",
    "TaskExecutionNotFoundError",
    "TaskExecutor",
    "UnsupportedTaskTypeError",
    "WebhookSink",
    "Worker",
    "WorkerPool",
    "WorkflowEngine",
    "WorkflowNotRunnableError",
    "configure_logging",
]

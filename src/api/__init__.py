# API package

from api.app import WorkflowAPI
from api.models import (
    BackfillResponse,
    ErrorResponse,
    ExecuteRequest,
    HealthResponse,
    PoolSizeRequest,
    PoolSizeResponse,
    QueueSizeResponse,
    RunResponse,
    TaskExecutionListResponse,
    WorkflowRequest,
)

__all__ = [
    "BackfillResponse",
    "ErrorResponse",
    "ExecuteRequest",
    "HealthResponse",
    "PoolSizeRequest",
    "PoolSizeResponse",
    "QueueSizeResponse",
    "RunResponse",
    "TaskExecutionListResponse",
    "WorkflowAPI",
    "WorkflowRequest",
]

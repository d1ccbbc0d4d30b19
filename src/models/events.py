"""Events emitted by the engine to external notifiers."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    SLA_BREACH = "SLA_BREACH"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    RUN_TERMINAL = "RUN_TERMINAL"
    ROLLBACK_COMPLETED = "ROLLBACK_COMPLETED"


class EngineEvent(BaseModel):
    """Fire-and-forget notification payload."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    run_id: str
    workflow_name: str
    task_id: str | None = None
    attempt_number: int | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = {}

"""Process configuration read from the environment."""

import os
from typing import Mapping

from pydantic import BaseModel, ConfigDict, field_validator

from models.definition import TaskType


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_executors(value: str) -> dict[TaskType, str]:
    """Parse `TYPE=url,TYPE=url` into a task type -> base URL map."""
    executors = {}
    for entry in _parse_list(value):
        if "=" not in entry:
            raise ValueError(f"REMOTE_EXECUTORS entry must be TYPE=url: {entry}")
        task_type, url = entry.split("=", 1)
        executors[TaskType(task_type.strip().upper())] = url.strip()
    return executors


class EngineConfig(BaseModel):
    """Settings for the engine process."""

    model_config = ConfigDict(frozen=True)

    redis_url: str = "redis://localhost:6379"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    log_dir: str = "logs"
    worker_pool_size: int = 4
    queue_capacity: int = 10000
    worker_poll_interval: float = 0.5
    coordinator_wait_seconds: float = 1.0
    webhook_urls: list[str] = []
    remote_executors: dict[TaskType, str] = {}
    recover_runs: bool = True

    @field_validator("worker_pool_size", "queue_capacity")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("worker_poll_interval", "coordinator_wait_seconds")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.lower()
        if v not in ("debug", "info", "warning", "error"):
            raise ValueError(f"unknown log level: {v}")
        return v

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        """Build config from environment variables, keeping defaults for unset ones."""
        env = os.environ if environ is None else environ
        values = {}
        simple = {
            "REDIS_URL": "redis_url",
            "HOST": "host",
            "PORT": "port",
            "LOG_LEVEL": "log_level",
            "LOG_DIR": "log_dir",
            "WORKER_POOL_SIZE": "worker_pool_size",
            "QUEUE_CAPACITY": "queue_capacity",
            "WORKER_POLL_INTERVAL": "worker_poll_interval",
            "COORDINATOR_WAIT_SECONDS": "coordinator_wait_seconds",
        }
        for var, field in simple.items():
            if env.get(var):
                values[field] = env[var]
        if env.get("WEBHOOK_URLS"):
            values["webhook_urls"] = _parse_list(env["WEBHOOK_URLS"])
        if env.get("REMOTE_EXECUTORS"):
            values["remote_executors"] = _parse_executors(env["REMOTE_EXECUTORS"])
        if env.get("RECOVER_RUNS"):
            values["recover_runs"] = _parse_bool(env["RECOVER_RUNS"])
        return cls(**values)

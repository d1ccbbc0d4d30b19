"""Task executor that delegates work to an executor service over HTTP."""

import logging
import threading
from typing import Any, Literal, Mapping

import httpx
from pydantic import BaseModel, ConfigDict

from models.definition import TaskType

logger = logging.getLogger(__name__)


class RemoteExecutorError(Exception):
    """Raised when the executor service call fails."""

    pass


class ExecuteRequest(BaseModel):
    """Request body for /control/execute."""

    model_config = ConfigDict(frozen=True)

    task_type: TaskType
    config: dict[str, Any] = {}
    upstream_outputs: dict[str, dict[str, Any]] = {}


class ExecuteResponse(BaseModel):
    """Response from /control/execute and /control/status."""

    model_config = ConfigDict(frozen=True)

    status: Literal["complete", "running", "failed"]
    job_id: str | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    progress: int | None = None


class CompensateRequest(BaseModel):
    """Request body for /control/compensate."""

    model_config = ConfigDict(frozen=True)

    task_type: TaskType
    config: dict[str, Any] = {}
    prior_output: dict[str, Any] | None = None


class RemoteExecutor:
    """Runs tasks of one type on a remote service, polling long jobs."""

    def __init__(
        self,
        base_url: str,
        task_type: TaskType,
        timeout: float = 30.0,
        poll_interval: float = 2.0,
    ):
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        if task_type is None:
            raise ValueError("task_type is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._base_url = base_url.rstrip("/")
        self._task_type = TaskType(task_type)
        self._timeout = timeout
        self._poll_interval = poll_interval

    def _call(self, method: str, path: str, body: dict | None = None) -> dict:
        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.request(method, url, json=body)
        except httpx.ConnectError as e:
            raise RemoteExecutorError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise RemoteExecutorError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise RemoteExecutorError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise RemoteExecutorError(f"HTTP {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise RemoteExecutorError(f"Invalid response: {e}") from e

    def _parse(self, data: dict) -> ExecuteResponse:
        try:
            return ExecuteResponse.model_validate(data)
        except Exception as e:
            raise RemoteExecutorError(f"Invalid response: {e}") from e

    def execute(
        self,
        config: Mapping[str, Any],
        upstream_outputs: Mapping[str, Mapping[str, Any]],
        cancel_signal: threading.Event,
    ) -> dict[str, Any]:
        """Call POST /control/execute and poll until the job settles."""
        request = ExecuteRequest(
            task_type=self._task_type,
            config=dict(config),
            upstream_outputs={k: dict(v) for k, v in upstream_outputs.items()},
        )
        response = self._parse(self._call("POST", "/control/execute", request.model_dump(mode="json")))

        while response.status == "running":
            if not response.job_id:
                raise RemoteExecutorError("Service reported running without a job_id")
            if cancel_signal.wait(self._poll_interval):
                self.cancel(response.job_id)
                raise RemoteExecutorError(f"Job {response.job_id} cancelled")
            response = self.get_status(response.job_id)

        if response.status == "failed":
            raise RemoteExecutorError(response.error or "Service returned failed status")
        return dict(response.output or {})

    def get_status(self, job_id: str) -> ExecuteResponse:
        """Call GET /control/status/{job_id}."""
        if not job_id or not job_id.strip():
            raise ValueError("job_id is required")
        return self._parse(self._call("GET", f"/control/status/{job_id}"))

    def cancel(self, job_id: str) -> None:
        """Call POST /control/cancel/{job_id}. Failures are logged only."""
        if not job_id or not job_id.strip():
            raise ValueError("job_id is required")
        try:
            self._call("POST", f"/control/cancel/{job_id}")
        except RemoteExecutorError as e:
            logger.warning(f"Cancel of remote job {job_id} failed: {e}")

    def compensate(
        self,
        config: Mapping[str, Any],
        prior_output: Mapping[str, Any] | None,
    ) -> None:
        """Call POST /control/compensate."""
        request = CompensateRequest(
            task_type=self._task_type,
            config=dict(config),
            prior_output=dict(prior_output) if prior_output is not None else None,
        )
        data = self._call("POST", "/control/compensate", request.model_dump(mode="json"))
        if data.get("status") == "failed":
            raise RemoteExecutorError(data.get("error") or "Compensation failed")

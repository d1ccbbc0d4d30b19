"""FastAPI REST API for the workflow engine."""

from fastapi import FastAPI, HTTPException, Query

from api.models import (
    BackfillResponse,
    DeleteResponse,
    ErrorResponse,
    ExecuteRequest,
    HealthResponse,
    PoolSizeRequest,
    PoolSizeResponse,
    QueueSizeResponse,
    RunListResponse,
    RunResponse,
    TaskExecutionListResponse,
    VersionListResponse,
    WorkflowListResponse,
    WorkflowRequest,
)
from models.definition import WorkflowDefinition, WorkflowVersion
from services.backfill import BackfillJob, BackfillRequest
from services.definition_store import (
    DefinitionConflictError,
    DefinitionExistsError,
    DefinitionNotFoundError,
    VersionNotFoundError,
)
from services.graph_validator import GraphValidationError
from services.state_store import InvalidTransitionError, RunNotFoundError
from services.task_queue import QueueFullError
from services.workflow_engine import (
    BackfillNotFoundError,
    WorkflowEngine,
    WorkflowNotRunnableError,
)

_NOT_FOUND = (
    DefinitionNotFoundError,
    VersionNotFoundError,
    RunNotFoundError,
    BackfillNotFoundError,
)
_CONFLICT = (DefinitionExistsError, DefinitionConflictError, InvalidTransitionError)
_BAD_REQUEST = (GraphValidationError, WorkflowNotRunnableError, ValueError)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, _NOT_FOUND):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, _CONFLICT):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, QueueFullError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _backfill_response(job: BackfillJob) -> BackfillResponse:
    return BackfillResponse(
        backfill_id=job.backfill_id,
        workflow_name=job.workflow_name,
        periods=job.periods,
        run_ids=list(job.run_ids),
        done=job.is_done,
        error=job.error,
    )


class WorkflowAPI:
    """REST API over the workflow engine."""

    def __init__(self, engine: WorkflowEngine):
        if engine is None:
            raise ValueError("engine is required")
        self._engine = engine

    def _run_response(self, run_id: str) -> RunResponse:
        run = self._engine.get_run(run_id)
        return RunResponse.from_run(run, self._engine.run_summary(run_id))

    def create_app(self) -> FastAPI:
        """Create FastAPI application."""
        app = FastAPI(
            title="Workflow Engine API",
            description="Definition management, run control and task queue administration",
            version="1.0.0",
        )
        engine = self._engine
        handled = _NOT_FOUND + _CONFLICT + _BAD_REQUEST + (QueueFullError,)

        # Task queue routes come first so they are not taken for workflow names

        @app.get("/workflows/task-queue/size", response_model=QueueSizeResponse)
        def task_queue_size() -> QueueSizeResponse:
            """Number of ready task instances waiting for a worker."""
            return QueueSizeResponse(size=engine.queue_size())

        @app.get("/workflows/task-queue/worker-pool-size", response_model=PoolSizeResponse)
        def get_worker_pool_size() -> PoolSizeResponse:
            return PoolSizeResponse(size=engine.get_pool_size())

        @app.put(
            "/workflows/task-queue/worker-pool-size",
            response_model=PoolSizeResponse,
            responses={400: {"model": ErrorResponse}},
        )
        def set_worker_pool_size(request: PoolSizeRequest) -> PoolSizeResponse:
            """Resize the worker pool. Takes effect immediately."""
            try:
                size = engine.set_pool_size(request.size)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return PoolSizeResponse(size=size)

        # Definitions

        @app.get("/workflows", response_model=WorkflowListResponse)
        def list_workflows(
            active: bool | None = None,
            enabled: bool | None = None,
            search: str | None = None,
            page: int = Query(1, ge=1),
            limit: int = Query(20, ge=1, le=100),
        ) -> WorkflowListResponse:
            total, workflows = engine.definitions.list_definitions(
                active=active, enabled=enabled, search=search, page=page, limit=limit
            )
            return WorkflowListResponse(total=total, page=page, limit=limit, workflows=workflows)

        @app.post(
            "/workflows",
            response_model=WorkflowDefinition,
            status_code=201,
            responses=_ERROR_RESPONSES,
        )
        def create_workflow(request: WorkflowRequest) -> WorkflowDefinition:
            """Validate and store a new workflow."""
            try:
                return engine.definitions.create(
                    request.to_definition(), request.change_description
                )
            except handled as e:
                raise _to_http(e)

        @app.get(
            "/workflows/{workflow_name}",
            response_model=WorkflowDefinition,
            responses={404: {"model": ErrorResponse}},
        )
        def get_workflow(workflow_name: str) -> WorkflowDefinition:
            try:
                return engine.definitions.get(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.put(
            "/workflows/{workflow_name}",
            response_model=WorkflowDefinition,
            responses=_ERROR_RESPONSES,
        )
        def update_workflow(workflow_name: str, request: WorkflowRequest) -> WorkflowDefinition:
            """Replace a workflow; the previous version stays in history."""
            if request.workflow_name and request.workflow_name != workflow_name:
                raise HTTPException(status_code=400, detail="workflow_name cannot be changed")
            try:
                return engine.definitions.update(
                    workflow_name,
                    request.to_definition(workflow_name),
                    request.change_description,
                )
            except handled as e:
                raise _to_http(e)

        @app.delete(
            "/workflows/{workflow_name}",
            response_model=DeleteResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def delete_workflow(workflow_name: str) -> DeleteResponse:
            """Delete a workflow, or deactivate it if runs reference it."""
            try:
                deleted = engine.delete_workflow(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return DeleteResponse(status="deleted" if deleted else "deactivated")

        @app.post(
            "/workflows/{workflow_name}/activate",
            response_model=WorkflowDefinition,
            responses={404: {"model": ErrorResponse}},
        )
        def activate_workflow(workflow_name: str) -> WorkflowDefinition:
            try:
                return engine.definitions.activate(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.post(
            "/workflows/{workflow_name}/deactivate",
            response_model=WorkflowDefinition,
            responses={404: {"model": ErrorResponse}},
        )
        def deactivate_workflow(workflow_name: str) -> WorkflowDefinition:
            try:
                return engine.definitions.deactivate(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.put(
            "/workflows/{workflow_name}/toggle-active",
            response_model=WorkflowDefinition,
            responses={404: {"model": ErrorResponse}},
        )
        def toggle_active(workflow_name: str) -> WorkflowDefinition:
            try:
                return engine.definitions.toggle_active(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.put(
            "/workflows/{workflow_name}/toggle-enabled",
            response_model=WorkflowDefinition,
            responses={404: {"model": ErrorResponse}},
        )
        def toggle_enabled(workflow_name: str) -> WorkflowDefinition:
            try:
                return engine.definitions.toggle_enabled(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        # Versions

        @app.get(
            "/workflows/{workflow_name}/versions",
            response_model=VersionListResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def list_versions(workflow_name: str) -> VersionListResponse:
            try:
                current = engine.definitions.get(workflow_name)
                versions = engine.definitions.list_versions(workflow_name)
            except DefinitionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return VersionListResponse(
                workflow_name=workflow_name,
                current_version=current.version,
                versions=versions,
            )

        @app.get(
            "/workflows/{workflow_name}/versions/{version}",
            response_model=WorkflowVersion,
            responses={404: {"model": ErrorResponse}},
        )
        def get_version(workflow_name: str, version: int) -> WorkflowVersion:
            try:
                return engine.definitions.get_version(workflow_name, version)
            except VersionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.post(
            "/workflows/{workflow_name}/versions/{version}/restore",
            response_model=WorkflowDefinition,
            responses=_ERROR_RESPONSES,
        )
        def restore_version(workflow_name: str, version: int) -> WorkflowDefinition:
            """Make a past version current by appending a copy of it."""
            try:
                return engine.definitions.restore_version(workflow_name, version)
            except handled as e:
                raise _to_http(e)

        @app.delete(
            "/workflows/{workflow_name}/versions/{version}",
            response_model=DeleteResponse,
            responses=_ERROR_RESPONSES,
        )
        def delete_version(workflow_name: str, version: int) -> DeleteResponse:
            try:
                engine.delete_version(workflow_name, version)
            except handled as e:
                raise _to_http(e)
            return DeleteResponse(status="deleted")

        # Runs

        @app.post(
            "/workflows/{workflow_name}/execute",
            response_model=RunResponse,
            status_code=202,
            responses=_ERROR_RESPONSES,
        )
        def execute_workflow(workflow_name: str, request: ExecuteRequest | None = None) -> RunResponse:
            """Start a run of the workflow's current version."""
            request = request or ExecuteRequest()
            try:
                run = engine.execute_workflow(
                    workflow_name, request.trigger_type, request.parameters
                )
            except handled as e:
                raise _to_http(e)
            return RunResponse.from_run(run)

        @app.post(
            "/workflows/{workflow_name}/backfill",
            response_model=BackfillResponse,
            status_code=202,
            responses=_ERROR_RESPONSES,
        )
        def backfill_workflow(workflow_name: str, request: BackfillRequest) -> BackfillResponse:
            """Start one run per period between start_date and end_date."""
            try:
                job = engine.backfill(workflow_name, request)
            except handled as e:
                raise _to_http(e)
            return _backfill_response(job)

        @app.get(
            "/workflows/{workflow_name}/backfill/{backfill_id}",
            response_model=BackfillResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def get_backfill(workflow_name: str, backfill_id: str) -> BackfillResponse:
            try:
                job = engine.get_backfill(backfill_id)
            except BackfillNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            if job.workflow_name != workflow_name:
                raise HTTPException(status_code=404, detail=f"Backfill not found: {backfill_id}")
            return _backfill_response(job)

        @app.get(
            "/workflows/{workflow_name}/executions",
            response_model=RunListResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def run_history(workflow_name: str, limit: int = Query(50, ge=1, le=500)) -> RunListResponse:
            """Most recent runs of a workflow, newest first."""
            if not engine.definitions.exists(workflow_name):
                raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_name}")
            runs = engine.run_history(workflow_name, limit)
            return RunListResponse(
                workflow_name=workflow_name,
                runs=[RunResponse.from_run(run) for run in runs],
            )

        @app.get(
            "/runs/{run_id}",
            response_model=RunResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def get_run(run_id: str) -> RunResponse:
            try:
                return self._run_response(run_id)
            except RunNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @app.get(
            "/runs/{run_id}/tasks",
            response_model=TaskExecutionListResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def get_run_tasks(run_id: str) -> TaskExecutionListResponse:
            """Every attempt record of the run."""
            try:
                executions = engine.task_executions(run_id)
            except RunNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return TaskExecutionListResponse(run_id=run_id, executions=executions)

        @app.post(
            "/runs/{run_id}/cancel",
            response_model=RunResponse,
            status_code=202,
            responses=_ERROR_RESPONSES,
        )
        def cancel_run(run_id: str) -> RunResponse:
            """Request cancellation; the run finishes as CANCELLED shortly after."""
            try:
                run = engine.cancel_run(run_id)
            except handled as e:
                raise _to_http(e)
            return RunResponse.from_run(run)

        @app.get("/health", response_model=HealthResponse)
        def health_check() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(status="ok")

        return app

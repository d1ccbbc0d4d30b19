"""Unit tests for REST API."""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.app import WorkflowAPI
from models.definition import TaskDefinition, TaskType, WorkflowDefinition, WorkflowVersion
from models.state import Run, RunStatus, TaskExecution, TaskExecutionStatus, TriggerType
from services.definition_store import (
    DefinitionConflictError,
    DefinitionExistsError,
    DefinitionNotFoundError,
    VersionNotFoundError,
)
from services.graph_validator import InvalidGraphError
from services.state_store import InvalidTransitionError, RunNotFoundError
from services.task_queue import QueueFullError
from services.workflow_engine import BackfillNotFoundError, WorkflowNotRunnableError

WORKFLOW_BODY = {
    "workflow_name": "daily-sync",
    "tasks": [
        {"task_id": "extract", "task_type": "SYNC"},
        {"task_id": "load", "task_type": "DATA_WAREHOUSE"},
    ],
    "dependencies": [{"upstream_task_id": "extract", "downstream_task_id": "load"}],
}


def create_mock_definition(name: str = "daily-sync", version: int = 1) -> WorkflowDefinition:
    """Create a stored-looking WorkflowDefinition."""
    return WorkflowDefinition(
        workflow_name=name,
        version=version,
        tasks=[TaskDefinition(task_id="extract", task_type=TaskType.SYNC)],
    )


def create_mock_run(
    run_id: str = "run-123",
    status: RunStatus = RunStatus.RUNNING,
) -> Run:
    """Create mock Run."""
    return Run(
        run_id=run_id,
        workflow_name="daily-sync",
        workflow_version=1,
        status=status,
        trigger_type=TriggerType.API,
        created_at=datetime.now(timezone.utc),
    )


def create_mock_job(workflow_name: str = "daily-sync") -> MagicMock:
    job = MagicMock()
    job.backfill_id = "backfill-abc"
    job.workflow_name = workflow_name
    job.periods = [date(2024, 1, 1), date(2024, 1, 2)]
    job.run_ids = ["run-1"]
    job.is_done = False
    job.error = None
    return job


@pytest.fixture
def mock_engine():
    return MagicMock()


@pytest.fixture
def api(mock_engine):
    return WorkflowAPI(mock_engine)


@pytest.fixture
def client(api):
    app = api.create_app()
    return TestClient(app)


class TestWorkflowAPIInit:
    """Tests for WorkflowAPI initialization."""

    def test_init_with_none_engine_raises(self):
        with pytest.raises(ValueError, match="engine is required"):
            WorkflowAPI(None)


class TestHealth:
    """Tests for health endpoint."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestDefinitionRoutes:
    """Tests for workflow definition endpoints."""

    def test_create_workflow(self, client, mock_engine):
        mock_engine.definitions.create.return_value = create_mock_definition()

        response = client.post("/workflows", json={**WORKFLOW_BODY, "change_description": "first"})

        assert response.status_code == 201
        assert response.json()["workflow_name"] == "daily-sync"
        definition, description = mock_engine.definitions.create.call_args.args
        assert [t.task_id for t in definition.tasks] == ["extract", "load"]
        assert description == "first"

    def test_create_without_name_is_bad_request(self, client):
        body = {k: v for k, v in WORKFLOW_BODY.items() if k != "workflow_name"}
        response = client.post("/workflows", json=body)
        assert response.status_code == 400
        assert "workflow_name is required" in response.json()["detail"]

    def test_create_existing_conflicts(self, client, mock_engine):
        mock_engine.definitions.create.side_effect = DefinitionExistsError("daily-sync")
        response = client.post("/workflows", json=WORKFLOW_BODY)
        assert response.status_code == 409

    def test_create_invalid_graph_is_bad_request(self, client, mock_engine):
        mock_engine.definitions.create.side_effect = InvalidGraphError(
            "daily-sync", "Circular dependency detected: a -> b -> a", ["a", "b", "a"]
        )
        response = client.post("/workflows", json=WORKFLOW_BODY)
        assert response.status_code == 400
        assert "Circular dependency" in response.json()["detail"]

    def test_create_unknown_field_rejected(self, client):
        response = client.post("/workflows", json={**WORKFLOW_BODY, "bogus": 1})
        assert response.status_code == 422

    def test_list_workflows(self, client, mock_engine):
        mock_engine.definitions.list_definitions.return_value = (1, [create_mock_definition()])

        response = client.get("/workflows?active=true&search=sync&page=1&limit=10")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["workflows"][0]["workflow_name"] == "daily-sync"
        mock_engine.definitions.list_definitions.assert_called_once_with(
            active=True, enabled=None, search="sync", page=1, limit=10
        )

    def test_get_workflow_not_found(self, client, mock_engine):
        mock_engine.definitions.get.side_effect = DefinitionNotFoundError("missing")
        response = client.get("/workflows/missing")
        assert response.status_code == 404

    def test_update_workflow(self, client, mock_engine):
        mock_engine.definitions.update.return_value = create_mock_definition(version=2)
        response = client.put("/workflows/daily-sync", json=WORKFLOW_BODY)
        assert response.status_code == 200
        assert response.json()["version"] == 2

    def test_update_cannot_rename(self, client):
        response = client.put("/workflows/other", json=WORKFLOW_BODY)
        assert response.status_code == 400

    def test_delete_workflow(self, client, mock_engine):
        mock_engine.delete_workflow.return_value = True
        assert client.delete("/workflows/daily-sync").json() == {"status": "deleted"}

    def test_delete_workflow_with_runs_deactivates(self, client, mock_engine):
        mock_engine.delete_workflow.return_value = False
        assert client.delete("/workflows/daily-sync").json() == {"status": "deactivated"}

    def test_flag_routes(self, client, mock_engine):
        definition = create_mock_definition()
        mock_engine.definitions.activate.return_value = definition
        mock_engine.definitions.deactivate.return_value = definition
        mock_engine.definitions.toggle_active.return_value = definition
        mock_engine.definitions.toggle_enabled.return_value = definition

        assert client.post("/workflows/daily-sync/activate").status_code == 200
        assert client.post("/workflows/daily-sync/deactivate").status_code == 200
        assert client.put("/workflows/daily-sync/toggle-active").status_code == 200
        assert client.put("/workflows/daily-sync/toggle-enabled").status_code == 200
        mock_engine.definitions.toggle_enabled.assert_called_once_with("daily-sync")

    def test_flag_route_not_found(self, client, mock_engine):
        mock_engine.definitions.toggle_active.side_effect = DefinitionNotFoundError("missing")
        assert client.put("/workflows/missing/toggle-active").status_code == 404


class TestVersionRoutes:
    """Tests for version history endpoints."""

    def test_list_versions(self, client, mock_engine):
        definition = create_mock_definition(version=2)
        mock_engine.definitions.get.return_value = definition
        mock_engine.definitions.list_versions.return_value = [
            WorkflowVersion(
                workflow_name="daily-sync",
                version=2,
                definition=definition,
                created_at=datetime.now(timezone.utc),
            )
        ]

        response = client.get("/workflows/daily-sync/versions")

        assert response.status_code == 200
        data = response.json()
        assert data["current_version"] == 2
        assert data["versions"][0]["version"] == 2

    def test_get_missing_version(self, client, mock_engine):
        mock_engine.definitions.get_version.side_effect = VersionNotFoundError("daily-sync", 9)
        assert client.get("/workflows/daily-sync/versions/9").status_code == 404

    def test_restore_version(self, client, mock_engine):
        mock_engine.definitions.restore_version.return_value = create_mock_definition(version=3)
        response = client.post("/workflows/daily-sync/versions/1/restore")
        assert response.status_code == 200
        mock_engine.definitions.restore_version.assert_called_once_with("daily-sync", 1)

    def test_delete_version(self, client, mock_engine):
        response = client.delete("/workflows/daily-sync/versions/1")
        assert response.status_code == 200
        assert response.json() == {"status": "deleted"}
        mock_engine.delete_version.assert_called_once_with("daily-sync", 1)

    def test_delete_version_in_use_conflicts(self, client, mock_engine):
        mock_engine.delete_version.side_effect = DefinitionConflictError(
            "daily-sync", "Version 1 of daily-sync is used by unfinished runs: run-123"
        )
        response = client.delete("/workflows/daily-sync/versions/1")
        assert response.status_code == 409
        assert "unfinished runs" in response.json()["detail"]


class TestRunRoutes:
    """Tests for execution endpoints."""

    def test_execute_without_body(self, client, mock_engine):
        mock_engine.execute_workflow.return_value = create_mock_run(status=RunStatus.PENDING)

        response = client.post("/workflows/daily-sync/execute")

        assert response.status_code == 202
        assert response.json()["run_id"] == "run-123"
        mock_engine.execute_workflow.assert_called_once_with("daily-sync", TriggerType.API, {})

    def test_execute_with_parameters(self, client, mock_engine):
        mock_engine.execute_workflow.return_value = create_mock_run()
        client.post(
            "/workflows/daily-sync/execute",
            json={"trigger_type": "MANUAL", "parameters": {"region": "eu"}},
        )
        mock_engine.execute_workflow.assert_called_once_with(
            "daily-sync", TriggerType.MANUAL, {"region": "eu"}
        )

    def test_execute_backfill_trigger_rejected(self, client):
        response = client.post("/workflows/daily-sync/execute", json={"trigger_type": "BACKFILL"})
        assert response.status_code == 422

    def test_execute_disabled_is_bad_request(self, client, mock_engine):
        mock_engine.execute_workflow.side_effect = WorkflowNotRunnableError("daily-sync", True, False)
        response = client.post("/workflows/daily-sync/execute")
        assert response.status_code == 400
        assert response.json()["detail"] == "Workflow daily-sync is disabled"

    def test_execute_queue_full_is_unavailable(self, client, mock_engine):
        mock_engine.execute_workflow.side_effect = QueueFullError(10)
        assert client.post("/workflows/daily-sync/execute").status_code == 503

    def test_run_history(self, client, mock_engine):
        mock_engine.definitions.exists.return_value = True
        mock_engine.run_history.return_value = [create_mock_run("run-2"), create_mock_run("run-1")]

        response = client.get("/workflows/daily-sync/executions?limit=2")

        assert response.status_code == 200
        assert [r["run_id"] for r in response.json()["runs"]] == ["run-2", "run-1"]
        mock_engine.run_history.assert_called_once_with("daily-sync", 2)

    def test_run_history_unknown_workflow(self, client, mock_engine):
        mock_engine.definitions.exists.return_value = False
        assert client.get("/workflows/missing/executions").status_code == 404

    def test_get_run_with_summary(self, client, mock_engine):
        mock_engine.get_run.return_value = create_mock_run()
        mock_engine.run_summary.return_value = {
            "total_tasks": 3,
            "completed_tasks": 1,
            "failed_tasks": 0,
            "skipped_tasks": 0,
            "cancelled_tasks": 0,
            "running_tasks": 1,
        }

        data = client.get("/runs/run-123").json()

        assert data["status"] == "RUNNING"
        assert data["total_tasks"] == 3
        assert data["running_tasks"] == 1

    def test_get_run_not_found(self, client, mock_engine):
        mock_engine.get_run.side_effect = RunNotFoundError("missing")
        assert client.get("/runs/missing").status_code == 404

    def test_get_run_tasks(self, client, mock_engine):
        mock_engine.task_executions.return_value = [
            TaskExecution(
                run_id="run-123",
                task_id="extract",
                attempt_number=1,
                status=TaskExecutionStatus.SUCCESS,
                created_at=datetime.now(timezone.utc),
                output={"rows": 5},
            )
        ]
        data = client.get("/runs/run-123/tasks").json()
        assert data["executions"][0]["output"] == {"rows": 5}

    def test_cancel_run(self, client, mock_engine):
        mock_engine.cancel_run.return_value = create_mock_run()
        assert client.post("/runs/run-123/cancel").status_code == 202

    def test_cancel_finished_run_conflicts(self, client, mock_engine):
        mock_engine.cancel_run.side_effect = InvalidTransitionError("run run-123", "SUCCESS", "CANCELLED")
        assert client.post("/runs/run-123/cancel").status_code == 409


class TestBackfillRoutes:
    """Tests for backfill endpoints."""

    def test_start_backfill(self, client, mock_engine):
        mock_engine.backfill.return_value = create_mock_job()

        response = client.post(
            "/workflows/daily-sync/backfill",
            json={"start_date": "2024-01-01", "end_date": "2024-01-02", "date_field": "order_date"},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["backfill_id"] == "backfill-abc"
        assert data["periods"] == ["2024-01-01", "2024-01-02"]
        request = mock_engine.backfill.call_args.args[1]
        assert request.date_field == "order_date"

    def test_backfill_reversed_range_rejected(self, client):
        response = client.post(
            "/workflows/daily-sync/backfill",
            json={"start_date": "2024-02-01", "end_date": "2024-01-01"},
        )
        assert response.status_code == 422

    def test_get_backfill(self, client, mock_engine):
        mock_engine.get_backfill.return_value = create_mock_job()
        assert client.get("/workflows/daily-sync/backfill/backfill-abc").status_code == 200

    def test_get_backfill_of_other_workflow(self, client, mock_engine):
        mock_engine.get_backfill.return_value = create_mock_job("other")
        assert client.get("/workflows/daily-sync/backfill/backfill-abc").status_code == 404

    def test_get_unknown_backfill(self, client, mock_engine):
        mock_engine.get_backfill.side_effect = BackfillNotFoundError("backfill-x")
        assert client.get("/workflows/daily-sync/backfill/backfill-x").status_code == 404


class TestTaskQueueRoutes:
    """Tests for task queue administration endpoints."""

    def test_queue_size(self, client, mock_engine):
        mock_engine.queue_size.return_value = 7
        assert client.get("/workflows/task-queue/size").json() == {"size": 7}

    def test_get_pool_size(self, client, mock_engine):
        mock_engine.get_pool_size.return_value = 4
        assert client.get("/workflows/task-queue/worker-pool-size").json() == {"size": 4}

    def test_set_pool_size(self, client, mock_engine):
        mock_engine.set_pool_size.return_value = 8
        response = client.put("/workflows/task-queue/worker-pool-size", json={"size": 8})
        assert response.json() == {"size": 8}
        mock_engine.set_pool_size.assert_called_once_with(8)

    def test_set_invalid_pool_size(self, client, mock_engine):
        mock_engine.set_pool_size.side_effect = ValueError("size must be at least 1")
        response = client.put("/workflows/task-queue/worker-pool-size", json={"size": 0})
        assert response.status_code == 400
        assert response.json()["detail"] == "size must be at least 1"

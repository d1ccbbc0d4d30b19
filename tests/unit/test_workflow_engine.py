"""Unit tests for WorkflowEngine."""

import threading
from datetime import date

import fakeredis
import pytest

from models.definition import (
    Dependency,
    DependencyKind,
    RetryPolicy,
    RollbackConfig,
    TaskDefinition,
    TaskType,
    WorkflowDefinition,
)
from models.state import RunStatus, TaskExecutionStatus, TriggerType
from services.backfill import BackfillRequest
from services.definition_store import (
    DefinitionConflictError,
    DefinitionNotFoundError,
    DefinitionStore,
    VersionNotFoundError,
)
from services.executors import ExecutorRegistry
from services.graph_validator import GraphValidator, InvalidGraphError, UnsupportedTaskTypeError
from services.state_store import InMemoryStateStore, InvalidTransitionError
from services.workflow_engine import (
    BackfillNotFoundError,
    WorkflowEngine,
    WorkflowNotRunnableError,
)

S = TaskExecutionStatus


class ScriptedExecutor:
    """Returns {"task": name} unless a behaviour is scripted for the task name."""

    def __init__(self, behaviours=None):
        self.behaviours = behaviours or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def execute(self, config, upstream_outputs, cancel_signal):
        name = config["name"]
        with self._lock:
            self.calls.append(name)
        behaviour = self.behaviours.get(name)
        if behaviour is None:
            return {"task": name}
        return behaviour(config, upstream_outputs, cancel_signal)


def make_definition(
    name: str = "pipeline",
    task_ids=("extract", "transform", "load"),
    retries: int = 0,
) -> WorkflowDefinition:
    return WorkflowDefinition(
        workflow_name=name,
        tasks=[
            TaskDefinition(task_id=t, task_type=TaskType.CUSTOM_JOB, config={"name": t})
            for t in task_ids
        ],
        dependencies=[
            Dependency(upstream_task_id=a, downstream_task_id=b)
            for a, b in zip(task_ids, task_ids[1:])
        ],
        retry_policy=RetryPolicy(max_retries=retries, retry_delay_seconds=0.01, backoff_multiplier=1),
    )


def make_task(task_id: str) -> TaskDefinition:
    return TaskDefinition(task_id=task_id, task_type=TaskType.CUSTOM_JOB, config={"name": task_id})


def raise_error(message: str):
    def behaviour(config, upstream_outputs, cancel_signal):
        raise RuntimeError(message)

    return behaviour


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def registry(executor):
    registry = ExecutorRegistry()
    registry.register(TaskType.CUSTOM_JOB, executor)
    return registry


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def definition_store(registry):
    return DefinitionStore(fakeredis.FakeRedis(), GraphValidator(registry))


@pytest.fixture
def engine(definition_store, state_store, registry):
    engine = WorkflowEngine(
        definition_store,
        state_store,
        registry,
        pool_size=2,
        poll_interval=0.05,
        wait_seconds=0.05,
    )
    yield engine
    engine.stop(timeout=5)


class TestWorkflowEngineInit:
    """Tests for WorkflowEngine initialization."""

    def test_requires_stores(self, definition_store, registry):
        with pytest.raises(ValueError, match="state_store is required"):
            WorkflowEngine(definition_store, None, registry)

    def test_requires_registry(self, definition_store, state_store):
        with pytest.raises(ValueError, match="registry is required"):
            WorkflowEngine(definition_store, state_store, None)


class TestExecuteWorkflow:
    """Tests for execute_workflow and start_run."""

    def test_runs_chain_to_success(self, engine, executor):
        engine.definitions.create(make_definition())
        engine.start(recover=False)

        run = engine.execute_workflow("pipeline", TriggerType.API, {"logical_date": "2024-01-01"})
        assert run.status == RunStatus.PENDING
        assert run.run_id.startswith("run-")

        finished = engine.wait_for_run(run.run_id, timeout=10)
        assert finished.status == RunStatus.SUCCESS
        assert finished.trigger_type == TriggerType.API
        assert executor.calls == ["extract", "transform", "load"]

        executions = engine.task_executions(run.run_id)
        assert {e.task_id: e.status for e in executions} == {
            "extract": S.SUCCESS,
            "transform": S.SUCCESS,
            "load": S.SUCCESS,
        }

    def test_missing_workflow_raises(self, engine):
        with pytest.raises(DefinitionNotFoundError):
            engine.execute_workflow("missing")

    def test_inactive_workflow_not_runnable(self, engine):
        engine.definitions.create(make_definition())
        engine.definitions.deactivate("pipeline")
        with pytest.raises(WorkflowNotRunnableError, match="inactive"):
            engine.execute_workflow("pipeline")

    def test_disabled_workflow_not_runnable(self, engine):
        engine.definitions.create(make_definition())
        engine.definitions.toggle_enabled("pipeline")
        with pytest.raises(WorkflowNotRunnableError, match="disabled"):
            engine.execute_workflow("pipeline")

    def test_start_run_validates_definition(self, engine):
        definition = WorkflowDefinition(
            workflow_name="adhoc",
            tasks=[TaskDefinition(task_id="a", task_type=TaskType.SYNC)],
        )
        with pytest.raises(UnsupportedTaskTypeError):
            engine.start_run(definition)
        assert engine.run_history("adhoc") == []

    def test_cyclic_definition_never_enqueues(self, engine, state_store):
        definition = WorkflowDefinition(
            workflow_name="loop",
            tasks=[make_task("a"), make_task("b")],
            dependencies=[
                Dependency(upstream_task_id="a", downstream_task_id="b"),
                Dependency(upstream_task_id="b", downstream_task_id="a"),
            ],
        )
        engine.start(recover=False)

        with pytest.raises(InvalidGraphError):
            engine.start_run(definition)

        assert engine.run_history("loop") == []
        assert state_store.list_active_runs() == []
        assert engine.queue_size() == 0

    def test_run_summary_and_history(self, engine):
        engine.definitions.create(make_definition())
        engine.start(recover=False)
        run = engine.execute_workflow("pipeline")
        engine.wait_for_run(run.run_id, timeout=10)

        summary = engine.run_summary(run.run_id)
        assert summary == {
            "total_tasks": 3,
            "completed_tasks": 3,
            "failed_tasks": 0,
            "skipped_tasks": 0,
            "cancelled_tasks": 0,
            "running_tasks": 0,
        }
        assert [r.run_id for r in engine.run_history("pipeline")] == [run.run_id]


class TestRunOutcome:
    """Tests for how task failures decide the run status."""

    def test_completion_followup_runs_but_run_fails(self, engine, executor, state_store):
        executor.behaviours["sync"] = raise_error("remote timeout")
        engine.definitions.create(
            WorkflowDefinition(
                workflow_name="sync-and-clean",
                tasks=[make_task("sync"), make_task("cleanup")],
                dependencies=[
                    Dependency(
                        upstream_task_id="sync",
                        downstream_task_id="cleanup",
                        kind=DependencyKind.COMPLETION,
                    )
                ],
                retry_policy=RetryPolicy(max_retries=0),
            )
        )
        engine.start(recover=False)

        run = engine.execute_workflow("sync-and-clean")
        finished = engine.wait_for_run(run.run_id, timeout=10)

        assert finished.status == RunStatus.FAILED
        assert finished.failed_task_id == "sync"
        assert finished.error == "Task sync failed: remote timeout"
        latest = state_store.latest_executions(run.run_id)
        assert latest["sync"].status == S.FAILED
        assert latest["cleanup"].status == S.SUCCESS
        assert executor.calls == ["sync", "cleanup"]

    def test_completion_followup_waits_for_other_upstream(self, engine, executor, state_store):
        release = threading.Event()
        executor.behaviours["sync"] = raise_error("remote timeout")
        executor.behaviours["export"] = lambda c, u, cancel: release.wait(5) and {"rows": 1}
        engine.definitions.create(
            WorkflowDefinition(
                workflow_name="fan-in",
                tasks=[make_task("sync"), make_task("export"), make_task("cleanup")],
                dependencies=[
                    Dependency(
                        upstream_task_id="sync",
                        downstream_task_id="cleanup",
                        kind=DependencyKind.COMPLETION,
                    ),
                    Dependency(upstream_task_id="export", downstream_task_id="cleanup"),
                ],
                retry_policy=RetryPolicy(max_retries=0),
            )
        )
        engine.start(recover=False)

        run = engine.execute_workflow("fan-in")
        assert engine.wait_for_run(run.run_id, timeout=0.5).status == RunStatus.RUNNING
        release.set()
        finished = engine.wait_for_run(run.run_id, timeout=10)

        assert finished.status == RunStatus.FAILED
        assert state_store.latest_executions(run.run_id)["cleanup"].status == S.SUCCESS

    def test_skip_on_failure_edge_covers_failure(self, engine, executor, state_store):
        executor.behaviours["optional"] = raise_error("source missing")
        engine.definitions.create(
            WorkflowDefinition(
                workflow_name="optional-branch",
                tasks=[make_task("optional"), make_task("enrich")],
                dependencies=[
                    Dependency(
                        upstream_task_id="optional",
                        downstream_task_id="enrich",
                        kind=DependencyKind.SKIP_ON_FAILURE,
                    )
                ],
                retry_policy=RetryPolicy(max_retries=0),
            )
        )
        engine.start(recover=False)

        run = engine.execute_workflow("optional-branch")
        finished = engine.wait_for_run(run.run_id, timeout=10)

        assert finished.status == RunStatus.SUCCESS
        assert state_store.latest_executions(run.run_id)["enrich"].status == S.SKIPPED

    def test_default_rollback_depth_covers_all_upstream(self, engine, executor):
        executor.behaviours["load"] = raise_error("warehouse offline")
        engine.definitions.create(
            make_definition().model_copy(update={"rollback_config": RollbackConfig()})
        )
        engine.start(recover=False)

        run = engine.execute_workflow("pipeline")
        finished = engine.wait_for_run(run.run_id, timeout=10)

        assert finished.status == RunStatus.FAILED
        assert [step.task_id for step in finished.rollback.steps] == ["transform", "extract"]


class TestDeleteVersion:
    """Tests for delete_version."""

    def test_version_used_by_unfinished_run_kept(self, engine, state_store):
        engine.definitions.create(make_definition())
        engine.definitions.update("pipeline", make_definition(), "second")
        state_store.create_run("run-live", "pipeline", 1)

        with pytest.raises(DefinitionConflictError, match="run-live"):
            engine.delete_version("pipeline", 1)
        assert engine.definitions.get_version("pipeline", 1).version == 1

    def test_version_of_finished_runs_deleted(self, engine, state_store):
        engine.definitions.create(make_definition())
        engine.definitions.update("pipeline", make_definition(), "second")
        state_store.create_run("run-done", "pipeline", 1)
        state_store.update_run_status("run-done", RunStatus.CANCELLED)

        engine.delete_version("pipeline", 1)

        with pytest.raises(VersionNotFoundError):
            engine.definitions.get_version("pipeline", 1)

    def test_other_versions_unaffected(self, engine, state_store):
        engine.definitions.create(make_definition())
        engine.definitions.update("pipeline", make_definition(), "second")
        engine.definitions.update("pipeline", make_definition(), "third")
        state_store.create_run("run-live", "pipeline", 2)

        engine.delete_version("pipeline", 1)

        assert [v.version for v in engine.definitions.list_versions("pipeline")] == [3, 2]


class TestCancelRun:
    """Tests for cancel_run."""

    def test_cancel_terminal_run_raises(self, engine):
        engine.definitions.create(make_definition())
        engine.start(recover=False)
        run = engine.execute_workflow("pipeline")
        engine.wait_for_run(run.run_id, timeout=10)
        with pytest.raises(InvalidTransitionError):
            engine.cancel_run(run.run_id)

    def test_cancel_stops_waiting_tasks(self, engine, executor, state_store):
        executor.behaviours["extract"] = lambda c, u, cancel: cancel.wait(5) and {}
        engine.definitions.create(make_definition())
        engine.start(recover=False)
        run = engine.execute_workflow("pipeline")

        engine.cancel_run(run.run_id)
        finished = engine.wait_for_run(run.run_id, timeout=10)

        assert finished.status == RunStatus.CANCELLED
        latest = state_store.latest_executions(run.run_id)
        assert latest["load"].status == S.CANCELLED
        assert "load" not in executor.calls

    def test_cancel_orphaned_run(self, engine, state_store):
        engine.definitions.create(make_definition())
        state_store.create_run("run-orphan", "pipeline", 1)

        engine.cancel_run("run-orphan")
        finished = engine.wait_for_run("run-orphan", timeout=10)

        assert finished.status == RunStatus.CANCELLED
        assert all(e.status == S.CANCELLED for e in state_store.list_executions("run-orphan"))


class TestDeleteWorkflow:
    """Tests for delete_workflow."""

    def test_delete_without_runs(self, engine):
        engine.definitions.create(make_definition())
        assert engine.delete_workflow("pipeline") is True
        assert not engine.definitions.exists("pipeline")

    def test_delete_with_runs_deactivates(self, engine, state_store):
        engine.definitions.create(make_definition())
        state_store.create_run("run-1", "pipeline", 1)
        assert engine.delete_workflow("pipeline") is False
        assert engine.definitions.get("pipeline").active is False


class TestRecovery:
    """Tests for recover_runs."""

    def test_resumes_queued_attempt(self, engine, state_store, executor):
        engine.definitions.create(make_definition())
        state_store.create_run("run-old", "pipeline", 1)
        state_store.update_run_status("run-old", RunStatus.RUNNING)
        state_store.create_execution("run-old", "extract", 1)

        engine.start(recover=True)
        finished = engine.wait_for_run("run-old", timeout=10)

        assert finished.status == RunStatus.SUCCESS
        assert executor.calls == ["extract", "transform", "load"]

    def test_interrupted_attempt_is_retried(self, definition_store, state_store, registry, executor):
        definition_store.create(make_definition(retries=1))
        state_store.create_run("run-old", "pipeline", 1)
        state_store.update_run_status("run-old", RunStatus.RUNNING)
        state_store.create_execution("run-old", "extract", 1)
        state_store.update_execution_status("run-old", "extract", 1, S.RUNNING)

        engine = WorkflowEngine(
            definition_store, state_store, registry, pool_size=1, poll_interval=0.05, wait_seconds=0.05
        )
        engine.start(recover=True)
        try:
            finished = engine.wait_for_run("run-old", timeout=10)
        finally:
            engine.stop(timeout=5)

        assert finished.status == RunStatus.SUCCESS
        first = state_store.get_execution("run-old", "extract", 1)
        assert first.status == S.RETRY_SCHEDULED
        assert first.error == "attempt interrupted by engine restart"
        assert state_store.get_execution("run-old", "extract", 2).status == S.SUCCESS

    def test_missing_version_fails_run(self, engine, state_store):
        state_store.create_run("run-ghost", "ghost", 4)
        assert engine.recover_runs() == []
        run = state_store.get_run("run-ghost")
        assert run.status == RunStatus.FAILED
        assert run.error.startswith("Definition unavailable")


class TestPoolAndQueue:
    """Tests for queue and worker pool accessors."""

    def test_pool_size(self, engine):
        assert engine.get_pool_size() == 2
        assert engine.set_pool_size(5) == 5
        assert engine.get_pool_size() == 5

    def test_invalid_pool_size(self, engine):
        with pytest.raises(ValueError):
            engine.set_pool_size(0)

    def test_queue_size_empty(self, engine):
        assert engine.queue_size() == 0


class TestBackfill:
    """Tests for backfill and get_backfill."""

    def test_backfill_starts_run_per_period(self, engine):
        engine.definitions.create(make_definition(task_ids=("only",)))
        engine.start(recover=False)
        request = BackfillRequest(start_date=date(2024, 1, 1), end_date=date(2024, 1, 3))

        job = engine.backfill("pipeline", request)
        assert job.wait(15)
        assert job.error is None
        assert engine.get_backfill(job.backfill_id) is job

        runs = [engine.get_run(run_id) for run_id in job.run_ids]
        assert [r.parameters["logical_date"] for r in runs] == ["2024-01-01", "2024-01-02", "2024-01-03"]
        assert all(r.trigger_type == TriggerType.BACKFILL for r in runs)
        assert all(r.status == RunStatus.SUCCESS for r in runs)

    def test_backfill_disabled_workflow_raises(self, engine):
        engine.definitions.create(make_definition())
        engine.definitions.toggle_enabled("pipeline")
        request = BackfillRequest(start_date=date(2024, 1, 1), end_date=date(2024, 1, 1))
        with pytest.raises(WorkflowNotRunnableError):
            engine.backfill("pipeline", request)

    def test_unknown_backfill_raises(self, engine):
        with pytest.raises(BackfillNotFoundError):
            engine.get_backfill("backfill-missing")

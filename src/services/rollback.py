"""Compensation of completed upstream tasks after a run fails."""

import logging
from datetime import datetime, timezone

from models.definition import WorkflowDefinition
from models.events import EngineEvent, EventType
from models.graph import WorkflowGraph
from models.state import (
    RollbackOutcome,
    RollbackStatus,
    RollbackStep,
    RollbackStepStatus,
    TaskExecutionStatus,
)
from services.executors import ExecutorNotFoundError, ExecutorRegistry
from services.notifier import EventDispatcher
from services.state_store import ExecutionStateStore

logger = logging.getLogger(__name__)


class RollbackManager:
    """Walks back from failed tasks and invokes compensating actions.

    Only tasks whose latest attempt succeeded are compensated, in reverse
    topological order, at most `depth` edges upstream of a failed task.
    Compensation failures are recorded as run warnings and never retried.
    """

    def __init__(
        self,
        state_store: ExecutionStateStore,
        registry: ExecutorRegistry,
        dispatcher: EventDispatcher,
    ):
        if state_store is None:
            raise ValueError("state_store is required")
        if registry is None:
            raise ValueError("registry is required")
        if dispatcher is None:
            raise ValueError("dispatcher is required")

        self._store = state_store
        self._registry = registry
        self._dispatcher = dispatcher

    def plan(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        failed_task_ids: list[str],
        depth: int,
    ) -> list[str]:
        """Tasks to compensate, in the order compensation runs."""
        if depth < 0:
            raise ValueError("depth must be non-negative")

        graph = WorkflowGraph.from_definition(definition)
        latest = self._store.latest_executions(run_id)

        candidates: set[str] = set()
        for failed_id in failed_task_ids:
            candidates.update(graph.ancestors_within(failed_id, depth))

        completed = {
            task_id
            for task_id in candidates
            if task_id in latest and latest[task_id].status == TaskExecutionStatus.SUCCESS
        }
        return [t for t in reversed(graph.topological_order()) if t in completed]

    def rollback(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        failed_task_ids: list[str],
        depth: int,
    ) -> RollbackOutcome:
        """Compensate and record the outcome on the run. Never raises for step failures."""
        if not run_id:
            raise ValueError("run_id is required")
        if definition is None:
            raise ValueError("definition is required")

        started_at = datetime.now(timezone.utc)
        self._store.set_rollback(
            run_id, RollbackOutcome(status=RollbackStatus.IN_PROGRESS, started_at=started_at)
        )

        order = self.plan(run_id, definition, failed_task_ids, depth)
        logger.info(f"Rolling back run {run_id}: {order or 'nothing to compensate'}")

        latest = self._store.latest_executions(run_id)
        steps: list[RollbackStep] = []
        for task_id in order:
            step = self._compensate(run_id, definition, task_id, latest[task_id].output)
            steps.append(step)

        failures = [s for s in steps if s.status == RollbackStepStatus.FAILED]
        outcome = RollbackOutcome(
            status=RollbackStatus.PARTIAL if failures else RollbackStatus.COMPLETED,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            steps=steps,
            error_message="; ".join(f"{s.task_id}: {s.note}" for s in failures) or None,
        )
        self._store.set_rollback(run_id, outcome)

        self._dispatcher.emit(
            EngineEvent(
                event_type=EventType.ROLLBACK_COMPLETED,
                run_id=run_id,
                workflow_name=definition.workflow_name,
                details={
                    "status": outcome.status.value,
                    "compensated": [
                        s.task_id for s in steps if s.status == RollbackStepStatus.COMPENSATED
                    ],
                    "failed": [s.task_id for s in failures],
                },
            )
        )
        return outcome

    def _compensate(self, run_id, definition, task_id, prior_output) -> RollbackStep:
        task = definition.get_task(task_id)
        if task.compensation is None:
            return RollbackStep(
                task_id=task_id,
                status=RollbackStepStatus.SKIPPED,
                note="no compensating action configured",
            )

        try:
            executor = self._registry.get(task.task_type)
        except ExecutorNotFoundError as e:
            return self._failed_step(run_id, task_id, str(e))

        compensate = getattr(executor, "compensate", None)
        if not callable(compensate):
            return RollbackStep(
                task_id=task_id,
                status=RollbackStepStatus.SKIPPED,
                note=f"executor for {task.task_type.value} cannot compensate",
            )

        try:
            compensate(task.compensation, prior_output)
        except Exception as e:
            return self._failed_step(run_id, task_id, str(e) or type(e).__name__)

        logger.info(f"Compensated {run_id}/{task_id}")
        return RollbackStep(task_id=task_id, status=RollbackStepStatus.COMPENSATED)

    def _failed_step(self, run_id: str, task_id: str, error: str) -> RollbackStep:
        logger.warning(f"Compensation of {run_id}/{task_id} failed: {error}")
        self._store.add_run_warning(run_id, f"Rollback of {task_id} failed: {error}")
        return RollbackStep(task_id=task_id, status=RollbackStepStatus.FAILED, note=error)

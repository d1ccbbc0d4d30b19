"""Dependency resolution for a run's tasks."""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from models.definition import DependencyKind
from models.graph import WorkflowGraph
from models.state import TaskExecution, TaskExecutionStatus

logger = logging.getLogger(__name__)

Edge = tuple[str, str]


class ConditionEvaluator(Protocol):
    """Resolves a conditional edge to a boolean from the upstream output."""

    def evaluate(self, condition: str, upstream_output: Mapping[str, Any]) -> bool:
        ...


class OutputFlagEvaluator:
    """Reads the condition name as a key of the upstream output."""

    def evaluate(self, condition: str, upstream_output: Mapping[str, Any]) -> bool:
        return bool(upstream_output.get(condition, False))


@dataclass(frozen=True)
class Resolution:
    """Tasks to enqueue, to skip and to cancel, as decided from one snapshot."""
    ready: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    blocked: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.ready or self.skipped or self.blocked)


class DependencyResolver:
    """Computes which tasks of a run can move forward.

    Pure with respect to its inputs: the coordinator applies the decisions.
    """

    def __init__(self, evaluator: ConditionEvaluator | None = None):
        self._evaluator = evaluator or OutputFlagEvaluator()

    def evaluate_conditions(
        self,
        graph: WorkflowGraph,
        latest: Mapping[str, TaskExecution],
    ) -> dict[Edge, bool]:
        """Resolve every conditional edge whose upstream is done."""
        resolved: dict[Edge, bool] = {}
        for deps in graph.inbound.values():
            for dep in deps:
                if not dep.condition:
                    continue
                upstream = latest.get(dep.upstream_task_id)
                if upstream is None or not upstream.status.is_task_terminal:
                    continue
                if upstream.status != TaskExecutionStatus.SUCCESS:
                    resolved[dep.edge] = False
                    continue
                resolved[dep.edge] = self._evaluator.evaluate(
                    dep.condition, upstream.output or {}
                )
        return resolved

    def resolve(
        self,
        graph: WorkflowGraph,
        latest: Mapping[str, TaskExecution],
        conditions: Mapping[Edge, bool] | None = None,
    ) -> Resolution:
        """Classify every task that has no execution record yet."""
        if graph is None:
            raise ValueError("graph is required")
        conditions = conditions or {}

        ready: list[str] = []
        skipped: dict[str, str] = {}
        blocked: dict[str, str] = {}

        for task_id in graph.tasks:
            if task_id in latest:
                continue

            waiting = False
            skip_reason = None
            block_reason = None
            for dep in graph.inbound[task_id]:
                upstream = latest.get(dep.upstream_task_id)
                if upstream is None or not upstream.status.is_task_terminal:
                    waiting = True
                    break

                status = upstream.status
                up_id = dep.upstream_task_id
                if dep.kind == DependencyKind.SUCCESS:
                    if status == TaskExecutionStatus.SKIPPED:
                        skip_reason = skip_reason or f"upstream {up_id} skipped"
                        continue
                    if status != TaskExecutionStatus.SUCCESS:
                        block_reason = block_reason or f"upstream {up_id} {status.value.lower()}"
                        continue
                elif dep.kind == DependencyKind.SKIP_ON_FAILURE:
                    if status in (TaskExecutionStatus.FAILED, TaskExecutionStatus.SKIPPED):
                        skip_reason = skip_reason or f"upstream {up_id} {status.value.lower()}"
                        continue
                    if status == TaskExecutionStatus.CANCELLED:
                        block_reason = block_reason or f"upstream {up_id} cancelled"
                        continue

                if dep.condition and not conditions.get(dep.edge, False):
                    skip_reason = skip_reason or f"condition {dep.condition} on {up_id} is false"

            if waiting:
                continue
            if block_reason:
                blocked[task_id] = block_reason
            elif skip_reason:
                skipped[task_id] = skip_reason
            else:
                ready.append(task_id)

        ready.sort(key=lambda t: (-graph.tasks[t].priority, t))
        if ready or skipped or blocked:
            logger.debug(f"Resolved ready={ready} skipped={skipped} blocked={blocked}")
        return Resolution(ready=ready, skipped=skipped, blocked=blocked)

    def ready_tasks(
        self,
        graph: WorkflowGraph,
        latest: Mapping[str, TaskExecution],
        conditions: Mapping[Edge, bool] | None = None,
    ) -> list[str]:
        """Task ids ready to enqueue, highest priority first."""
        return self.resolve(graph, latest, conditions).ready

"""Structural validation of workflow definitions."""

import logging
from collections import Counter
from models.definition import TaskType, WorkflowDefinition
from models.graph import WorkflowGraph
from services.executors import ExecutorRegistry

logger = logging.getLogger(__name__)


class GraphValidationError(Exception):
    """Base class for definition validation failures."""

    def __init__(self, workflow_name: str, message: str):
        self.workflow_name = workflow_name
        super().__init__(message)


class InvalidGraphError(GraphValidationError):
    """Raised when the dependency graph is not a DAG."""

    def __init__(self, workflow_name: str, message: str, cycle: list[str] | None = None):
        self.cycle = cycle or []
        super().__init__(workflow_name, message)


class DanglingReferenceError(GraphValidationError):
    """Raised when an edge references a task that does not exist."""

    def __init__(self, workflow_name: str, task_id: str, edge: tuple[str, str]):
        self.task_id = task_id
        self.edge = edge
        super().__init__(
            workflow_name,
            f"Dependency {edge[0]} -> {edge[1]} references unknown task: {task_id}",
        )


class DuplicateTaskError(GraphValidationError):
    """Raised when two tasks share an identifier."""

    def __init__(self, workflow_name: str, task_id: str):
        self.task_id = task_id
        super().__init__(workflow_name, f"Duplicate task: {task_id}")


class UnsupportedTaskTypeError(GraphValidationError):
    """Raised when no executor is registered for a task's type."""

    def __init__(self, workflow_name: str, task_id: str, task_type: TaskType):
        self.task_id = task_id
        self.task_type = task_type
        super().__init__(
            workflow_name,
            f"No executor registered for type {task_type.value} (task {task_id})",
        )


class RollbackDepthError(GraphValidationError):
    """Raised when rollback depth exceeds the longest path in the graph."""

    def __init__(self, workflow_name: str, depth: int, longest_path: int):
        self.depth = depth
        self.longest_path = longest_path
        super().__init__(
            workflow_name,
            f"max_rollback_depth {depth} exceeds longest path length {longest_path}",
        )


class GraphValidator:
    """Checks a definition before it is saved or run."""

    def __init__(self, registry: ExecutorRegistry | None = None):
        self._registry = registry

    def validate(self, definition: WorkflowDefinition) -> WorkflowGraph:
        """Validate the definition and return its graph.

        Raises a GraphValidationError subclass on the first problem found.
        """
        if definition is None:
            raise ValueError("definition is required")

        name = definition.workflow_name
        if not definition.tasks:
            raise InvalidGraphError(name, "workflow must contain at least one task")

        counts = Counter(task.task_id for task in definition.tasks)
        for task in definition.tasks:
            if counts[task.task_id] > 1:
                raise DuplicateTaskError(name, task.task_id)

        if self._registry is not None:
            supported = self._registry.registered_types()
            for task in definition.tasks:
                if task.task_type not in supported:
                    raise UnsupportedTaskTypeError(name, task.task_id, task.task_type)

        seen_edges = set()
        for dep in definition.dependencies:
            for task_id in dep.edge:
                if task_id not in counts:
                    raise DanglingReferenceError(name, task_id, dep.edge)
            if dep.edge in seen_edges:
                raise InvalidGraphError(
                    name, f"Duplicate dependency: {dep.upstream_task_id} -> {dep.downstream_task_id}"
                )
            seen_edges.add(dep.edge)

        graph = WorkflowGraph.from_definition(definition)
        cycle = graph.find_cycle()
        if cycle:
            raise InvalidGraphError(
                name, f"Circular dependency detected: {' -> '.join(cycle)}", cycle
            )

        rollback = definition.rollback_config
        if rollback is not None and rollback.max_rollback_depth is not None:
            longest = graph.longest_path_length()
            if rollback.max_rollback_depth > longest:
                raise RollbackDepthError(name, rollback.max_rollback_depth, longest)

        logger.debug(
            f"Workflow {name} v{definition.version} valid: "
            f"{len(graph.tasks)} tasks, {len(definition.dependencies)} dependencies"
        )
        return graph

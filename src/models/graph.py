"""Graph representation of a workflow definition."""

import heapq
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models.definition import Dependency, TaskDefinition, WorkflowDefinition


@dataclass
class WorkflowGraph:
    """Adjacency view over a definition's tasks and edges.

    Edges that reference unknown tasks are kept out of the adjacency maps;
    structural checks live in the graph validator.
    """
    tasks: Dict[str, TaskDefinition] = field(default_factory=dict)
    inbound: Dict[str, List[Dependency]] = field(default_factory=dict)
    outbound: Dict[str, List[Dependency]] = field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "WorkflowGraph":
        graph = cls()
        for task in definition.tasks:
            graph.add_task(task)
        for dep in definition.dependencies:
            if dep.upstream_task_id in graph.tasks and dep.downstream_task_id in graph.tasks:
                graph.add_dependency(dep)
        return graph

    def add_task(self, task: TaskDefinition):
        """Add a task to the graph."""
        self.tasks[task.task_id] = task
        self.inbound.setdefault(task.task_id, [])
        self.outbound.setdefault(task.task_id, [])

    def add_dependency(self, dep: Dependency):
        self.outbound[dep.upstream_task_id].append(dep)
        self.inbound[dep.downstream_task_id].append(dep)

    def upstream_ids(self, task_id: str) -> List[str]:
        return [dep.upstream_task_id for dep in self.inbound.get(task_id, [])]

    def downstream_ids(self, task_id: str) -> List[str]:
        return [dep.downstream_task_id for dep in self.outbound.get(task_id, [])]

    def get_start_tasks(self) -> List[str]:
        """Tasks with no inbound edges, sorted by id."""
        return sorted(t for t, deps in self.inbound.items() if not deps)

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path [a, b, ..., a], or None."""
        visited = set()
        for start in sorted(self.tasks):
            if start in visited:
                continue
            visited.add(start)
            path: List[str] = [start]
            on_path = {start}
            # One iterator of pending successors per task on the path
            pending = [iter(sorted(self.downstream_ids(start)))]
            while pending:
                next_id = next(pending[-1], None)
                if next_id is None:
                    pending.pop()
                    on_path.discard(path.pop())
                    continue
                if next_id in on_path:
                    return path[path.index(next_id):] + [next_id]
                if next_id not in visited:
                    visited.add(next_id)
                    path.append(next_id)
                    on_path.add(next_id)
                    pending.append(iter(sorted(self.downstream_ids(next_id))))
        return None

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties broken by task id."""
        remaining = {t: len(deps) for t, deps in self.inbound.items()}
        ready = [t for t, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            task_id = heapq.heappop(ready)
            order.append(task_id)
            for next_id in self.downstream_ids(task_id):
                remaining[next_id] -= 1
                if remaining[next_id] == 0:
                    heapq.heappush(ready, next_id)
        if len(order) != len(self.tasks):
            raise ValueError("graph contains a cycle")
        return order

    def longest_path_length(self) -> int:
        """Number of edges on the longest path. Requires an acyclic graph."""
        depth = {}
        for task_id in self.topological_order():
            ups = self.upstream_ids(task_id)
            depth[task_id] = max((depth[u] + 1 for u in ups), default=0)
        return max(depth.values(), default=0)

    def ancestors_within(self, task_id: str, max_hops: int) -> Dict[str, int]:
        """Upstream tasks reachable in at most `max_hops` edges, with distance."""
        found: Dict[str, int] = {}
        frontier = [task_id]
        for hop in range(1, max_hops + 1):
            next_frontier = []
            for current in frontier:
                for up in self.upstream_ids(current):
                    if up not in found and up != task_id:
                        found[up] = hop
                        next_frontier.append(up)
            frontier = next_frontier
        return found

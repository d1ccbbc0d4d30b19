"""In-process priority queue distributing ready tasks to workers."""

import heapq
import itertools
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable


class QueueFullError(Exception):
    """Raised when the queue stays at capacity past the enqueue timeout."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Task queue is full (capacity {capacity})")


@dataclass(frozen=True)
class QueuedTask:
    """A ready task instance waiting for a worker."""
    run_id: str
    task_id: str
    attempt_number: int
    priority: int = 0
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PriorityTaskQueue:
    """Bounded priority queue shared by all runs.

    Dequeue returns the highest priority item, earliest enqueued among ties.
    Every item is handed to exactly one consumer.
    """

    def __init__(self, capacity: int = 10000):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._heap: list[tuple[int, int, QueuedTask]] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)

    @property
    def capacity(self) -> int:
        return self._capacity

    def enqueue_task(self, item: QueuedTask, timeout: float | None = None) -> None:
        """Add item; blocks while the queue is full, up to `timeout` seconds."""
        if item is None:
            raise ValueError("item is required")
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be non-negative")

        with self._not_full:
            if not self._not_full.wait_for(
                lambda: len(self._heap) < self._capacity, timeout=timeout
            ):
                raise QueueFullError(self._capacity)
            heapq.heappush(self._heap, (-item.priority, next(self._sequence), item))
            self._not_empty.notify()

    def dequeue_task(
        self,
        timeout: float = 0,
        should_stop: Callable[[], bool] | None = None,
    ) -> QueuedTask | None:
        """Remove and return the next item. Blocks up to timeout seconds.

        A timeout of 0 returns immediately. If `should_stop` returns True the
        call gives up without taking an item.
        """
        if timeout < 0:
            raise ValueError("timeout must be non-negative")

        deadline = time.monotonic() + timeout
        with self._not_empty:
            while True:
                if should_stop is not None and should_stop():
                    return None
                if self._heap:
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(remaining)
            _, _, item = heapq.heappop(self._heap)
            self._not_full.notify()
            return item

    def peek_queue(self, count: int = 10) -> list[QueuedTask]:
        """View the next items in dequeue order without removing them."""
        if count < 0:
            raise ValueError("count must be non-negative")
        with self._lock:
            return [entry[2] for entry in heapq.nsmallest(count, self._heap)]

    def queue_length(self) -> int:
        """Get number of items waiting."""
        with self._lock:
            return len(self._heap)

    def remove_run(self, run_id: str) -> list[QueuedTask]:
        """Remove and return every waiting item belonging to a run."""
        if not run_id:
            raise ValueError("run_id is required")
        with self._lock:
            removed = [entry[2] for entry in self._heap if entry[2].run_id == run_id]
            if removed:
                self._heap = [entry for entry in self._heap if entry[2].run_id != run_id]
                heapq.heapify(self._heap)
                self._not_full.notify_all()
            return removed

    def wake_consumers(self) -> None:
        """Wake every blocked dequeue so it can re-check its stop condition."""
        with self._lock:
            self._not_empty.notify_all()

    def clear_queue(self) -> None:
        """Remove all items."""
        with self._lock:
            self._heap.clear()
            self._not_full.notify_all()

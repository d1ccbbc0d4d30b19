"""Resizable pool of worker threads draining the task queue."""

import logging
import threading
from typing import Callable

from services.task_queue import PriorityTaskQueue, QueuedTask

logger = logging.getLogger(__name__)


class Worker:
    """Pulls one task at a time from the queue and hands it to the handler."""

    def __init__(
        self,
        worker_id: int,
        task_queue: PriorityTaskQueue,
        handler: Callable[[QueuedTask], None],
        poll_interval: float = 0.5,
    ):
        if task_queue is None:
            raise ValueError("task_queue is required")
        if handler is None:
            raise ValueError("handler is required")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self.worker_id = worker_id
        self._queue = task_queue
        self._handler = handler
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._busy = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_busy(self) -> bool:
        return self._busy.is_set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name=f"worker-{self.worker_id}", daemon=True
        )
        self._thread.start()

    def request_stop(self) -> None:
        """Exit after the current task, if any."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def process_task(self) -> bool:
        """Process a single task from the queue.

        Returns True if a task was processed, False if none was available.
        """
        item = self._queue.dequeue_task(self._poll_interval, should_stop=self._stop.is_set)
        if item is None:
            return False

        self._busy.set()
        try:
            self._handler(item)
        except Exception:
            logger.exception(
                f"Worker {self.worker_id} failed handling {item.run_id}/{item.task_id}"
            )
        finally:
            self._busy.clear()
        return True

    def run(self) -> None:
        logger.debug(f"Worker {self.worker_id} started")
        while not self._stop.is_set():
            self.process_task()
        logger.debug(f"Worker {self.worker_id} stopped")


class WorkerPool:
    """Fixed-but-resizable set of workers.

    Growing starts new workers right away. Shrinking asks the excess workers
    to stop; each finishes its current task first and takes no new one.
    """

    def __init__(
        self,
        task_queue: PriorityTaskQueue,
        handler: Callable[[QueuedTask], None],
        size: int = 4,
        poll_interval: float = 0.5,
    ):
        if task_queue is None:
            raise ValueError("task_queue is required")
        if handler is None:
            raise ValueError("handler is required")
        if size < 1:
            raise ValueError("size must be at least 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self._queue = task_queue
        self._handler = handler
        self._size = size
        self._poll_interval = poll_interval
        self._workers: list[Worker] = []
        self._retiring: list[Worker] = []
        self._next_id = 1
        self._running = False
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        """Target number of workers."""
        with self._lock:
            return self._size

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._spawn(self._size)
        logger.info(f"Worker pool started with {self._size} workers")

    def stop(self, timeout: float | None = None) -> None:
        """Stop all workers, letting in-flight tasks finish."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            workers = self._workers + self._retiring
            self._workers = []
            self._retiring = []
        for worker in workers:
            worker.request_stop()
        self._queue.wake_consumers()
        for worker in workers:
            worker.join(timeout)
        logger.info("Worker pool stopped")

    def set_size(self, size: int) -> int:
        """Change the number of workers. Returns the new size."""
        if size < 1:
            raise ValueError("size must be at least 1")

        with self._lock:
            previous = self._size
            self._size = size
            if self._running:
                if size > len(self._workers):
                    self._spawn(size - len(self._workers))
                elif size < len(self._workers):
                    excess = self._workers[size:]
                    self._workers = self._workers[:size]
                    for worker in excess:
                        worker.request_stop()
                    self._retiring.extend(excess)
                self._retiring = [w for w in self._retiring if w.is_alive]

        if size < previous:
            self._queue.wake_consumers()
        logger.info(f"Worker pool resized from {previous} to {size}")
        return size

    def active_workers(self) -> int:
        """Workers currently taking tasks from the queue."""
        with self._lock:
            return sum(1 for w in self._workers if w.is_alive)

    def busy_workers(self) -> int:
        """Workers, including retiring ones, currently executing a task."""
        with self._lock:
            return sum(1 for w in self._workers + self._retiring if w.is_busy)

    def _spawn(self, count: int) -> None:
        for _ in range(count):
            worker = Worker(self._next_id, self._queue, self._handler, self._poll_interval)
            self._next_id += 1
            worker.start()
            self._workers.append(worker)

"""Fire-and-forget delivery of engine events to external notifiers."""

import logging
import queue
import threading
from typing import Protocol

import httpx

from models.events import EngineEvent, EventType

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def send(self, event: EngineEvent) -> None:
        ...


class LoggingSink:
    """Writes events to the log."""

    _LEVELS = {
        EventType.SLA_BREACH: logging.WARNING,
        EventType.RETRY_EXHAUSTED: logging.ERROR,
    }

    def send(self, event: EngineEvent) -> None:
        level = self._LEVELS.get(event.event_type, logging.INFO)
        target = f"{event.run_id}/{event.task_id}" if event.task_id else event.run_id
        logger.log(level, f"Event {event.event_type.value} for {target}: {event.details}")


class WebhookSink:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0):
        if not url or not url.strip():
            raise ValueError("url is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._url = url
        self._timeout = timeout

    def send(self, event: EngineEvent) -> None:
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(self._url, json=event.model_dump(mode="json"))
        except httpx.RequestError as e:
            logger.warning(f"Webhook delivery to {self._url} failed: {e}")
            return
        if response.status_code >= 400:
            logger.warning(
                f"Webhook {self._url} rejected {event.event_type.value}: HTTP {response.status_code}"
            )


class EventDispatcher:
    """Queues events and delivers them to sinks from a background thread."""

    def __init__(self, sinks: list[EventSink] | None = None):
        self._sinks: list[EventSink] = list(sinks or [])
        self._queue: queue.Queue[EngineEvent | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def add_sink(self, sink: EventSink) -> None:
        if sink is None:
            raise ValueError("sink is required")
        with self._lock:
            self._sinks.append(sink)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._deliver_loop, name="event-dispatcher", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)

    def emit(self, event: EngineEvent) -> None:
        """Queue an event; never blocks on delivery."""
        if event is None:
            raise ValueError("event is required")
        self._queue.put(event)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until every queued event has been handed to the sinks."""
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def wait():
            self._queue.join()
            done.set()

        threading.Thread(target=wait, daemon=True).start()
        done.wait(timeout)

    def _deliver_loop(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                with self._lock:
                    sinks = list(self._sinks)
                for sink in sinks:
                    try:
                        sink.send(event)
                    except Exception as e:
                        logger.error(f"Event sink {type(sink).__name__} failed: {e}")
            finally:
                self._queue.task_done()

# fieldflow/server/worker.py
import logging
import queue
import threading
import uuid
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_STOP = None


class DispatchWorker:
    """Delivers queued items one at a time, in arrival order, on its own thread."""

    def __init__(self, handler: Callable[[object], None], name: Optional[str] = None):
        self.handler = handler
        self.worker_id = name or f"dispatch:{uuid.uuid4()}"
        self._queue: "queue.Queue" = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(target=self.run, name=self.worker_id, daemon=True)
        self._thread.start()

    def submit(self, item: object) -> None:
        with self._idle:
            self._pending += 1
        self._queue.put(item)

    def run(self) -> None:
        logger.debug("[%s] Dispatch worker started", self.worker_id)
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            try:
                self.handler(item)
            except Exception:
                logger.exception("[%s] Unhandled exception in dispatch loop", self.worker_id)
            finally:
                with self._idle:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.notify_all()
        logger.debug("[%s] Dispatch worker has stopped", self.worker_id)

    def drain(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None


class RecurrenceWorker:
    """Runs a RecurrenceGenerator pass every ``interval_seconds`` until stopped."""

    def __init__(self, generator, interval_seconds: float = 3600.0):
        self.generator = generator
        self.interval_seconds = interval_seconds
        self.worker_id = f"recurrence:{uuid.uuid4()}"
        self._shutdown_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run(self) -> None:
        logger.info(
            "[%s] Starting recurrence worker, interval %ss",
            self.worker_id,
            self.interval_seconds,
        )
        while not self._shutdown_requested.is_set():
            try:
                report = self.generator.run()
                logger.info(
                    "[%s] Recurrence pass: %d instances created, %d jobs materialized",
                    self.worker_id,
                    report.created_instances,
                    report.materialized_jobs,
                )
            except Exception:
                logger.exception("[%s] Unhandled exception in recurrence loop", self.worker_id)
            self._shutdown_requested.wait(self.interval_seconds)
        logger.info("[%s] Recurrence worker has stopped.", self.worker_id)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown_requested.clear()
        self._thread = threading.Thread(target=self.run, name=self.worker_id, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._shutdown_requested.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

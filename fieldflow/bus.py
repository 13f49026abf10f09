# fieldflow/bus.py
"""
In-process publish/subscribe for lifecycle events.

Events are routed to one of ``partitions`` dispatch threads by job id, so all
events for one job are delivered in publish order while different jobs are
handled in parallel. With ``partitions=0`` delivery happens inline on the
publishing thread, which keeps tests and scripts deterministic.
"""
import logging
import threading
import time
import zlib
from typing import Callable, Dict, List, Optional

from fieldflow.common.events import ALL_EVENTS, Event
from fieldflow.server.worker import DispatchWorker

logger = logging.getLogger(__name__)

Subscriber = Callable[[Event], None]


class EventBus:
    def __init__(self, partitions: int = 4):
        if partitions < 0:
            raise ValueError("partitions must not be negative")
        self.partitions = partitions
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.RLock()
        self._workers: List[DispatchWorker] = []
        self._started = False

    def subscribe(self, event_type: str, handler: Subscriber) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` (or ``"*"``). Returns an unsubscribe callable."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def start(self) -> None:
        with self._lock:
            if self._started or self.partitions == 0:
                self._started = True
                return
            self._workers = [
                DispatchWorker(self._deliver, name=f"fieldflow-bus-{i}")
                for i in range(self.partitions)
            ]
            for worker in self._workers:
                worker.start()
            self._started = True

    @property
    def is_inline(self) -> bool:
        return self.partitions == 0

    def publish(self, event: Event) -> None:
        if self.is_inline:
            self._deliver(event)
            return
        with self._lock:
            if not self._workers:
                self._started = False
                self.start()
            workers = self._workers
        key = event.job_id or event.id
        workers[zlib.crc32(key.encode("utf-8")) % len(workers)].submit(event)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every published event has been delivered."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for worker in list(self._workers):
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            if not worker.drain(remaining):
                return False
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            workers, self._workers = self._workers, []
            self._started = False
        for worker in workers:
            worker.stop(timeout)

    def _deliver(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(event.type, []))
            handlers += self._subscribers.get(ALL_EVENTS, [])
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.error(
                    "Subscriber %r failed handling %s event %s",
                    handler,
                    event.type,
                    event.id,
                    exc_info=True,
                )

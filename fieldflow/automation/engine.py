# fieldflow/automation/engine.py
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from fieldflow.automation.conditions import evaluate_conditions
from fieldflow.common.automation import AutomationRun
from fieldflow.common.events import ALL_EVENTS, Event
from fieldflow.filters.base import AutomationFilter
from fieldflow.filters.builtin import RateLimitFilter
from fieldflow.server.processor import RuleProcessor
from fieldflow.storage.base import JobStorage

logger = logging.getLogger(__name__)


class AutomationEngine:
    """
    Reacts to bus events by firing the matching automation rules.

    Rules are read from storage on every event so administrative edits take
    effect immediately. Actions run on a thread pool so each one can be cut
    off after ``action_timeout`` seconds. A timed out action keeps its pool
    thread until it returns.
    """

    def __init__(
        self,
        storage: JobStorage,
        registry,
        filters: Optional[List[AutomationFilter]] = None,
        action_timeout: Optional[float] = 30.0,
        max_workers: int = 8,
    ):
        self.storage = storage
        self.registry = registry
        self.filters = filters if filters is not None else [RateLimitFilter()]
        self.action_timeout = action_timeout
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, bus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = bus.subscribe(ALL_EVENTS, self.on_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        """The action pool, created on first use and again after a shutdown."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="fieldflow-action"
                )
            return self._executor

    def on_event(self, event: Event) -> List[AutomationRun]:
        runs: List[AutomationRun] = []
        for rule in self.storage.list_rules(trigger=event.type, enabled_only=True):
            try:
                if not evaluate_conditions(rule.conditions, event.payload):
                    continue
                logger.debug("Rule %s matched event %s", rule.id, event.id)
                processor = RuleProcessor(
                    rule,
                    event,
                    self.storage,
                    self.registry,
                    self.filters,
                    action_timeout=self.action_timeout,
                    executor=self.executor,
                )
                runs.append(processor.process())
            except Exception:
                logger.error(
                    "Rule %s could not be processed for event %s",
                    rule.id,
                    event.id,
                    exc_info=True,
                )
        return runs

    def shutdown(self, wait: bool = True) -> None:
        """Detach from the bus and stop the action pool. ``attach`` reverses this."""
        self.detach()
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)

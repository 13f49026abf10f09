# fieldflow/client.py
import logging
from typing import Any, Dict, List, Optional, Union

from .automation.actions import ActionRegistry, build_default_registry
from .automation.defaults import install_canonical_rules
from .automation.engine import AutomationEngine
from .bus import EventBus
from .collaborators import (
    ClientDirectory,
    InMemoryClientDirectory,
    InMemoryInvoiceService,
    InMemoryNotifier,
    InvoiceService,
    Notifier,
)
from .common.automation import AutomationRule, AutomationRun
from .common.events import Event
from .common.exceptions import RuleNotFound, SeriesNotFound
from .common.job import Actor, Job, StateTransition
from .common.recurrence import InstanceStatus, RecurringInstance, RecurringSeries
from .common.states import JobState, coerce_state
from .config import Settings
from .machine import JobStateMachine, TransitionOption, TransitionResult
from .recurrence.generator import GenerationReport, RecurrenceGenerator
from .server.locks import LocalLockManager, LockManager
from .server.worker import RecurrenceWorker
from .storage.base import JobStorage
from .storage.memory_storage import MemoryStorage
from .transitions import TransitionTable, build_default_table

logger = logging.getLogger(__name__)


class FieldFlowClient:
    """
    Entry point for applications: wires storage, transition table, locks, bus,
    state machine, automation engine and recurrence generator together.

    Every collaborator can be injected; omitted ones default to the
    in-process implementations.
    """

    def __init__(
        self,
        storage: Optional[JobStorage] = None,
        table: Optional[TransitionTable] = None,
        bus: Optional[EventBus] = None,
        lock_manager: Optional[LockManager] = None,
        registry: Optional[ActionRegistry] = None,
        invoices: Optional[InvoiceService] = None,
        clients: Optional[ClientDirectory] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        install_default_rules: bool = True,
    ):
        self.settings = settings or Settings()
        self.storage = storage or MemoryStorage()
        self.table = table or build_default_table(data_guards=self.settings.data_guards)
        self.bus = bus or EventBus(partitions=self.settings.bus_partitions)
        self.lock_manager = lock_manager or LocalLockManager()
        self.invoices = invoices or InMemoryInvoiceService()
        self.clients = clients or InMemoryClientDirectory()
        self.notifier = notifier or InMemoryNotifier()
        self.machine = JobStateMachine(
            self.storage,
            self.table,
            self.bus,
            self.lock_manager,
            lock_timeout=self.settings.lock_timeout,
        )
        self.registry = registry or build_default_registry(
            self.invoices, self.clients, self.notifier, self.storage, machine=self.machine
        )
        self.automation = AutomationEngine(
            self.storage,
            self.registry,
            action_timeout=self.settings.action_timeout,
        )
        self.automation.attach(self.bus)
        self.recurrence = RecurrenceGenerator(
            self.storage,
            self.bus,
            lookahead_days=self.settings.lookahead_days,
            materialize_days=self.settings.materialize_days,
            max_occurrences=self.settings.max_occurrences,
        )
        self._recurrence_worker: Optional[RecurrenceWorker] = None

        if install_default_rules:
            install_canonical_rules(self.storage, self.settings.downgrade_scope)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "FieldFlowClient":
        settings = settings or Settings.from_env()
        table = None
        if settings.table_path:
            table = TransitionTable.from_json_file(settings.table_path)
            logger.info("Loaded transition table %s from %s", table.version, settings.table_path)
        kwargs = {
            "storage": settings.create_storage(),
            "lock_manager": settings.create_lock_manager(),
            "table": table,
            "settings": settings,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # --- Jobs and transitions ---

    def create_job(self, job: Optional[Job] = None, **fields) -> Job:
        return self.machine.create_job(job, **fields)

    def get_job(self, job_id: str) -> Job:
        return self.machine.get_job(job_id)

    def list_jobs(
        self,
        client_id: Optional[str] = None,
        property_id: Optional[str] = None,
        state: Optional[Union[str, JobState]] = None,
    ) -> List[Job]:
        return self.storage.list_jobs(
            client_id=client_id,
            property_id=property_id,
            state=coerce_state(state) if state is not None else None,
        )

    def request_transition(
        self,
        job_id: str,
        to_state: Union[str, JobState],
        actor: Actor,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        return self.machine.request_transition(job_id, to_state, actor, reason)

    def get_allowed_transitions(self, job_id: str, actor: Optional[Actor] = None) -> List[JobState]:
        return self.machine.get_allowed_transitions(job_id, actor)

    def get_transition_options(
        self, job_id: str, actor: Optional[Actor] = None
    ) -> List[TransitionOption]:
        return self.machine.get_transition_options(job_id, actor)

    def get_transition_history(self, job_id: str) -> List[StateTransition]:
        return self.machine.get_transition_history(job_id)

    # --- Automation rule administration ---

    def save_rule(self, rule: Union[AutomationRule, Dict[str, Any]]) -> AutomationRule:
        if isinstance(rule, dict):
            rule = AutomationRule.from_dict(rule)
        return self.storage.save_rule(rule)

    def get_rule(self, rule_id: str) -> AutomationRule:
        rule = self.storage.get_rule(rule_id)
        if rule is None:
            raise RuleNotFound(rule_id)
        return rule

    def list_rules(self, trigger: Optional[str] = None) -> List[AutomationRule]:
        return self.storage.list_rules(trigger=trigger)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> AutomationRule:
        rule = self.get_rule(rule_id)
        rule.enabled = enabled
        return self.storage.save_rule(rule)

    def delete_rule(self, rule_id: str) -> None:
        if not self.storage.delete_rule(rule_id):
            raise RuleNotFound(rule_id)

    def get_automation_runs(
        self,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AutomationRun]:
        return self.storage.find_automation_runs(
            rule_id=rule_id, event_id=event_id, job_id=job_id, limit=limit
        )

    # --- Recurring series ---

    def add_series(self, series: RecurringSeries) -> RecurringSeries:
        return self.storage.save_series(series)

    def get_series(self, series_id: str) -> RecurringSeries:
        series = self.storage.get_series(series_id)
        if series is None:
            raise SeriesNotFound(series_id)
        return series

    def deactivate_series(self, series_id: str) -> RecurringSeries:
        series = self.get_series(series_id)
        series.active = False
        return self.storage.save_series(series)

    def list_instances(
        self, series_id: str, status: Optional[InstanceStatus] = None
    ) -> List[RecurringInstance]:
        self.get_series(series_id)
        return self.storage.list_instances(series_id, status=status)

    def update_instance_status(
        self, instance_id: str, status: Union[str, InstanceStatus]
    ) -> RecurringInstance:
        return self.recurrence.update_instance_status(instance_id, InstanceStatus(status))

    def run_recurrence(self, today=None) -> GenerationReport:
        return self.recurrence.run(today)

    # --- Events and lifecycle ---

    def publish(self, event_type: str, payload: Optional[Dict[str, Any]] = None, job_id: Optional[str] = None) -> Event:
        """Publish an event from a collaborator, e.g. ``quote_accepted``."""
        event = Event(type=event_type, payload=dict(payload or {}), job_id=job_id)
        self.bus.publish(event)
        return event

    def wait_for_automation(self, timeout: Optional[float] = None) -> bool:
        return self.bus.drain(timeout)

    def start(self, run_recurrence_worker: bool = False) -> None:
        self.automation.attach(self.bus)
        self.bus.start()
        if run_recurrence_worker and self._recurrence_worker is None:
            self._recurrence_worker = RecurrenceWorker(
                self.recurrence, interval_seconds=self.settings.recurrence_interval
            )
            self._recurrence_worker.start()

    def close(self, timeout: Optional[float] = 10.0) -> None:
        if self._recurrence_worker is not None:
            self._recurrence_worker.stop(timeout)
            self._recurrence_worker = None
        self.bus.stop(timeout)
        self.automation.shutdown(wait=False)

    def __enter__(self) -> "FieldFlowClient":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

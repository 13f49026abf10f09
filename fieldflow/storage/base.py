# fieldflow/storage/base.py
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Iterable, List, Optional

from fieldflow.common.automation import AutomationRule, AutomationRun, RunStatus
from fieldflow.common.job import Job, StateTransition
from fieldflow.common.recurrence import InstanceStatus, RecurringInstance, RecurringSeries
from fieldflow.common.states import JobState


class JobStorage(ABC):
    # --- Jobs and their audit trail ---

    @abstractmethod
    def create_job(self, job: Job) -> Job: ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def list_jobs(
        self,
        client_id: Optional[str] = None,
        property_id: Optional[str] = None,
        state: Optional[JobState] = None,
    ) -> List[Job]: ...

    @abstractmethod
    def apply_transition(
        self, job_id: str, transition: StateTransition, expected_state: JobState
    ) -> Optional[Job]:
        """Write the new state and append the audit row as one atomic unit.

        Returns the updated job, or None without writing anything when the job
        is missing or no longer in ``expected_state``.
        """

    @abstractmethod
    def get_transitions(self, job_id: str) -> List[StateTransition]: ...

    # --- Automation rules (administrative CRUD) ---

    @abstractmethod
    def save_rule(self, rule: AutomationRule) -> AutomationRule: ...

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[AutomationRule]: ...

    @abstractmethod
    def list_rules(
        self, trigger: Optional[str] = None, enabled_only: bool = False
    ) -> List[AutomationRule]: ...

    @abstractmethod
    def delete_rule(self, rule_id: str) -> bool: ...

    # --- Automation run log ---

    @abstractmethod
    def append_automation_run(self, run: AutomationRun) -> None: ...

    @abstractmethod
    def find_automation_runs(
        self,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AutomationRun]: ...

    @abstractmethod
    def count_automation_runs(
        self,
        rule_id: str,
        job_id: Optional[str],
        since: datetime,
        exclude_statuses: Iterable[RunStatus] = (),
    ) -> int: ...

    # --- Recurring series and instances ---

    @abstractmethod
    def save_series(self, series: RecurringSeries) -> RecurringSeries: ...

    @abstractmethod
    def get_series(self, series_id: str) -> Optional[RecurringSeries]: ...

    @abstractmethod
    def list_series(self, active_only: bool = False) -> List[RecurringSeries]: ...

    @abstractmethod
    def add_instance(self, instance: RecurringInstance) -> bool:
        """Insert unless (series_id, occurrence_date) already exists."""

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[RecurringInstance]: ...

    @abstractmethod
    def list_instances(
        self,
        series_id: str,
        status: Optional[InstanceStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[RecurringInstance]: ...

    @abstractmethod
    def materialize_instance(
        self, instance_id: str, job: Job
    ) -> Optional[RecurringInstance]:
        """Create ``job`` and mark the pending instance materialized, atomically.

        Returns None, creating nothing, if the instance is not pending anymore.
        """

    @abstractmethod
    def set_instance_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        expected_status: Optional[InstanceStatus] = None,
    ) -> bool: ...

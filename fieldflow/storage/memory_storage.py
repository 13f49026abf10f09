# fieldflow/storage/memory_storage.py
import copy
from dataclasses import replace
from datetime import UTC, date, datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional, Set, Tuple

from fieldflow.common.automation import AutomationRule, AutomationRun, RunStatus
from fieldflow.common.job import Job, StateTransition
from fieldflow.common.recurrence import InstanceStatus, RecurringInstance, RecurringSeries
from fieldflow.common.states import JobState
from fieldflow.storage.base import JobStorage


class MemoryStorage(JobStorage):
    """Process-local storage. Everything handed out is a copy."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._transitions: Dict[str, List[StateTransition]] = {}
        self._rules: Dict[str, AutomationRule] = {}
        self._runs: List[AutomationRun] = []
        self._series: Dict[str, RecurringSeries] = {}
        self._instances: Dict[str, RecurringInstance] = {}
        self._occurrences: Set[Tuple[str, date]] = set()
        self._lock = RLock()

    def create_job(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = copy.deepcopy(job)
            self._transitions[job.id] = []
        return copy.deepcopy(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        client_id: Optional[str] = None,
        property_id: Optional[str] = None,
        state: Optional[JobState] = None,
    ) -> List[Job]:
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if (client_id is None or job.client_id == client_id)
                and (property_id is None or job.property_id == property_id)
                and (state is None or job.state == state)
            ]
            return [copy.deepcopy(job) for job in sorted(jobs, key=lambda j: j.created_at)]

    def apply_transition(
        self, job_id: str, transition: StateTransition, expected_state: JobState
    ) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != expected_state:
                return None

            updated = replace(
                job,
                state=transition.to_state,
                version=job.version + 1,
                updated_at=transition.timestamp,
            )
            self._transitions.setdefault(job_id, []).append(transition)
            self._jobs[job_id] = updated
            return copy.deepcopy(updated)

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        with self._lock:
            return list(self._transitions.get(job_id, []))

    def save_rule(self, rule: AutomationRule) -> AutomationRule:
        with self._lock:
            if rule.id in self._rules:
                rule = replace(rule, updated_at=datetime.now(UTC))
            self._rules[rule.id] = copy.deepcopy(rule)
            return copy.deepcopy(rule)

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return copy.deepcopy(rule) if rule else None

    def list_rules(
        self, trigger: Optional[str] = None, enabled_only: bool = False
    ) -> List[AutomationRule]:
        with self._lock:
            rules = [
                rule
                for rule in self._rules.values()
                if (trigger is None or rule.trigger == trigger)
                and (not enabled_only or rule.enabled)
            ]
            rules.sort(key=lambda r: (r.created_at, r.id))
            return copy.deepcopy(rules)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def append_automation_run(self, run: AutomationRun) -> None:
        with self._lock:
            self._runs.append(copy.deepcopy(run))

    def find_automation_runs(
        self,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AutomationRun]:
        with self._lock:
            runs = [
                run
                for run in self._runs
                if (rule_id is None or run.rule_id == rule_id)
                and (event_id is None or run.event_id == event_id)
                and (job_id is None or run.job_id == job_id)
            ]
            if limit is not None:
                runs = runs[-limit:]
            return copy.deepcopy(runs)

    def count_automation_runs(
        self,
        rule_id: str,
        job_id: Optional[str],
        since: datetime,
        exclude_statuses: Iterable[RunStatus] = (),
    ) -> int:
        excluded = set(exclude_statuses)
        with self._lock:
            return sum(
                1
                for run in self._runs
                if run.rule_id == rule_id
                and run.job_id == job_id
                and run.started_at >= since
                and run.status not in excluded
            )

    def save_series(self, series: RecurringSeries) -> RecurringSeries:
        with self._lock:
            self._series[series.id] = copy.deepcopy(series)
        return copy.deepcopy(series)

    def get_series(self, series_id: str) -> Optional[RecurringSeries]:
        with self._lock:
            series = self._series.get(series_id)
            return copy.deepcopy(series) if series else None

    def list_series(self, active_only: bool = False) -> List[RecurringSeries]:
        with self._lock:
            series = [s for s in self._series.values() if s.active or not active_only]
            series.sort(key=lambda s: (s.created_at, s.id))
            return copy.deepcopy(series)

    def add_instance(self, instance: RecurringInstance) -> bool:
        key = (instance.series_id, instance.occurrence_date)
        with self._lock:
            if key in self._occurrences:
                return False
            self._occurrences.add(key)
            self._instances[instance.id] = copy.deepcopy(instance)
            return True

    def get_instance(self, instance_id: str) -> Optional[RecurringInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return copy.deepcopy(instance) if instance else None

    def list_instances(
        self,
        series_id: str,
        status: Optional[InstanceStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[RecurringInstance]:
        with self._lock:
            instances = [
                i
                for i in self._instances.values()
                if i.series_id == series_id
                and (status is None or i.status == status)
                and (start is None or i.occurrence_date >= start)
                and (end is None or i.occurrence_date <= end)
            ]
            instances.sort(key=lambda i: i.occurrence_date)
            return copy.deepcopy(instances)

    def materialize_instance(
        self, instance_id: str, job: Job
    ) -> Optional[RecurringInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.status != InstanceStatus.PENDING:
                return None
            self.create_job(job)
            updated = replace(instance, status=InstanceStatus.MATERIALIZED, job_id=job.id)
            self._instances[instance_id] = updated
            return copy.deepcopy(updated)

    def set_instance_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        expected_status: Optional[InstanceStatus] = None,
    ) -> bool:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                return False
            if expected_status is not None and instance.status != expected_status:
                return False
            self._instances[instance_id] = replace(instance, status=InstanceStatus(status))
            return True

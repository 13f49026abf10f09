# fieldflow/recurrence/generator.py
import copy
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Callable, List, Optional

from fieldflow.bus import EventBus
from fieldflow.common import events
from fieldflow.common.exceptions import (
    ConfigurationError,
    InstanceMaterialized,
    InstanceNotFound,
)
from fieldflow.common.job import Job
from fieldflow.common.recurrence import InstanceStatus, RecurringInstance, RecurringSeries
from fieldflow.common.states import INITIAL_STATE
from fieldflow.recurrence.patterns import occurrences
from fieldflow.storage.base import JobStorage

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    run_date: date
    created_instances: int = 0
    materialized_jobs: int = 0
    skipped_series: int = 0
    job_ids: List[str] = field(default_factory=list)


class RecurrenceGenerator:
    """
    Expands active series into instances ``lookahead_days`` ahead and turns
    instances due within ``materialize_days`` into Draft jobs.

    Safe to run any number of times per day: instances are unique per
    (series, date) and an instance is materialized at most once.
    """

    def __init__(
        self,
        storage: JobStorage,
        bus: Optional[EventBus] = None,
        lookahead_days: int = 60,
        materialize_days: int = 7,
        max_occurrences: int = 180,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if materialize_days > lookahead_days:
            raise ConfigurationError("materialize_days must not exceed lookahead_days")
        if min(lookahead_days, materialize_days) < 0 or max_occurrences < 1:
            raise ConfigurationError("Recurrence horizons must be positive")
        self.storage = storage
        self.bus = bus
        self.lookahead_days = lookahead_days
        self.materialize_days = materialize_days
        self.max_occurrences = max_occurrences
        self.clock = clock or (lambda: datetime.now(UTC))

    def run(self, today: Optional[date] = None) -> GenerationReport:
        today = today or self.clock().date()
        report = GenerationReport(run_date=today)
        for series in self.storage.list_series(active_only=True):
            try:
                report.created_instances += self.expand_series(series, today)
                job_ids = self.materialize_due(series, today)
            except Exception:
                logger.error("Recurring series %s could not be processed", series.id, exc_info=True)
                report.skipped_series += 1
                continue
            report.materialized_jobs += len(job_ids)
            report.job_ids.extend(job_ids)

        logger.info(
            "Recurrence run for %s: %d new instances, %d jobs, %d series skipped",
            today.isoformat(),
            report.created_instances,
            report.materialized_jobs,
            report.skipped_series,
        )
        return report

    def expand_series(self, series: RecurringSeries, today: date) -> int:
        horizon = today + timedelta(days=self.lookahead_days)
        created = 0
        for occurrence_date in occurrences(series, today, horizon, limit=self.max_occurrences):
            if self.storage.add_instance(RecurringInstance(series.id, occurrence_date)):
                created += 1
        if created:
            logger.debug("Series %s: %d new instances up to %s", series.id, created, horizon)
        return created

    def materialize_due(self, series: RecurringSeries, today: date) -> List[str]:
        job_ids: List[str] = []
        due = self.storage.list_instances(
            series.id,
            status=InstanceStatus.PENDING,
            start=today,
            end=today + timedelta(days=self.materialize_days),
        )
        for instance in due:
            job = self.build_job(series, instance)
            if self.storage.materialize_instance(instance.id, job) is None:
                # Another generator got there first, or the instance was skipped meanwhile.
                continue
            job_ids.append(job.id)
            logger.info(
                "Materialized %s occurrence of series %s as job %s",
                instance.occurrence_date.isoformat(),
                series.id,
                job.id,
            )
            if self.bus is not None:
                self.bus.publish(events.job_scheduled(job, instance.occurrence_date, series.id))
        return job_ids

    def build_job(self, series: RecurringSeries, instance: RecurringInstance) -> Job:
        start = datetime.combine(instance.occurrence_date, series.start_time, tzinfo=UTC)
        end = start + timedelta(hours=series.duration_hours) if series.duration_hours else None
        payload = copy.deepcopy(series.payload)
        payload["recurring_instance_id"] = instance.id
        return Job(
            state=INITIAL_STATE,
            client_id=series.client_id,
            property_id=series.property_id,
            series_id=series.id,
            scheduled_start=start,
            scheduled_end=end,
            assigned_crew=list(series.assigned_crew),
            payload=payload,
        )

    def update_instance_status(self, instance_id: str, status: InstanceStatus) -> RecurringInstance:
        """Skip, cancel or restore a pending instance. Materialized instances are final."""
        status = InstanceStatus(status)
        if status == InstanceStatus.MATERIALIZED:
            raise ValueError("Instances are only materialized by the generator")

        while True:
            instance = self.storage.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            if instance.status == InstanceStatus.MATERIALIZED:
                raise InstanceMaterialized(instance_id)
            if self.storage.set_instance_status(
                instance_id, status, expected_status=instance.status
            ):
                instance.status = status
                return instance

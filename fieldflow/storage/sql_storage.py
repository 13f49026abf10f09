# fieldflow/storage/sql_storage.py
from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time
from typing import Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Engine,
    Float,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from fieldflow.common.automation import AutomationRule, AutomationRun, RunStatus
from fieldflow.common.job import Job, StateTransition
from fieldflow.common.recurrence import (
    InstanceStatus,
    RecurrencePattern,
    RecurringInstance,
    RecurringSeries,
)
from fieldflow.common.states import JobState
from fieldflow.serialization.base import BaseSerializer
from fieldflow.serialization.json_serializer import JsonSerializer
from fieldflow.storage.base import JobStorage

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class JobModel(Base):
    __tablename__ = "fieldflow_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(50), index=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    property_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    quote_id: Mapped[Optional[str]] = mapped_column(String(64))
    series_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    scheduled_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scheduled_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    assigned_crew: Mapped[str] = mapped_column(Text, default="[]")
    payload: Mapped[str] = mapped_column(Text, default="{}")
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class JobTransitionModel(Base):
    __tablename__ = "fieldflow_job_transitions"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True)
    job_id: Mapped[str] = mapped_column(String(64), index=True)
    from_state: Mapped[str] = mapped_column(String(50))
    to_state: Mapped[str] = mapped_column(String(50))
    actor_id: Mapped[str] = mapped_column(String(128))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    system_triggered: Mapped[bool] = mapped_column(Boolean, default=False)
    table_version: Mapped[Optional[str]] = mapped_column(String(50))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AutomationRuleModel(Base):
    __tablename__ = "fieldflow_automation_rules"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    trigger: Mapped[str] = mapped_column(String(100), index=True)
    conditions: Mapped[str] = mapped_column(Text, default="[]")
    actions: Mapped[str] = mapped_column(Text, default="[]")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    max_firings: Mapped[int] = mapped_column(Integer, default=0)
    window_seconds: Mapped[int] = mapped_column(Integer, default=3600)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class AutomationRunModel(Base):
    __tablename__ = "fieldflow_automation_runs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True)
    rule_id: Mapped[str] = mapped_column(String(128), index=True)
    event_id: Mapped[str] = mapped_column(String(64), index=True)
    event_type: Mapped[str] = mapped_column(String(100))
    job_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(30), index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    action_results: Mapped[str] = mapped_column(Text, default="[]")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class RecurringSeriesModel(Base):
    __tablename__ = "fieldflow_recurring_series"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    client_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    property_id: Mapped[Optional[str]] = mapped_column(String(64))
    pattern: Mapped[str] = mapped_column(String(20))
    interval: Mapped[int] = mapped_column("repeat_interval", Integer, default=1)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    cron: Mapped[Optional[str]] = mapped_column(String(120))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    duration_hours: Mapped[Optional[float]] = mapped_column(Float)
    assigned_crew: Mapped[str] = mapped_column(Text, default="[]")
    payload: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class RecurringInstanceModel(Base):
    __tablename__ = "fieldflow_recurring_instances"
    __table_args__ = (
        UniqueConstraint("series_id", "occurrence_date", name="uq_fieldflow_occurrence"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    series_id: Mapped[str] = mapped_column(String(64), index=True)
    occurrence_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands DateTime(timezone=True) columns back naive.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SqlStorage(JobStorage):
    def __init__(
        self,
        connection_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
        serializer: Optional[BaseSerializer] = None,
    ) -> None:
        if engine is None and connection_url is None:
            raise ValueError("connection_url or engine is required")
        self.engine = engine or create_engine(connection_url)
        self.serializer = serializer or JsonSerializer()
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    # --- model conversion ---

    def _job_to_model(self, job: Job) -> JobModel:
        return JobModel(
            id=job.id,
            state=job.state.value,
            client_id=job.client_id,
            property_id=job.property_id,
            quote_id=job.quote_id,
            series_id=job.series_id,
            scheduled_start=job.scheduled_start,
            scheduled_end=job.scheduled_end,
            assigned_crew=self.serializer.serialize_list(job.assigned_crew),
            payload=self.serializer.serialize_payload(job.payload),
            version=job.version,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def _job_from_model(self, model: JobModel) -> Job:
        return Job(
            id=model.id,
            state=JobState(model.state),
            client_id=model.client_id,
            property_id=model.property_id,
            quote_id=model.quote_id,
            series_id=model.series_id,
            scheduled_start=_as_utc(model.scheduled_start),
            scheduled_end=_as_utc(model.scheduled_end),
            assigned_crew=self.serializer.deserialize_list(model.assigned_crew),
            payload=self.serializer.deserialize_payload(model.payload),
            version=model.version,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    def _transition_from_model(self, model: JobTransitionModel) -> StateTransition:
        return StateTransition(
            id=model.id,
            job_id=model.job_id,
            from_state=JobState(model.from_state),
            to_state=JobState(model.to_state),
            actor_id=model.actor_id,
            actor_role=model.actor_role,
            reason=model.reason,
            system_triggered=model.system_triggered,
            table_version=model.table_version,
            timestamp=_as_utc(model.timestamp),
        )

    def _rule_from_model(self, model: AutomationRuleModel) -> AutomationRule:
        return AutomationRule(
            id=model.id,
            name=model.name,
            trigger=model.trigger,
            conditions=self.serializer.deserialize_conditions(model.conditions),
            actions=self.serializer.deserialize_actions(model.actions),
            enabled=model.enabled,
            max_firings=model.max_firings,
            window_seconds=model.window_seconds,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    def _run_from_model(self, model: AutomationRunModel) -> AutomationRun:
        return AutomationRun(
            id=model.id,
            rule_id=model.rule_id,
            event_id=model.event_id,
            event_type=model.event_type,
            job_id=model.job_id,
            status=RunStatus(model.status),
            reason=model.reason,
            action_results=self.serializer.deserialize_action_results(model.action_results),
            started_at=_as_utc(model.started_at),
            finished_at=_as_utc(model.finished_at),
        )

    def _series_from_model(self, model: RecurringSeriesModel) -> RecurringSeries:
        return RecurringSeries(
            id=model.id,
            name=model.name,
            client_id=model.client_id,
            property_id=model.property_id,
            pattern=RecurrencePattern(model.pattern),
            interval=model.interval,
            day_of_week=model.day_of_week,
            day_of_month=model.day_of_month,
            cron=model.cron,
            start_date=model.start_date,
            end_date=model.end_date,
            active=model.active,
            start_time=model.start_time,
            duration_hours=model.duration_hours,
            assigned_crew=self.serializer.deserialize_list(model.assigned_crew),
            payload=self.serializer.deserialize_payload(model.payload),
            created_at=_as_utc(model.created_at),
        )

    def _instance_from_model(self, model: RecurringInstanceModel) -> RecurringInstance:
        return RecurringInstance(
            id=model.id,
            series_id=model.series_id,
            occurrence_date=model.occurrence_date,
            status=InstanceStatus(model.status),
            job_id=model.job_id,
            created_at=_as_utc(model.created_at),
        )

    # --- jobs ---

    def create_job(self, job: Job) -> Job:
        with self._session_factory.begin() as session:
            session.add(self._job_to_model(job))
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._session_factory() as session:
            model = session.get(JobModel, job_id)
            return self._job_from_model(model) if model else None

    def list_jobs(
        self,
        client_id: Optional[str] = None,
        property_id: Optional[str] = None,
        state: Optional[JobState] = None,
    ) -> List[Job]:
        query = select(JobModel).order_by(JobModel.created_at)
        if client_id is not None:
            query = query.where(JobModel.client_id == client_id)
        if property_id is not None:
            query = query.where(JobModel.property_id == property_id)
        if state is not None:
            query = query.where(JobModel.state == JobState(state).value)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._job_from_model(row) for row in rows]

    def apply_transition(
        self, job_id: str, transition: StateTransition, expected_state: JobState
    ) -> Optional[Job]:
        with self._session_factory.begin() as session:
            updated = session.execute(
                update(JobModel)
                .where(
                    JobModel.id == job_id,
                    JobModel.state == JobState(expected_state).value,
                )
                .values(
                    state=transition.to_state.value,
                    version=JobModel.version + 1,
                    updated_at=transition.timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                logger.debug(
                    "Compare-and-set lost for job %s (expected '%s')",
                    job_id,
                    JobState(expected_state).value,
                )
                return None

            session.add(
                JobTransitionModel(
                    id=transition.id,
                    job_id=transition.job_id,
                    from_state=transition.from_state.value,
                    to_state=transition.to_state.value,
                    actor_id=transition.actor_id,
                    actor_role=transition.actor_role,
                    reason=transition.reason,
                    system_triggered=transition.system_triggered,
                    table_version=transition.table_version,
                    timestamp=transition.timestamp,
                )
            )
            model = session.get(JobModel, job_id)
            return self._job_from_model(model)

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(JobTransitionModel)
                    .where(JobTransitionModel.job_id == job_id)
                    .order_by(JobTransitionModel.seq)
                )
                .scalars()
                .all()
            )
            return [self._transition_from_model(row) for row in rows]

    # --- automation rules ---

    def save_rule(self, rule: AutomationRule) -> AutomationRule:
        with self._session_factory.begin() as session:
            entry = session.get(AutomationRuleModel, rule.id)
            conditions = self.serializer.serialize_conditions(rule.conditions)
            actions = self.serializer.serialize_actions(rule.actions)
            if entry:
                rule.updated_at = datetime.now(UTC)
                entry.name = rule.name
                entry.trigger = rule.trigger
                entry.conditions = conditions
                entry.actions = actions
                entry.enabled = rule.enabled
                entry.max_firings = rule.max_firings
                entry.window_seconds = rule.window_seconds
                entry.updated_at = rule.updated_at
            else:
                session.add(
                    AutomationRuleModel(
                        id=rule.id,
                        name=rule.name,
                        trigger=rule.trigger,
                        conditions=conditions,
                        actions=actions,
                        enabled=rule.enabled,
                        max_firings=rule.max_firings,
                        window_seconds=rule.window_seconds,
                        created_at=rule.created_at,
                        updated_at=rule.updated_at,
                    )
                )
        return rule

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        with self._session_factory() as session:
            model = session.get(AutomationRuleModel, rule_id)
            return self._rule_from_model(model) if model else None

    def list_rules(
        self, trigger: Optional[str] = None, enabled_only: bool = False
    ) -> List[AutomationRule]:
        query = select(AutomationRuleModel).order_by(
            AutomationRuleModel.created_at, AutomationRuleModel.id
        )
        if trigger is not None:
            query = query.where(AutomationRuleModel.trigger == trigger)
        if enabled_only:
            query = query.where(AutomationRuleModel.enabled.is_(True))
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._rule_from_model(row) for row in rows]

    def delete_rule(self, rule_id: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(AutomationRuleModel).where(AutomationRuleModel.id == rule_id)
            )
            return result.rowcount > 0

    # --- automation runs ---

    def append_automation_run(self, run: AutomationRun) -> None:
        with self._session_factory.begin() as session:
            session.add(
                AutomationRunModel(
                    id=run.id,
                    rule_id=run.rule_id,
                    event_id=run.event_id,
                    event_type=run.event_type,
                    job_id=run.job_id,
                    status=run.status.value,
                    reason=run.reason,
                    action_results=self.serializer.serialize_action_results(
                        run.action_results
                    ),
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                )
            )

    def find_automation_runs(
        self,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AutomationRun]:
        query = select(AutomationRunModel).order_by(AutomationRunModel.seq.desc())
        if rule_id is not None:
            query = query.where(AutomationRunModel.rule_id == rule_id)
        if event_id is not None:
            query = query.where(AutomationRunModel.event_id == event_id)
        if job_id is not None:
            query = query.where(AutomationRunModel.job_id == job_id)
        if limit is not None:
            query = query.limit(limit)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._run_from_model(row) for row in reversed(rows)]

    def count_automation_runs(
        self,
        rule_id: str,
        job_id: Optional[str],
        since: datetime,
        exclude_statuses: Iterable[RunStatus] = (),
    ) -> int:
        query = select(func.count(AutomationRunModel.seq)).where(
            AutomationRunModel.rule_id == rule_id,
            AutomationRunModel.started_at >= since,
        )
        if job_id is None:
            query = query.where(AutomationRunModel.job_id.is_(None))
        else:
            query = query.where(AutomationRunModel.job_id == job_id)
        excluded = [RunStatus(s).value for s in exclude_statuses]
        if excluded:
            query = query.where(AutomationRunModel.status.not_in(excluded))
        with self._session_factory() as session:
            return int(session.execute(query).scalar_one() or 0)

    # --- recurring series ---

    def save_series(self, series: RecurringSeries) -> RecurringSeries:
        with self._session_factory.begin() as session:
            entry = session.get(RecurringSeriesModel, series.id)
            if entry is None:
                entry = RecurringSeriesModel(id=series.id, created_at=series.created_at)
                session.add(entry)
            entry.name = series.name
            entry.client_id = series.client_id
            entry.property_id = series.property_id
            entry.pattern = series.pattern.value
            entry.interval = series.interval
            entry.day_of_week = series.day_of_week
            entry.day_of_month = series.day_of_month
            entry.cron = series.cron
            entry.start_date = series.start_date
            entry.end_date = series.end_date
            entry.active = series.active
            entry.start_time = series.start_time
            entry.duration_hours = series.duration_hours
            entry.assigned_crew = self.serializer.serialize_list(series.assigned_crew)
            entry.payload = self.serializer.serialize_payload(series.payload)
        return series

    def get_series(self, series_id: str) -> Optional[RecurringSeries]:
        with self._session_factory() as session:
            model = session.get(RecurringSeriesModel, series_id)
            return self._series_from_model(model) if model else None

    def list_series(self, active_only: bool = False) -> List[RecurringSeries]:
        query = select(RecurringSeriesModel).order_by(
            RecurringSeriesModel.created_at, RecurringSeriesModel.id
        )
        if active_only:
            query = query.where(RecurringSeriesModel.active.is_(True))
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._series_from_model(row) for row in rows]

    # --- recurring instances ---

    def add_instance(self, instance: RecurringInstance) -> bool:
        try:
            with self._session_factory.begin() as session:
                session.add(
                    RecurringInstanceModel(
                        id=instance.id,
                        series_id=instance.series_id,
                        occurrence_date=instance.occurrence_date,
                        status=instance.status.value,
                        job_id=instance.job_id,
                        created_at=instance.created_at,
                    )
                )
        except IntegrityError:
            return False
        return True

    def get_instance(self, instance_id: str) -> Optional[RecurringInstance]:
        with self._session_factory() as session:
            model = session.get(RecurringInstanceModel, instance_id)
            return self._instance_from_model(model) if model else None

    def list_instances(
        self,
        series_id: str,
        status: Optional[InstanceStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[RecurringInstance]:
        query = (
            select(RecurringInstanceModel)
            .where(RecurringInstanceModel.series_id == series_id)
            .order_by(RecurringInstanceModel.occurrence_date)
        )
        if status is not None:
            query = query.where(RecurringInstanceModel.status == InstanceStatus(status).value)
        if start is not None:
            query = query.where(RecurringInstanceModel.occurrence_date >= start)
        if end is not None:
            query = query.where(RecurringInstanceModel.occurrence_date <= end)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._instance_from_model(row) for row in rows]

    def materialize_instance(
        self, instance_id: str, job: Job
    ) -> Optional[RecurringInstance]:
        with self._session_factory.begin() as session:
            updated = session.execute(
                update(RecurringInstanceModel)
                .where(
                    RecurringInstanceModel.id == instance_id,
                    RecurringInstanceModel.status == InstanceStatus.PENDING.value,
                )
                .values(status=InstanceStatus.MATERIALIZED.value, job_id=job.id)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                return None
            session.add(self._job_to_model(job))
            model = session.get(RecurringInstanceModel, instance_id)
            return self._instance_from_model(model)

    def set_instance_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        expected_status: Optional[InstanceStatus] = None,
    ) -> bool:
        query = update(RecurringInstanceModel).where(
            RecurringInstanceModel.id == instance_id
        )
        if expected_status is not None:
            query = query.where(
                RecurringInstanceModel.status == InstanceStatus(expected_status).value
            )
        with self._session_factory.begin() as session:
            result = session.execute(
                query.values(status=InstanceStatus(status).value).execution_options(
                    synchronize_session=False
                )
            )
            return result.rowcount == 1

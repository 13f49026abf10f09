import threading
from datetime import UTC, date, datetime, time

import pytest

from fieldflow.bus import EventBus
from fieldflow.common.events import JOB_SCHEDULED
from fieldflow.common.exceptions import ConfigurationError, InstanceMaterialized, InstanceNotFound
from fieldflow.common.recurrence import InstanceStatus, RecurrencePattern, RecurringSeries
from fieldflow.common.states import JobState
from fieldflow.recurrence.generator import RecurrenceGenerator
from fieldflow.recurrence.patterns import add_months, occurrences
from fieldflow.server.worker import RecurrenceWorker
from fieldflow.storage.memory_storage import MemoryStorage

MONDAY = 0


def _series(**kwargs):
    kwargs.setdefault("client_id", "client-1")
    kwargs.setdefault("start_date", date(2025, 1, 1))
    return RecurringSeries(**kwargs)


# --- Patterns ---


def test_add_months_clamps_to_month_length():
    assert add_months(date(2025, 1, 1), 1, 31) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 1), 1, 31) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 1), 3, 15) == date(2026, 2, 15)


def test_weekly_on_a_fixed_weekday():
    series = _series(pattern=RecurrencePattern.WEEKLY, day_of_week=MONDAY)
    assert occurrences(series, date(2025, 1, 1), date(2025, 1, 31)) == [
        date(2025, 1, 6),
        date(2025, 1, 13),
        date(2025, 1, 20),
        date(2025, 1, 27),
    ]


def test_biweekly_dates_do_not_depend_on_the_window():
    series = _series(pattern=RecurrencePattern.WEEKLY, day_of_week=MONDAY, interval=2)
    full = occurrences(series, date(2025, 1, 1), date(2025, 3, 31))
    later = occurrences(series, date(2025, 2, 4), date(2025, 3, 31))
    assert full[0] == date(2025, 1, 6)
    assert later == [d for d in full if d >= date(2025, 2, 4)]


def test_daily_with_interval():
    series = _series(pattern=RecurrencePattern.DAILY, interval=3)
    assert occurrences(series, date(2025, 1, 5), date(2025, 1, 12)) == [
        date(2025, 1, 7),
        date(2025, 1, 10),
    ]


def test_monthly_day_31_clamps_without_drifting():
    series = _series(pattern=RecurrencePattern.MONTHLY, day_of_month=31)
    assert occurrences(series, date(2025, 1, 1), date(2025, 4, 30)) == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]


def test_monthly_day_before_start_begins_next_month():
    series = _series(
        pattern=RecurrencePattern.MONTHLY, start_date=date(2025, 1, 15), day_of_month=10
    )
    assert occurrences(series, date(2025, 1, 1), date(2025, 3, 31)) == [
        date(2025, 2, 10),
        date(2025, 3, 10),
    ]


def test_quarterly_from_month_end():
    series = _series(pattern=RecurrencePattern.QUARTERLY, start_date=date(2025, 1, 31))
    assert occurrences(series, date(2025, 1, 1), date(2025, 12, 31)) == [
        date(2025, 1, 31),
        date(2025, 4, 30),
        date(2025, 7, 31),
        date(2025, 10, 31),
    ]


def test_yearly_from_leap_day():
    series = _series(pattern=RecurrencePattern.YEARLY, start_date=date(2024, 2, 29))
    assert occurrences(series, date(2024, 1, 1), date(2026, 12, 31)) == [
        date(2024, 2, 29),
        date(2025, 2, 28),
        date(2026, 2, 28),
    ]


def test_cron_expression_yields_one_date_per_day():
    series = _series(pattern=RecurrencePattern.CRON, cron="0 9,15 * * 1")
    assert occurrences(series, date(2025, 1, 1), date(2025, 1, 20)) == [
        date(2025, 1, 6),
        date(2025, 1, 13),
        date(2025, 1, 20),
    ]


def test_end_date_and_limit_bound_the_result():
    series = _series(
        pattern=RecurrencePattern.DAILY, end_date=date(2025, 1, 10)
    )
    assert occurrences(series, date(2025, 1, 1), date(2025, 2, 1))[-1] == date(2025, 1, 10)
    assert len(occurrences(series, date(2025, 1, 1), date(2025, 2, 1), limit=3)) == 3
    assert occurrences(series, date(2025, 2, 1), date(2025, 3, 1)) == []


def test_series_validation():
    with pytest.raises(ValueError):
        _series(interval=0)
    with pytest.raises(ValueError):
        _series(pattern=RecurrencePattern.CRON)
    with pytest.raises(ValueError):
        _series(day_of_week=7)
    with pytest.raises(ValueError):
        _series(day_of_month=32)
    with pytest.raises(ValueError):
        _series(end_date=date(2024, 12, 31))


# --- Generator ---


@pytest.fixture
def storage():
    return MemoryStorage()


def _weekly(storage, **kwargs):
    return storage.save_series(
        _series(
            pattern=RecurrencePattern.WEEKLY,
            day_of_week=MONDAY,
            start_time=time(9, 30),
            duration_hours=2,
            assigned_crew=["crew-a"],
            payload={"service": "hedge trim"},
            **kwargs,
        )
    )


def test_generator_expands_and_materializes(storage):
    series = _weekly(storage, property_id="lot-7")
    bus = EventBus(partitions=0)
    scheduled = []
    bus.subscribe(JOB_SCHEDULED, scheduled.append)
    generator = RecurrenceGenerator(storage, bus, lookahead_days=60, materialize_days=7)

    report = generator.run(date(2025, 1, 6))

    assert report.created_instances == 9
    assert report.materialized_jobs == 2
    assert report.skipped_series == 0

    jobs = [storage.get_job(job_id) for job_id in report.job_ids]
    assert [job.scheduled_start for job in jobs] == [
        datetime(2025, 1, 6, 9, 30, tzinfo=UTC),
        datetime(2025, 1, 13, 9, 30, tzinfo=UTC),
    ]
    job = jobs[0]
    assert job.state == JobState.DRAFT
    assert job.series_id == series.id
    assert job.property_id == "lot-7"
    assert job.scheduled_end == datetime(2025, 1, 6, 11, 30, tzinfo=UTC)
    assert job.assigned_crew == ["crew-a"]
    assert job.payload["service"] == "hedge trim"

    instance = storage.get_instance(job.payload["recurring_instance_id"])
    assert instance.status == InstanceStatus.MATERIALIZED
    assert instance.job_id == job.id

    assert [e.payload["scheduled_date"] for e in scheduled] == ["2025-01-06", "2025-01-13"]
    assert scheduled[0].payload["series_id"] == series.id


def test_generator_is_idempotent(storage):
    _weekly(storage)
    generator = RecurrenceGenerator(storage)
    generator.run(date(2025, 1, 6))

    again = generator.run(date(2025, 1, 6))

    assert again.created_instances == 0
    assert again.materialized_jobs == 0
    assert len(storage.list_jobs()) == 2


def test_generator_rolls_forward(storage):
    series = _weekly(storage)
    generator = RecurrenceGenerator(storage)
    generator.run(date(2025, 1, 6))

    report = generator.run(date(2025, 1, 14))

    assert report.created_instances == 1
    assert report.materialized_jobs == 1
    assert storage.get_job(report.job_ids[0]).scheduled_start.date() == date(2025, 1, 20)
    dates = [i.occurrence_date for i in storage.list_instances(series.id)]
    assert dates == sorted(set(dates))


def test_skipped_instance_is_not_materialized(storage):
    series = _weekly(storage)
    generator = RecurrenceGenerator(storage)
    generator.run(date(2025, 1, 6))
    target = [
        i for i in storage.list_instances(series.id) if i.occurrence_date == date(2025, 1, 20)
    ][0]

    updated = generator.update_instance_status(target.id, "skipped")
    report = generator.run(date(2025, 1, 14))

    assert updated.status == InstanceStatus.SKIPPED
    assert report.materialized_jobs == 0
    assert storage.get_instance(target.id).job_id is None


def test_materialized_instance_cannot_change_status(storage):
    series = _weekly(storage)
    generator = RecurrenceGenerator(storage)
    generator.run(date(2025, 1, 6))
    done = storage.list_instances(series.id, status=InstanceStatus.MATERIALIZED)[0]

    with pytest.raises(InstanceMaterialized):
        generator.update_instance_status(done.id, InstanceStatus.CANCELLED)
    with pytest.raises(ValueError):
        generator.update_instance_status(done.id, InstanceStatus.MATERIALIZED)
    with pytest.raises(InstanceNotFound):
        generator.update_instance_status("missing", InstanceStatus.SKIPPED)


def test_inactive_series_is_ignored(storage):
    _weekly(storage, active=False)
    report = RecurrenceGenerator(storage).run(date(2025, 1, 6))
    assert report.created_instances == 0
    assert storage.list_jobs() == []


def test_broken_series_does_not_stop_the_run(storage):
    storage.save_series(_series(pattern=RecurrencePattern.CRON, cron="not a cron"))
    _weekly(storage)

    report = RecurrenceGenerator(storage).run(date(2025, 1, 6))

    assert report.skipped_series == 1
    assert report.materialized_jobs == 2


def test_max_occurrences_caps_expansion(storage):
    storage.save_series(_series(pattern=RecurrencePattern.DAILY))
    report = RecurrenceGenerator(storage, lookahead_days=60, max_occurrences=10).run(
        date(2025, 1, 1)
    )
    assert report.created_instances == 10


def test_generator_rejects_inconsistent_horizons(storage):
    with pytest.raises(ConfigurationError):
        RecurrenceGenerator(storage, lookahead_days=5, materialize_days=10)
    with pytest.raises(ConfigurationError):
        RecurrenceGenerator(storage, max_occurrences=0)


def test_recurrence_worker_runs_until_stopped(storage):
    _weekly(storage)
    ran = threading.Event()

    class PinnedGenerator(RecurrenceGenerator):
        def run(self, today=None):
            report = super().run(date(2025, 1, 6))
            ran.set()
            return report

    worker = RecurrenceWorker(PinnedGenerator(storage), interval_seconds=60)
    worker.start()
    try:
        assert ran.wait(5)
    finally:
        worker.stop(timeout=5)

    assert len(storage.list_jobs()) == 2

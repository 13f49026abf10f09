# fieldflow/common/recurrence.py
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, UTC
from enum import Enum
from typing import Any, Dict, List, Optional


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CRON = "cron"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    MATERIALIZED = "materialized"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class RecurringSeries:
    """
    A recurring service agreement for one client (and optionally one property).

    ``day_of_week`` follows ``date.weekday()`` (0 is Monday). ``day_of_month``
    is clamped to the length of short months. ``cron`` is only read when the
    pattern is ``cron``.
    """

    client_id: Optional[str]
    start_date: date
    pattern: RecurrencePattern = RecurrencePattern.WEEKLY
    interval: int = 1
    name: str = ""
    property_id: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    cron: Optional[str] = None
    end_date: Optional[date] = None
    active: bool = True

    # Template for generated jobs
    start_time: time = time(8, 0)
    duration_hours: Optional[float] = None
    assigned_crew: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        self.pattern = RecurrencePattern(self.pattern)
        if self.interval < 1:
            raise ValueError("interval must be at least 1")
        if self.pattern == RecurrencePattern.CRON and not self.cron:
            raise ValueError("cron pattern requires a cron expression")
        if self.day_of_week is not None and not 0 <= self.day_of_week <= 6:
            raise ValueError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")


@dataclass
class RecurringInstance:
    series_id: str
    occurrence_date: date
    status: InstanceStatus = InstanceStatus.PENDING
    job_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        self.status = InstanceStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "series_id": self.series_id,
            "occurrence_date": self.occurrence_date.isoformat(),
            "status": self.status.value,
            "job_id": self.job_id,
            "created_at": self.created_at.isoformat(),
        }

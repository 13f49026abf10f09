# fieldflow/common/events.py
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, UTC
from typing import Any, Dict, Iterable, Optional

from fieldflow.common.job import Job, StateTransition

JOB_CREATED = "job_created"
JOB_TRANSITIONED = "job_transitioned"
JOB_SCHEDULED = "job_scheduled"

# Subscribing to this pseudo type receives every event.
ALL_EVENTS = "*"


@dataclass(frozen=True)
class Event:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "job_id": self.job_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


def job_created(job: Job) -> Event:
    return Event(
        type=JOB_CREATED,
        job_id=job.id,
        payload={"job_id": job.id, "state": job.state.value, "job": job.to_dict()},
    )


def job_transitioned(
    job: Job, transition: StateTransition, hooks: Iterable[str] = ()
) -> Event:
    return Event(
        type=JOB_TRANSITIONED,
        job_id=job.id,
        timestamp=transition.timestamp,
        payload={
            "job_id": job.id,
            "from_state": transition.from_state.value,
            "to_state": transition.to_state.value,
            "actor_id": transition.actor_id,
            "timestamp": transition.timestamp.isoformat(),
            "reason": transition.reason,
            "system_triggered": transition.system_triggered,
            "transition_id": transition.id,
            "version": job.version,
            "hooks": list(hooks),
            "job": job.to_dict(),
        },
    )


def job_scheduled(job: Job, scheduled_date: date, series_id: Optional[str] = None) -> Event:
    return Event(
        type=JOB_SCHEDULED,
        job_id=job.id,
        payload={
            "job_id": job.id,
            "series_id": series_id,
            "scheduled_date": scheduled_date.isoformat(),
            "job": job.to_dict(),
        },
    )

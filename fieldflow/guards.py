# fieldflow/guards.py
"""
Data guards for transitions.

A guard is a named predicate over the job about to move. It returns None when
the job may proceed, or a human readable reason when it may not. Transition
tables refer to guards by name; unknown names are rejected when the table is
loaded.
"""
from typing import Callable, Dict, Optional

from fieldflow.common.job import Job

Guard = Callable[[Job, Optional[str]], Optional[str]]


def scheduled_window(job: Job, reason: Optional[str]) -> Optional[str]:
    if job.scheduled_start is None:
        return "scheduled_start is required to schedule a job"
    if job.scheduled_end is not None and job.scheduled_end < job.scheduled_start:
        return "scheduled_end must not be before scheduled_start"
    return None


def crew_assigned(job: Job, reason: Optional[str]) -> Optional[str]:
    if not job.assigned_crew:
        return "assigned_crew must contain at least one crew member"
    return None


def permit_required(job: Job, reason: Optional[str]) -> Optional[str]:
    if not job.payload.get("permit_required"):
        return "permit_required must be set to use this state"
    return None


def permit_approved(job: Job, reason: Optional[str]) -> Optional[str]:
    if job.payload.get("permit_required") and job.payload.get("permit_status") != "approved":
        return "Permit must be approved before scheduling"
    return None


def deposit_settled(job: Job, reason: Optional[str]) -> Optional[str]:
    if job.payload.get("deposit_required") and job.payload.get("deposit_status") not in (
        "received",
        "waived",
    ):
        return "Deposit must be received or waived before scheduling"
    return None


def hazard_acknowledged(job: Job, reason: Optional[str]) -> Optional[str]:
    if job.payload.get("jha_required") and not job.payload.get("jha_acknowledged_at"):
        return "Job hazard analysis must be acknowledged before starting work"
    return None


def work_recorded(job: Job, reason: Optional[str]) -> Optional[str]:
    if not job.payload.get("work_started_at"):
        return "Work must be started before it can be completed"
    if not job.payload.get("work_ended_at"):
        return "work_ended_at is required to complete a job"
    return None


def checklist_complete(job: Job, reason: Optional[str]) -> Optional[str]:
    checklist = job.payload.get("completion_checklist") or []
    unchecked = [item for item in checklist if isinstance(item, dict) and not item.get("checked")]
    if unchecked:
        return f"Completion checklist has {len(unchecked)} unchecked items"
    return None


def hold_reason(job: Job, reason: Optional[str]) -> Optional[str]:
    if (reason or "").strip() or str(job.payload.get("weather_hold_reason") or "").strip():
        return None
    return "A reason is required when placing a job on weather hold"


def invoice_linked(job: Job, reason: Optional[str]) -> Optional[str]:
    if not job.payload.get("invoice_id"):
        return "invoice_id is required to mark a job as invoiced"
    return None


def payment_received(job: Job, reason: Optional[str]) -> Optional[str]:
    if not job.payload.get("payment_received_at"):
        return "payment_received_at is required to mark a job as paid"
    return None


GUARDS: Dict[str, Guard] = {
    "scheduled_window": scheduled_window,
    "crew_assigned": crew_assigned,
    "permit_required": permit_required,
    "permit_approved": permit_approved,
    "deposit_settled": deposit_settled,
    "hazard_acknowledged": hazard_acknowledged,
    "work_recorded": work_recorded,
    "checklist_complete": checklist_complete,
    "hold_reason": hold_reason,
    "invoice_linked": invoice_linked,
    "payment_received": payment_received,
}


def get_guard(name: str) -> Optional[Guard]:
    return GUARDS.get(name)


# Guards applied to every edge into a state when a table enables data guards.
DEFAULT_DATA_GUARDS: Dict[str, list] = {
    "needs_permit": ["permit_required"],
    "scheduled": ["scheduled_window", "crew_assigned", "permit_approved", "deposit_settled"],
    "in_progress": ["scheduled_window", "crew_assigned", "hazard_acknowledged"],
    "weather_hold": ["hold_reason"],
    "completed": ["work_recorded", "checklist_complete"],
    "invoiced": ["invoice_linked"],
    "paid": ["invoice_linked", "payment_received"],
}

# fieldflow/common/states.py
from enum import Enum
from typing import Dict, List, Union


class JobState(str, Enum):
    DRAFT = "draft"
    NEEDS_PERMIT = "needs_permit"
    WAITING_ON_CLIENT = "waiting_on_client"
    SCHEDULED = "scheduled"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    WEATHER_HOLD = "weather_hold"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INVOICED = "invoiced"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def display_name(self) -> str:
        return STATE_NAMES[self]


INITIAL_STATE = JobState.DRAFT
TERMINAL_STATES = frozenset({JobState.PAID, JobState.CANCELLED})

STATE_NAMES: Dict[JobState, str] = {
    JobState.DRAFT: "Draft",
    JobState.NEEDS_PERMIT: "Needs Permit",
    JobState.WAITING_ON_CLIENT: "Waiting on Client",
    JobState.SCHEDULED: "Scheduled",
    JobState.EN_ROUTE: "En Route",
    JobState.ON_SITE: "On Site",
    JobState.WEATHER_HOLD: "Weather Hold",
    JobState.IN_PROGRESS: "In Progress",
    JobState.COMPLETED: "Completed",
    JobState.INVOICED: "Invoiced",
    JobState.PAID: "Paid",
    JobState.CANCELLED: "Cancelled",
}

ALL_STATES: List[str] = [state.value for state in JobState]

_COMPACT_NAMES = {state.value.replace("_", ""): state for state in JobState}


def coerce_state(value: Union[str, JobState]) -> JobState:
    """Resolve ``value`` to a JobState.

    Accepts members, stored values (``"in_progress"``) and the CamelCase or
    display spellings used by API callers (``"InProgress"``, ``"In Progress"``).
    Raises ValueError for anything else.
    """
    if isinstance(value, JobState):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unknown job state: {value!r}")
    normalized = value.strip().lower()
    try:
        return JobState(normalized)
    except ValueError:
        pass
    compact = normalized.replace("_", "").replace(" ", "").replace("-", "")
    if compact in _COMPACT_NAMES:
        return _COMPACT_NAMES[compact]
    raise ValueError(f"Unknown job state: {value!r}")

# fieldflow/common/job.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Optional, List, Dict, Any, FrozenSet, Iterable

from fieldflow.common.states import JobState, INITIAL_STATE, coerce_state


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    CREW = "crew"
    ACCOUNTING = "accounting"
    SYSTEM = "system"


# Roles that satisfy every transition rule.
ADMIN_ROLES: FrozenSet[str] = frozenset({Role.OWNER.value, Role.ADMIN.value})


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Actor:
    """Whoever asks for a transition: a user, or the system itself."""

    id: str
    roles: FrozenSet[str] = frozenset()
    system: bool = False

    def __post_init__(self):
        roles = self.roles
        if isinstance(roles, str):
            roles = [roles]
        object.__setattr__(
            self, "roles", frozenset(str(getattr(r, "value", r)).lower() for r in roles)
        )

    @classmethod
    def system_actor(cls, name: str = "system") -> "Actor":
        return cls(id=name, roles=frozenset({Role.SYSTEM.value}), system=True)

    def satisfies(self, required_roles: Iterable[str]) -> bool:
        required = frozenset(required_roles)
        if not required:
            return True
        return bool(self.roles & (required | ADMIN_ROLES))

    def matching_role(self, required_roles: Iterable[str]) -> Optional[str]:
        required = frozenset(required_roles)
        for candidates in (self.roles & required, self.roles & ADMIN_ROLES):
            if candidates:
                return sorted(candidates)[0]
        if not required and self.roles:
            return sorted(self.roles)[0]
        return None


@dataclass
class Job:
    """
    A unit of schedulable field work tracked through its lifecycle.

    ``state`` is owned by the state machine: storage backends only change it
    while appending a StateTransition in the same atomic write. ``payload``
    carries costs, materials and line items and is opaque to this package.
    """

    state: JobState = INITIAL_STATE
    client_id: Optional[str] = None
    property_id: Optional[str] = None
    quote_id: Optional[str] = None
    series_id: Optional[str] = None

    # Scheduling window
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    assigned_crew: List[str] = field(default_factory=list)

    payload: Dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.state = coerce_state(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "client_id": self.client_id,
            "property_id": self.property_id,
            "quote_id": self.quote_id,
            "series_id": self.series_id,
            "scheduled_start": _isoformat(self.scheduled_start),
            "scheduled_end": _isoformat(self.scheduled_end),
            "assigned_crew": list(self.assigned_crew),
            "payload": dict(self.payload),
            "version": self.version,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass(frozen=True)
class StateTransition:
    """Immutable audit record of one applied transition."""

    job_id: str
    from_state: JobState
    to_state: JobState
    actor_id: str
    actor_role: Optional[str] = None
    reason: Optional[str] = None
    system_triggered: bool = False
    table_version: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        object.__setattr__(self, "from_state", coerce_state(self.from_state))
        object.__setattr__(self, "to_state", coerce_state(self.to_state))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "reason": self.reason,
            "system_triggered": self.system_triggered,
            "table_version": self.table_version,
            "timestamp": self.timestamp.isoformat(),
        }

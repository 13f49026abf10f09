# fieldflow/common/automation.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from fieldflow.common.exceptions import InvalidRule


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"

    @classmethod
    def from_results(cls, results: List["ActionResult"]) -> "RunStatus":
        failures = sum(1 for result in results if not result.success)
        if failures == 0:
            return cls.SUCCEEDED
        if failures == len(results):
            return cls.FAILED
        return cls.PARTIALLY_FAILED


@dataclass(frozen=True)
class Condition:
    """One predicate over the event payload; ``field`` is a dotted path."""

    field: str
    operator: str = "equals"
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}

    @classmethod
    def from_dict(cls, data: Union["Condition", Dict[str, Any]]) -> "Condition":
        if isinstance(data, Condition):
            return data
        return cls(
            field=data["field"],
            operator=data.get("operator", "equals"),
            value=data.get("value"),
        )


@dataclass(frozen=True)
class ActionSpec:
    name: str
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, data: Union["ActionSpec", str, Dict[str, Any]]) -> "ActionSpec":
        if isinstance(data, ActionSpec):
            return data
        if isinstance(data, str):
            return cls(name=data)
        config = dict(data.get("config") or {})
        # Actions run when their event is delivered; nothing persists a deferred action.
        if data.get("delay_minutes") or config.get("delay_minutes"):
            raise InvalidRule(
                f"Action '{data['name']}' asks for a delay; deferred actions are not supported"
            )
        return cls(name=data["name"], config=config)


@dataclass
class AutomationRule:
    """
    Trigger + conditions => ordered actions.

    ``max_firings`` bounds how often the rule may fire for one job inside
    ``window_seconds``; zero in either disables the guard.
    """

    trigger: str
    actions: List[ActionSpec] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    name: str = ""
    enabled: bool = True
    max_firings: int = 0
    window_seconds: int = 3600

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.actions = [ActionSpec.from_dict(a) for a in self.actions]
        self.conditions = [Condition.from_dict(c) for c in self.conditions]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "enabled": self.enabled,
            "max_firings": self.max_firings,
            "window_seconds": self.window_seconds,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationRule":
        kwargs = {
            key: data[key]
            for key in (
                "id",
                "name",
                "trigger",
                "conditions",
                "actions",
                "enabled",
                "max_firings",
                "window_seconds",
            )
            if data.get(key) is not None
        }
        return cls(**kwargs)


@dataclass
class ActionResult:
    action: str
    success: bool
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    timed_out: bool = False
    duration_ms: float = 0.0

    @classmethod
    def coerce(cls, action: str, outcome: Any) -> "ActionResult":
        """Normalise whatever an action handler returned into a result."""
        if isinstance(outcome, ActionResult):
            if not outcome.action:
                outcome.action = action
            return outcome
        if outcome is None:
            return cls(action=action, success=True)
        if isinstance(outcome, bool):
            return cls(action=action, success=outcome)
        if isinstance(outcome, dict):
            return cls(
                action=action,
                success=bool(outcome.get("success", True)),
                detail=dict(outcome),
                error=outcome.get("error"),
            )
        return cls(action=action, success=True, detail={"result": outcome})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "detail": self.detail,
            "error": self.error,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionResult":
        return cls(
            action=data["action"],
            success=bool(data["success"]),
            detail=data.get("detail") or {},
            error=data.get("error"),
            timed_out=bool(data.get("timed_out", False)),
            duration_ms=float(data.get("duration_ms") or 0.0),
        )


@dataclass
class AutomationRun:
    """One matched firing of a rule, whatever its outcome. Append-only."""

    rule_id: str
    event_id: str
    event_type: str
    status: RunStatus
    job_id: Optional[str] = None
    action_results: List[ActionResult] = field(default_factory=list)
    reason: Optional[str] = None

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = RunStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "job_id": self.job_id,
            "status": self.status.value,
            "reason": self.reason,
            "action_results": [r.to_dict() for r in self.action_results],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

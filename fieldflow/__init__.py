from .bus import EventBus
from .client import FieldFlowClient
from .common.events import Event
from .common.exceptions import (
    ConcurrentModification,
    FieldFlowException,
    Forbidden,
    GuardFailed,
    InvalidTransition,
    JobNotFound,
)
from .common.job import Actor, Job, Role, StateTransition
from .common.states import JobState
from .config import Settings, configure_logging
from .machine import JobStateMachine, TransitionResult
from .transitions import TransitionTable, build_default_table

__version__ = "0.1.0"

__all__ = [
    "Actor",
    "ConcurrentModification",
    "Event",
    "EventBus",
    "FieldFlowClient",
    "FieldFlowException",
    "Forbidden",
    "GuardFailed",
    "InvalidTransition",
    "Job",
    "JobNotFound",
    "JobState",
    "JobStateMachine",
    "Role",
    "Settings",
    "StateTransition",
    "TransitionResult",
    "TransitionTable",
    "build_default_table",
    "configure_logging",
]

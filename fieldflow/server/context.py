# fieldflow/server/context.py
from typing import Optional

from fieldflow.common.automation import AutomationRule, RunStatus
from fieldflow.common.events import Event


class ElectRunContext:
    """Handed to each AutomationFilter before a matched rule executes its actions."""

    def __init__(self, rule: AutomationRule, event: Event, storage):
        self.rule = rule
        self.event = event
        self.storage = storage
        self.candidate_status: Optional[RunStatus] = None
        self.reason: Optional[str] = None

    def skip(self, status: RunStatus, reason: str) -> None:
        self.candidate_status = status
        self.reason = reason

    @property
    def is_skipped(self) -> bool:
        return self.candidate_status is not None

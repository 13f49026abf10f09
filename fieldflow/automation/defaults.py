# fieldflow/automation/defaults.py
import logging
from typing import List

from fieldflow.common.automation import ActionSpec, AutomationRule, Condition
from fieldflow.common.events import JOB_TRANSITIONED
from fieldflow.common.states import JobState
from fieldflow.storage.base import JobStorage

logger = logging.getLogger(__name__)

COMPLETED_RULE_ID = "job-completed-invoice-and-activate"
CANCELLED_RULE_ID = "job-cancelled-downgrade-client"


def canonical_rules(downgrade_scope: str = "client") -> List[AutomationRule]:
    return [
        AutomationRule(
            id=COMPLETED_RULE_ID,
            name="Completed job: draft invoice and activate client",
            trigger=JOB_TRANSITIONED,
            conditions=[Condition("to_state", "equals", JobState.COMPLETED.value)],
            actions=[
                ActionSpec("create_draft_invoice"),
                ActionSpec("set_client_category", {"category": "active"}),
            ],
            max_firings=5,
            window_seconds=3600,
        ),
        AutomationRule(
            id=CANCELLED_RULE_ID,
            name="Cancelled job: downgrade client without other jobs",
            trigger=JOB_TRANSITIONED,
            conditions=[Condition("to_state", "equals", JobState.CANCELLED.value)],
            actions=[ActionSpec("downgrade_client_category", {"scope": downgrade_scope})],
            max_firings=5,
            window_seconds=3600,
        ),
    ]


def install_canonical_rules(storage: JobStorage, downgrade_scope: str = "client") -> List[AutomationRule]:
    """Saves the canonical rules unless rules with their ids already exist."""
    installed = []
    for rule in canonical_rules(downgrade_scope):
        if storage.get_rule(rule.id) is None:
            installed.append(storage.save_rule(rule))
            logger.info("Installed automation rule %s", rule.id)
    return installed

# fieldflow/server/processor.py
import logging
from concurrent.futures import Executor
from datetime import UTC, datetime
from typing import List, Optional

from fieldflow.common.automation import ActionResult, AutomationRule, AutomationRun, RunStatus
from fieldflow.common.events import Event
from fieldflow.common.exceptions import ActionLoadError
from fieldflow.execution.performer import perform_action
from fieldflow.filters.base import AutomationFilter
from fieldflow.server.context import ElectRunContext
from fieldflow.storage.base import JobStorage

logger = logging.getLogger(__name__)


class RuleProcessor:
    """Executes one matched rule against one event and records exactly one run."""

    def __init__(
        self,
        rule: AutomationRule,
        event: Event,
        storage: JobStorage,
        registry,
        filters: List[AutomationFilter],
        action_timeout: Optional[float] = None,
        executor: Optional[Executor] = None,
    ):
        self.rule = rule
        self.event = event
        self.storage = storage
        self.registry = registry
        self.filters = filters
        self.action_timeout = action_timeout
        self.executor = executor

    def process(self) -> AutomationRun:
        run = AutomationRun(
            rule_id=self.rule.id,
            event_id=self.event.id,
            event_type=self.event.type,
            job_id=self.event.job_id,
            status=RunStatus.SUCCEEDED,
        )

        elect_run_context = ElectRunContext(self.rule, self.event, self.storage)
        for f in self.filters:
            f.on_rule_election(elect_run_context)
            if elect_run_context.is_skipped:
                break

        if elect_run_context.is_skipped:
            run.status = elect_run_context.candidate_status
            run.reason = elect_run_context.reason
            logger.warning(
                "Rule %s skipped for event %s: %s", self.rule.id, self.event.id, run.reason
            )
        else:
            for spec in self.rule.actions:
                run.action_results.append(self._run_action(spec.name, spec.config))
            run.status = RunStatus.from_results(run.action_results)
            if run.status != RunStatus.SUCCEEDED:
                logger.error(
                    "Rule %s %s on event %s",
                    self.rule.id,
                    run.status.value,
                    self.event.id,
                )

        run.finished_at = datetime.now(UTC)
        self.storage.append_automation_run(run)
        return run

    def _run_action(self, name: str, config) -> ActionResult:
        try:
            action = self.registry.get(name)
        except ActionLoadError as e:
            logger.error("Rule %s: %s", self.rule.id, e.message)
            return ActionResult(action=name, success=False, error=e.message)
        return perform_action(
            name,
            action,
            self.event.payload,
            config,
            timeout=self.action_timeout,
            executor=self.executor,
        )

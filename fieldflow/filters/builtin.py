# fieldflow/filters/builtin.py
import logging
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from fieldflow.common.automation import RunStatus
from fieldflow.filters.base import AutomationFilter
from fieldflow.server.context import ElectRunContext

logger = logging.getLogger(__name__)


class RateLimitFilter(AutomationFilter):
    """Caps firings of one rule for one job at ``rule.max_firings`` per ``rule.window_seconds``.

    Rate-limited runs are excluded from the count, so a rule recovers once its
    window slides past the earlier firings.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(UTC))

    def on_rule_election(self, elect_run_context: ElectRunContext):
        rule = elect_run_context.rule
        if rule.max_firings <= 0 or rule.window_seconds <= 0:
            return

        job_id = elect_run_context.event.job_id
        since = self.clock() - timedelta(seconds=rule.window_seconds)
        fired = elect_run_context.storage.count_automation_runs(
            rule.id, job_id, since, exclude_statuses=[RunStatus.RATE_LIMITED]
        )
        logger.debug(
            "RateLimitFilter: rule %s fired %d/%d times for job %s",
            rule.id,
            fired,
            rule.max_firings,
            job_id,
        )
        if fired >= rule.max_firings:
            elect_run_context.skip(
                RunStatus.RATE_LIMITED,
                f"Rule fired {fired} times for job {job_id} within "
                f"{rule.window_seconds}s (limit {rule.max_firings})",
            )

# fieldflow/machine.py
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import List, Optional, Tuple, Union

from fieldflow.bus import EventBus
from fieldflow.common import events
from fieldflow.common.exceptions import (
    ConcurrentModification,
    Forbidden,
    GuardFailed,
    InvalidTransition,
    JobNotFound,
)
from fieldflow.common.job import Actor, Job, StateTransition
from fieldflow.common.states import INITIAL_STATE, JobState, coerce_state
from fieldflow.server.locks import LocalLockManager, LockManager
from fieldflow.storage.base import JobStorage
from fieldflow.transitions import TransitionRule, TransitionTable, build_default_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    job: Job
    transition: StateTransition

    @property
    def state(self) -> JobState:
        return self.job.state

    @property
    def transition_id(self) -> str:
        return self.transition.id


@dataclass(frozen=True)
class TransitionOption:
    state: JobState
    allowed: bool
    blocked_reasons: Tuple[str, ...] = ()
    hooks: Tuple[str, ...] = ()

    def to_dict(self):
        return {
            "state": self.state.value,
            "allowed": self.allowed,
            "blocked_reasons": list(self.blocked_reasons),
            "hooks": list(self.hooks),
        }


class JobStateMachine:
    """
    The only writer of ``Job.state``.

    A transition is validated against the table, the actor's roles and the
    edge's data guards while the per-job lock is held, then written with a
    compare-and-set on the previous state together with its audit row.
    Events are published only after that write has committed: a partitioned
    bus gets them before the lock is released, an inline bus right after.
    ``job_transitioned`` payloads carry the job's ``version`` so subscribers
    can order them either way.
    """

    def __init__(
        self,
        storage: JobStorage,
        table: Optional[TransitionTable] = None,
        bus: Optional[EventBus] = None,
        lock_manager: Optional[LockManager] = None,
        lock_timeout: float = 5.0,
    ):
        self.storage = storage
        self.table = table or build_default_table()
        self.bus = bus or EventBus(partitions=0)
        self.lock_manager = lock_manager or LocalLockManager()
        self.lock_timeout = lock_timeout

    def create_job(self, job: Optional[Job] = None, **fields) -> Job:
        job = job or Job(**fields)
        if job.state != INITIAL_STATE:
            logger.warning(
                "Job %s submitted in state '%s'; new jobs always start in '%s'",
                job.id,
                job.state.value,
                INITIAL_STATE.value,
            )
            job.state = INITIAL_STATE
        job.version = 0
        created = self.storage.create_job(job)
        logger.info("Created job %s for client %s", created.id, created.client_id)
        self.bus.publish(events.job_created(created))
        return created

    def get_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def request_transition(
        self,
        job_id: str,
        to_state: Union[str, JobState],
        actor: Actor,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        try:
            target = coerce_state(to_state)
        except ValueError:
            current = self.storage.get_job(job_id)
            if current is None:
                raise JobNotFound(job_id)
            raise InvalidTransition(
                job_id,
                current.state,
                to_state,
                message=f"Unknown target state '{to_state}'",
            )

        with self.lock_manager.hold(job_id, self.lock_timeout) as acquired:
            if not acquired:
                logger.info("Lock timeout on job %s after %ss", job_id, self.lock_timeout)
                raise ConcurrentModification(job_id)

            job = self.storage.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)

            rule = self.table.get_rule(job.state, target)
            if rule is None:
                raise InvalidTransition(job_id, job.state, target)
            if not rule.permits(actor):
                raise Forbidden(job_id, job.state, target, actor.id, rule.roles)
            blocked = rule.blocked_reasons(job, reason)
            if blocked:
                raise GuardFailed(job_id, job.state, target, blocked)

            transition = StateTransition(
                job_id=job_id,
                from_state=job.state,
                to_state=target,
                actor_id=actor.id,
                actor_role=actor.matching_role(rule.roles),
                reason=reason,
                system_triggered=actor.system,
                table_version=self.table.version,
                timestamp=datetime.now(UTC),
            )
            updated = self.storage.apply_transition(job_id, transition, job.state)
            if updated is None:
                raise ConcurrentModification(
                    job_id, f"Job {job_id} left state '{job.state.value}' before the write"
                )

            event = events.job_transitioned(updated, transition, rule.hooks)
            # Queue while still holding the lock so a job's events reach the
            # dispatch thread in commit order.
            if not self.bus.is_inline:
                self.bus.publish(event)

        logger.info(
            "Job %s: %s -> %s by %s",
            job_id,
            transition.from_state.value,
            transition.to_state.value,
            actor.id,
        )
        if self.bus.is_inline:
            self.bus.publish(event)
        return TransitionResult(job=updated, transition=transition)

    def get_allowed_rules(
        self, job_id: str, actor: Optional[Actor] = None
    ) -> List[TransitionRule]:
        """Edges out of the job's current state, narrowed to ``actor`` if given."""
        return self._allowed_rules(self.get_job(job_id), actor)

    def get_allowed_transitions(
        self, job_id: str, actor: Optional[Actor] = None
    ) -> List[JobState]:
        return [rule.to_state for rule in self.get_allowed_rules(job_id, actor)]

    def get_transition_options(
        self, job_id: str, actor: Optional[Actor] = None
    ) -> List[TransitionOption]:
        """Like ``get_allowed_transitions`` but also says which edges the job's data blocks, and why."""
        job = self.get_job(job_id)
        options = []
        for rule in self._allowed_rules(job, actor):
            blocked = rule.blocked_reasons(job)
            options.append(
                TransitionOption(
                    state=rule.to_state,
                    allowed=not blocked,
                    blocked_reasons=tuple(blocked),
                    hooks=rule.hooks,
                )
            )
        return options

    def _allowed_rules(self, job: Job, actor: Optional[Actor]) -> List[TransitionRule]:
        rules = self.table.rules_from(job.state)
        if actor is not None:
            rules = [rule for rule in rules if rule.permits(actor)]
        return rules

    def get_transition_history(self, job_id: str) -> List[StateTransition]:
        if self.storage.get_job(job_id) is None:
            raise JobNotFound(job_id)
        return self.storage.get_transitions(job_id)

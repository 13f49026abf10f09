# fieldflow/transitions.py
"""
The job lifecycle transition table.

A table is loaded once at process start and never mutated afterwards; editing
the lifecycle means shipping a new table with a new ``version``. Every audit
row records the version it was applied under, so history written under an
older table stays valid after an upgrade.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Union

from fieldflow.common.exceptions import ConfigurationError
from fieldflow.common.job import Actor, Job
from fieldflow.common.states import JobState, TERMINAL_STATES, coerce_state
from fieldflow.guards import DEFAULT_DATA_GUARDS, get_guard

DEFAULT_TABLE_VERSION = "2024-11-09.1"

_OFFICE = ["manager", "sales"]
_FIELD = ["manager", "crew"]
_ANY_STAFF = ["manager", "sales", "crew"]
_BILLING = ["manager", "accounting"]

DEFAULT_TABLE_DEFINITION: Dict[str, Any] = {
    "version": DEFAULT_TABLE_VERSION,
    "transitions": [
        {"from": "draft", "to": ["needs_permit", "waiting_on_client"], "roles": _OFFICE},
        {"from": "draft", "to": ["scheduled"], "roles": _OFFICE, "hooks": ["notify_crew"]},
        {"from": "needs_permit", "to": ["waiting_on_client"], "roles": _OFFICE},
        {"from": "needs_permit", "to": ["scheduled"], "roles": _OFFICE, "hooks": ["notify_crew"]},
        {"from": "waiting_on_client", "to": ["scheduled"], "roles": _OFFICE, "hooks": ["notify_crew"]},
        {"from": "scheduled", "to": ["en_route", "in_progress"], "roles": _FIELD},
        {"from": "scheduled", "to": ["weather_hold"], "roles": _ANY_STAFF, "hooks": ["notify_client"]},
        {"from": "en_route", "to": ["on_site"], "roles": _FIELD, "hooks": ["notify_client"]},
        {"from": ["en_route", "on_site"], "to": ["weather_hold"], "roles": _ANY_STAFF, "hooks": ["notify_client"]},
        {"from": "on_site", "to": ["in_progress"], "roles": _FIELD},
        {"from": "weather_hold", "to": ["scheduled"], "roles": _OFFICE, "hooks": ["notify_crew"]},
        {"from": "in_progress", "to": ["completed"], "roles": _FIELD, "hooks": ["create_invoice", "activate_client"]},
        {"from": "in_progress", "to": ["weather_hold"], "roles": _FIELD, "hooks": ["notify_client"]},
        {"from": "completed", "to": ["invoiced"], "roles": _BILLING},
        {"from": "invoiced", "to": ["paid"], "roles": _BILLING, "hooks": ["thank_client"]},
        # Voiding or correcting an invoice sends the job back to completed.
        {"from": "invoiced", "to": ["completed"], "roles": _BILLING},
    ],
    "cancellation": {"roles": _OFFICE, "hooks": ["review_client_category"]},
}


@dataclass(frozen=True)
class TransitionRule:
    from_state: JobState
    to_state: JobState
    roles: FrozenSet[str] = frozenset()
    hooks: Tuple[str, ...] = ()
    guards: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "from_state", coerce_state(self.from_state))
        object.__setattr__(self, "to_state", coerce_state(self.to_state))
        object.__setattr__(self, "roles", frozenset(r.lower() for r in self.roles))
        object.__setattr__(self, "hooks", tuple(self.hooks))
        object.__setattr__(self, "guards", tuple(dict.fromkeys(self.guards)))

    def permits(self, actor: Actor) -> bool:
        return actor.satisfies(self.roles)

    def blocked_reasons(self, job: Job, reason: Optional[str] = None) -> List[str]:
        """Reasons the job's data does not satisfy this edge's guards; empty when it does."""
        reasons = []
        for name in self.guards:
            message = get_guard(name)(job, reason)
            if message:
                reasons.append(message)
        return reasons


class TransitionTable:
    def __init__(
        self,
        rules: Iterable[TransitionRule],
        version: str = "1",
        require_cancellation: bool = True,
    ):
        self.version = version
        self._rules: Dict[Tuple[JobState, JobState], TransitionRule] = {}
        for rule in rules:
            if rule.from_state in TERMINAL_STATES:
                raise ConfigurationError(
                    f"Terminal state '{rule.from_state.value}' cannot have outgoing transitions"
                )
            if rule.from_state == rule.to_state:
                raise ConfigurationError(
                    f"Self transition on '{rule.from_state.value}' is not allowed"
                )
            key = (rule.from_state, rule.to_state)
            if key in self._rules:
                raise ConfigurationError(
                    f"Duplicate transition {rule.from_state.value} -> {rule.to_state.value}"
                )
            unknown = [name for name in rule.guards if get_guard(name) is None]
            if unknown:
                raise ConfigurationError(
                    f"Unknown guard(s) {', '.join(unknown)} on "
                    f"{rule.from_state.value} -> {rule.to_state.value}"
                )
            self._rules[key] = rule

        if require_cancellation:
            missing = [
                state.value
                for state in JobState
                if state not in TERMINAL_STATES
                and (state, JobState.CANCELLED) not in self._rules
            ]
            if missing:
                raise ConfigurationError(
                    f"States without a cancellation edge: {', '.join(missing)}"
                )

    def get_rule(
        self, from_state: Union[str, JobState], to_state: Union[str, JobState]
    ) -> Optional[TransitionRule]:
        try:
            key = (coerce_state(from_state), coerce_state(to_state))
        except ValueError:
            return None
        return self._rules.get(key)

    def is_allowed(self, from_state: Union[str, JobState], to_state: Union[str, JobState]) -> bool:
        return self.get_rule(from_state, to_state) is not None

    def rules_from(self, from_state: Union[str, JobState]) -> List[TransitionRule]:
        state = coerce_state(from_state)
        return [rule for (source, _), rule in self._rules.items() if source == state]

    def __iter__(self) -> Iterator[TransitionRule]:
        return iter(list(self._rules.values()))

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, edge: Tuple[Any, Any]) -> bool:
        return self.is_allowed(*edge)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionTable":
        """Build a table from its document form.

        ``transitions`` entries accept a single state or a list for both
        ``from`` and ``to``, and may name ``guards``. An optional
        ``cancellation`` block adds a ``* -> cancelled`` edge from every
        non-terminal state that does not already declare one. An optional
        top-level ``guards`` mapping adds guards to every edge into a state.
        """
        by_target = data.get("guards") or {}
        if not isinstance(by_target, dict):
            raise ConfigurationError("Invalid transition table definition: 'guards' must be a mapping")

        def guards_for(target, declared) -> Tuple[str, ...]:
            state = coerce_state(target)
            return tuple(declared) + tuple(by_target.get(state.value, []))

        rules: List[TransitionRule] = []
        try:
            for entry in data.get("transitions", []):
                sources = entry["from"] if isinstance(entry["from"], list) else [entry["from"]]
                targets = entry["to"] if isinstance(entry["to"], list) else [entry["to"]]
                for source in sources:
                    for target in targets:
                        rules.append(
                            TransitionRule(
                                from_state=source,
                                to_state=target,
                                roles=frozenset(entry.get("roles", [])),
                                hooks=tuple(entry.get("hooks", [])),
                                guards=guards_for(target, entry.get("guards", [])),
                            )
                        )

            cancellation = data.get("cancellation")
            if cancellation is not None:
                declared = {(r.from_state, r.to_state) for r in rules}
                for state in JobState:
                    if state in TERMINAL_STATES or state == JobState.CANCELLED:
                        continue
                    if (state, JobState.CANCELLED) in declared:
                        continue
                    rules.append(
                        TransitionRule(
                            from_state=state,
                            to_state=JobState.CANCELLED,
                            roles=frozenset(cancellation.get("roles", [])),
                            hooks=tuple(cancellation.get("hooks", [])),
                            guards=guards_for(JobState.CANCELLED, cancellation.get("guards", [])),
                        )
                    )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid transition table definition: {e}") from e

        return cls(
            rules,
            version=str(data.get("version", "1")),
            require_cancellation=data.get("require_cancellation", True),
        )

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "TransitionTable":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        transitions = []
        for rule in self:
            entry = {
                "from": rule.from_state.value,
                "to": rule.to_state.value,
                "roles": sorted(rule.roles),
                "hooks": list(rule.hooks),
            }
            if rule.guards:
                entry["guards"] = list(rule.guards)
            transitions.append(entry)
        return {"version": self.version, "transitions": transitions}


def build_default_table(data_guards: bool = False) -> TransitionTable:
    """The stock lifecycle. ``data_guards`` adds the scheduling, work and billing checks."""
    if not data_guards:
        return TransitionTable.from_dict(DEFAULT_TABLE_DEFINITION)
    return TransitionTable.from_dict({**DEFAULT_TABLE_DEFINITION, "guards": DEFAULT_DATA_GUARDS})

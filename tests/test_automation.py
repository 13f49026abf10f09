from datetime import UTC, datetime, timedelta

import pytest

from fieldflow.automation.actions import ActionRegistry, invoice_amount
from fieldflow.automation.conditions import evaluate_condition, evaluate_conditions, get_nested_value
from fieldflow.automation.defaults import CANCELLED_RULE_ID, COMPLETED_RULE_ID
from fieldflow.automation.engine import AutomationEngine
from fieldflow.client import FieldFlowClient
from fieldflow.common.automation import AutomationRule, Condition, RunStatus
from fieldflow.common.events import Event
from fieldflow.common.exceptions import ActionLoadError, InvalidRule, InvalidTransition
from fieldflow.common.job import Actor, Job
from fieldflow.common.states import JobState
from fieldflow.config import Settings
from fieldflow.filters.builtin import RateLimitFilter
from fieldflow.storage.memory_storage import MemoryStorage
from tests import sample_actions

MANAGER = Actor(id="mia", roles=frozenset({"manager"}))

LINE_ITEMS = [
    {"description": "Oak removal", "price": 850, "selected": True},
    {"description": "Hedge trim", "price": 300, "selected": False},
]


@pytest.fixture
def client():
    ff = FieldFlowClient(settings=Settings(bus_partitions=0, action_timeout=5))
    yield ff
    ff.close()


def _complete(client, job):
    for target in ("scheduled", "in_progress", "completed"):
        client.request_transition(job.id, target, MANAGER)


def _engine(storage, registry, **kwargs):
    return AutomationEngine(storage, registry, **kwargs)


# --- Conditions ---


def test_nested_values_follow_dotted_paths():
    data = {"job": {"payload": {"line_items": [{"price": 10}]}}}
    assert get_nested_value(data, "job.payload.line_items.0.price") == 10
    assert get_nested_value(data, "job.missing.deeper") is None
    assert get_nested_value(data, "job.payload.line_items.5") is None


@pytest.mark.parametrize(
    "operator,field_value,expected_value,result",
    [
        ("equals", "completed", "completed", True),
        ("==", 5, "5", True),
        ("strict_equals", 5, "5", False),
        ("===", 5, 5, True),
        ("not_equals", "draft", "completed", True),
        ("greater_than", "12.5", 10, True),
        (">=", 10, 10, True),
        ("less_than", "abc", 10, False),
        ("<=", 3, 4, True),
        ("contains", "Oak Removal", "oak", True),
        ("not_contains", "Hedge", "oak", True),
        ("starts_with", "Emergency call", "emergency", True),
        ("ends_with", "stump.pdf", ".PDF", True),
        ("is_empty", [], None, True),
        ("is_not_empty", "x", None, True),
        ("in", "completed", ["completed", "cancelled"], True),
        ("in", "paid", "completed, cancelled", False),
        ("not_in", "paid", "completed,cancelled", True),
    ],
)
def test_condition_operators(operator, field_value, expected_value, result):
    condition = Condition("value", operator, expected_value)
    assert evaluate_condition(condition, {"value": field_value}) is result


def test_unknown_operator_never_matches():
    assert evaluate_condition(Condition("to_state", "matches_regex", ".*"), {"to_state": "x"}) is False


def test_empty_condition_list_matches_everything():
    assert evaluate_conditions([], {"anything": 1}) is True


def test_all_conditions_must_hold():
    conditions = [Condition("to_state", "equals", "completed"), Condition("amount", ">", 100)]
    assert evaluate_conditions(conditions, {"to_state": "completed", "amount": 150})
    assert not evaluate_conditions(conditions, {"to_state": "completed", "amount": 50})


# --- Canonical rules ---


def test_invoice_amount_sums_selected_items_and_stump_grinding():
    assert invoice_amount({"line_items": LINE_ITEMS, "stump_grinding_price": "150"}) == 1000.0
    assert invoice_amount({}) == 0.0


def test_canonical_rules_are_installed(client):
    rule_ids = {rule.id for rule in client.list_rules()}
    assert {COMPLETED_RULE_ID, CANCELLED_RULE_ID} <= rule_ids


def test_completed_job_gets_draft_invoice_and_active_client(client):
    job = client.create_job(
        client_id="client-1",
        payload={"line_items": LINE_ITEMS, "stump_grinding_price": 150},
    )

    _complete(client, job)

    invoice = client.invoices.find_by_job(job.id)
    assert invoice is not None
    assert invoice.amount == 1000.0
    assert invoice.status == "draft"
    assert invoice.due_date == datetime.now(UTC).date() + timedelta(days=30)
    assert client.clients.get_category("client-1") == "active"

    runs = client.get_automation_runs(rule_id=COMPLETED_RULE_ID, job_id=job.id)
    assert len(runs) == 1
    assert runs[0].status == RunStatus.SUCCEEDED
    assert [r.action for r in runs[0].action_results] == [
        "create_draft_invoice",
        "set_client_category",
    ]


def test_replayed_completion_event_does_not_duplicate_invoice(client):
    job = client.create_job(client_id="client-1", payload={"line_items": LINE_ITEMS})
    _complete(client, job)
    first = client.get_automation_runs(rule_id=COMPLETED_RULE_ID, job_id=job.id)[0]

    replay = Event(type=first.event_type, job_id=job.id, payload={
        "job_id": job.id,
        "to_state": "completed",
        "job": client.get_job(job.id).to_dict(),
    })
    client.bus.publish(replay)

    assert len(client.invoices.list_invoices()) == 1
    runs = client.get_automation_runs(rule_id=COMPLETED_RULE_ID, job_id=job.id)
    assert len(runs) == 2
    assert runs[-1].action_results[0].detail["created"] is False


def test_voided_invoice_round_trip_keeps_one_invoice(client):
    job = client.create_job(client_id="client-1", payload={"line_items": LINE_ITEMS})
    _complete(client, job)
    accountant = Actor(id="ada", roles=frozenset({"accounting"}))
    client.request_transition(job.id, "invoiced", accountant)
    client.request_transition(job.id, "completed", accountant, reason="void")

    assert len(client.invoices.list_invoices()) == 1


def test_cancelling_last_job_downgrades_client(client):
    client.clients.set_category("client-2", "active")
    first = client.create_job(client_id="client-2")
    second = client.create_job(client_id="client-2")

    client.request_transition(first.id, "cancelled", MANAGER)
    assert client.clients.get_category("client-2") == "active"
    run = client.get_automation_runs(rule_id=CANCELLED_RULE_ID, job_id=first.id)[0]
    assert run.action_results[0].detail["downgraded"] is False

    client.request_transition(second.id, "cancelled", MANAGER)
    assert client.clients.get_category("client-2") == "potential"


def test_property_scoped_downgrade_ignores_other_properties():
    ff = FieldFlowClient(settings=Settings(bus_partitions=0, downgrade_scope="client_property"))
    try:
        ff.clients.set_category("client-3", "active")
        ff.create_job(client_id="client-3", property_id="north-lot")
        job = ff.create_job(client_id="client-3", property_id="south-lot")

        ff.request_transition(job.id, "cancelled", MANAGER)

        assert ff.clients.get_category("client-3") == "potential"
    finally:
        ff.close()


def test_disabled_rule_does_not_fire(client):
    client.set_rule_enabled(COMPLETED_RULE_ID, False)
    job = client.create_job(client_id="client-1")

    _complete(client, job)

    assert client.invoices.find_by_job(job.id) is None
    assert client.get_automation_runs(rule_id=COMPLETED_RULE_ID) == []


def test_rule_edits_apply_to_the_next_event(client):
    job = client.create_job(client_id="client-1")
    client.save_rule(
        {
            "id": "quote-accepted",
            "trigger": "quote_accepted",
            "actions": [{"name": "notify", "config": {"recipient": "sales", "message": "Quote {quote_id} accepted"}}],
        }
    )

    client.publish("quote_accepted", {"quote_id": "Q-17", "job_id": job.id}, job_id=job.id)

    assert client.notifier.sent[-1]["message"] == "Quote Q-17 accepted"
    assert client.notifier.sent[-1]["recipient"] == "sales"


# --- Engine behaviour ---


def test_failing_action_does_not_stop_the_rest():
    sample_actions.CALLS.clear()
    storage = MemoryStorage()
    registry = ActionRegistry()
    registry.register("fail", sample_actions.failing_action)
    storage.save_rule(
        AutomationRule(
            trigger="ping",
            actions=["fail", "tests.sample_actions:record_action"],
        )
    )
    engine = _engine(storage, registry)
    try:
        runs = engine.on_event(Event(type="ping", job_id="job-1", payload={"job_id": "job-1"}))
    finally:
        engine.shutdown()

    assert len(runs) == 1
    run = runs[0]
    assert run.status == RunStatus.PARTIALLY_FAILED
    assert run.action_results[0].success is False
    assert "designed to fail" in run.action_results[0].error
    assert run.action_results[1].success is True
    assert sample_actions.CALLS == [("job-1", {})]
    assert storage.find_automation_runs(event_id=runs[0].event_id)[0].id == run.id


def test_slow_action_is_cut_off_by_the_timeout():
    storage = MemoryStorage()
    registry = ActionRegistry()
    registry.register("slow", sample_actions.slow_action)
    storage.save_rule(AutomationRule(trigger="ping", actions=[{"name": "slow", "config": {"seconds": 1.0}}]))
    engine = _engine(storage, registry, action_timeout=0.1)
    try:
        run = engine.on_event(Event(type="ping"))[0]
    finally:
        engine.shutdown(wait=False)

    assert run.status == RunStatus.FAILED
    result = run.action_results[0]
    assert result.timed_out is True
    assert "timed out" in result.error


def test_unknown_action_is_recorded_as_failure():
    storage = MemoryStorage()
    storage.save_rule(AutomationRule(trigger="ping", actions=["no_such_action"]))
    engine = _engine(storage, ActionRegistry())
    try:
        run = engine.on_event(Event(type="ping"))[0]
    finally:
        engine.shutdown()

    assert run.status == RunStatus.FAILED
    assert "no_such_action" in run.action_results[0].error


def test_registry_loads_dotted_references_and_action_classes():
    registry = ActionRegistry()
    action = registry.get("tests.sample_actions:EchoAction")
    assert action.execute({"to_state": "paid"}, {}) == {"echo": "paid"}
    assert "tests.sample_actions:EchoAction" in registry

    with pytest.raises(ActionLoadError):
        registry.get("tests.sample_actions:missing")


def test_registry_register_as_decorator():
    registry = ActionRegistry()

    @registry.register("shout")
    def shout(payload, config):
        return {"said": payload["word"].upper()}

    assert registry.get("shout").execute({"word": "hi"}, {}) == {"said": "HI"}
    assert registry.names() == ["shout"]


def test_rate_limit_caps_firings_per_job():
    storage = MemoryStorage()
    registry = ActionRegistry()
    registry.register("noop", lambda payload, config: None)
    rule = storage.save_rule(
        AutomationRule(trigger="ping", actions=["noop"], max_firings=2, window_seconds=60)
    )
    engine = _engine(storage, registry)
    try:
        statuses = [
            engine.on_event(Event(type="ping", job_id="job-1"))[0].status for _ in range(3)
        ]
        other_job = engine.on_event(Event(type="ping", job_id="job-2"))[0].status
    finally:
        engine.shutdown()

    assert statuses == [RunStatus.SUCCEEDED, RunStatus.SUCCEEDED, RunStatus.RATE_LIMITED]
    assert other_job == RunStatus.SUCCEEDED
    limited = storage.find_automation_runs(rule_id=rule.id, job_id="job-1")[-1]
    assert limited.action_results == []
    assert "limit 2" in limited.reason


def test_rate_limit_window_slides():
    storage = MemoryStorage()
    registry = ActionRegistry()
    registry.register("noop", lambda payload, config: None)
    storage.save_rule(AutomationRule(trigger="ping", actions=["noop"], max_firings=1, window_seconds=60))
    later = datetime.now(UTC) + timedelta(minutes=5)

    now_engine = _engine(storage, registry)
    later_engine = _engine(storage, registry, filters=[RateLimitFilter(clock=lambda: later)])
    try:
        assert now_engine.on_event(Event(type="ping", job_id="job-1"))[0].status == RunStatus.SUCCEEDED
        assert now_engine.on_event(Event(type="ping", job_id="job-1"))[0].status == RunStatus.RATE_LIMITED
        assert later_engine.on_event(Event(type="ping", job_id="job-1"))[0].status == RunStatus.SUCCEEDED
    finally:
        now_engine.shutdown()
        later_engine.shutdown()


def test_events_without_matching_trigger_produce_no_runs():
    storage = MemoryStorage()
    storage.save_rule(AutomationRule(trigger="ping", actions=["noop"]))
    engine = _engine(storage, ActionRegistry())
    try:
        assert engine.on_event(Event(type="pong")) == []
    finally:
        engine.shutdown()
    assert storage.find_automation_runs() == []


def test_automation_runs_on_partitioned_bus():
    ff = FieldFlowClient(settings=Settings(bus_partitions=2))
    try:
        ff.start()
        job = ff.create_job(Job(client_id="client-9"))
        _complete(ff, job)
        assert ff.wait_for_automation(timeout=5)
        assert ff.invoices.find_by_job(job.id) is not None
        assert ff.clients.get_category("client-9") == "active"
    finally:
        ff.close()


def test_quote_to_completion_scenario(client):
    sales = Actor(id="sam", roles=frozenset({"sales"}))
    crew = Actor(id="carl", roles=frozenset({"crew"}))
    job = client.create_job(client_id="client-42", payload={"line_items": LINE_ITEMS})

    assert client.request_transition(job.id, "Scheduled", sales).state == JobState.SCHEDULED
    history = client.get_transition_history(job.id)
    assert [(t.from_state, t.to_state) for t in history] == [(JobState.DRAFT, JobState.SCHEDULED)]

    with pytest.raises(InvalidTransition):
        client.request_transition(job.id, "Completed", crew)

    client.request_transition(job.id, "InProgress", crew)
    client.request_transition(job.id, "Completed", crew)

    invoices = client.invoices.list_invoices()
    assert [invoice.job_id for invoice in invoices] == [job.id]
    assert invoices[0].amount == 850.0
    assert client.clients.get_category("client-42") == "active"


def test_automation_survives_close_and_restart():
    ff = FieldFlowClient(settings=Settings(bus_partitions=1))
    try:
        ff.start()
        ff.close()
        ff.start()
        job = ff.create_job(client_id="client-10")
        _complete(ff, job)
        assert ff.wait_for_automation(timeout=5)

        runs = ff.get_automation_runs(job_id=job.id, rule_id=COMPLETED_RULE_ID)
        assert [run.status for run in runs] == [RunStatus.SUCCEEDED]
        assert len(ff.invoices.list_invoices()) == 1
    finally:
        ff.close()


def test_transition_job_action_requests_a_system_transition(client):
    client.save_rule(
        {
            "id": "auto-start",
            "trigger": "job_transitioned",
            "conditions": [{"field": "to_state", "value": "scheduled"}],
            "actions": [
                {"name": "transition_job", "config": {"to_state": "en_route", "roles": ["crew"]}}
            ],
        }
    )
    job = client.create_job(client_id="client-11")

    client.request_transition(job.id, "scheduled", MANAGER)

    assert client.get_job(job.id).state == JobState.EN_ROUTE
    automated = client.get_transition_history(job.id)[-1]
    assert automated.system_triggered is True
    assert automated.actor_id == "automation"
    assert automated.actor_role == "crew"


def test_transition_job_action_without_required_role_fails_the_run(client):
    client.save_rule(
        {
            "id": "auto-start",
            "trigger": "job_transitioned",
            "conditions": [{"field": "to_state", "value": "scheduled"}],
            "actions": [{"name": "transition_job", "config": {"to_state": "en_route"}}],
        }
    )
    job = client.create_job(client_id="client-12")

    client.request_transition(job.id, "scheduled", MANAGER)

    assert client.get_job(job.id).state == JobState.SCHEDULED
    (run,) = client.get_automation_runs(rule_id="auto-start")
    assert run.status == RunStatus.FAILED
    assert "may not move job" in run.action_results[0].error


def test_rate_limit_stops_an_automation_ping_pong():
    ff = FieldFlowClient(settings=Settings(bus_partitions=1, action_timeout=5))
    for rule_id, source, target in (
        ("hold-on-schedule", "scheduled", "weather_hold"),
        ("reschedule-on-hold", "weather_hold", "scheduled"),
    ):
        ff.save_rule(
            {
                "id": rule_id,
                "trigger": "job_transitioned",
                "conditions": [{"field": "to_state", "value": source}],
                "actions": [
                    {
                        "name": "transition_job",
                        "config": {"to_state": target, "roles": ["manager"], "reason": "rain"},
                    }
                ],
                "max_firings": 2,
                "window_seconds": 3600,
            }
        )
    try:
        ff.start()
        job = ff.create_job(client_id="client-13")
        ff.request_transition(job.id, "scheduled", MANAGER)
        assert ff.wait_for_automation(timeout=10)

        history = ff.get_transition_history(job.id)
        assert len(history) == 5
        assert [t.system_triggered for t in history] == [False, True, True, True, True]
        assert ff.get_job(job.id).state == JobState.SCHEDULED

        hold_runs = ff.get_automation_runs(rule_id="hold-on-schedule")
        assert sorted(run.status.value for run in hold_runs) == [
            "rate_limited",
            "succeeded",
            "succeeded",
        ]
        reschedule_runs = ff.get_automation_runs(rule_id="reschedule-on-hold")
        assert [run.status for run in reschedule_runs] == [RunStatus.SUCCEEDED] * 2
    finally:
        ff.close()


def test_delayed_actions_are_rejected():
    with pytest.raises(InvalidRule):
        AutomationRule.from_dict(
            {
                "trigger": "job_transitioned",
                "actions": [{"name": "notify", "delay_minutes": 30}],
            }
        )


def test_list_jobs_accepts_api_state_spellings(client):
    job = client.create_job(client_id="client-14")
    client.create_job(client_id="client-14")
    client.request_transition(job.id, "scheduled", MANAGER)
    client.request_transition(job.id, "InProgress", MANAGER)

    assert [j.id for j in client.list_jobs(state="InProgress")] == [job.id]
    assert [j.id for j in client.list_jobs(client_id="client-14", state="In Progress")] == [job.id]

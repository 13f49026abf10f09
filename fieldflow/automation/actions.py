# fieldflow/automation/actions.py
import inspect
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Union

from fieldflow.collaborators import ClientCategory, ClientDirectory, InvoiceService, Notifier
from fieldflow.common.automation import ActionResult
from fieldflow.common.exceptions import ActionLoadError
from fieldflow.common.job import Actor, Role
from fieldflow.common.states import JobState
from fieldflow.execution.performer import load_action

logger = logging.getLogger(__name__)


class Action(ABC):
    """A named side effect run by the automation engine.

    ``execute`` may return an ActionResult, a dict, a bool or None; raising
    marks the action failed. Actions must be safe to run twice for the same
    event since a replayed event fires its rules again.
    """

    name: str = ""

    @abstractmethod
    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> Any: ...


class FunctionAction(Action):
    def __init__(self, func: Callable[[Dict[str, Any], Dict[str, Any]], Any], name: Optional[str] = None):
        self.func = func
        self.name = name or func.__name__

    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> Any:
        return self.func(payload, config)


class ActionRegistry:
    """Maps action names to handlers; unregistered ``module:attribute`` names are imported."""

    def __init__(self):
        self._actions: Dict[str, Action] = {}
        self._lock = threading.Lock()

    def register(self, name: str, action: Union[Action, Callable, None] = None):
        if action is None:
            def decorator(target):
                self.register(name, target)
                return target

            return decorator

        resolved = self._as_action(name, action)
        with self._lock:
            if name in self._actions:
                logger.info("Replacing registered action '%s'", name)
            self._actions[name] = resolved
        return action

    def get(self, name: str) -> Action:
        with self._lock:
            action = self._actions.get(name)
        if action is not None:
            return action
        if ":" not in name:
            raise ActionLoadError(f"Unknown action '{name}'")
        action = self._as_action(name, load_action(name))
        with self._lock:
            self._actions.setdefault(name, action)
        return action

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._actions)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._actions

    @staticmethod
    def _as_action(name: str, target: Any) -> Action:
        if isinstance(target, Action):
            return target
        if inspect.isclass(target) and issubclass(target, Action):
            return target()
        if callable(target):
            return FunctionAction(target, name=name)
        raise ActionLoadError(f"Action '{name}' is not callable")


def _job_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    return payload.get("job") or {}


def _job_id_of(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("job_id") or _job_of(payload).get("id")


def invoice_amount(job_payload: Dict[str, Any]) -> float:
    """Sum of the selected line items plus any stump grinding price."""
    total = 0.0
    for item in job_payload.get("line_items") or []:
        if not isinstance(item, dict) or not item.get("selected", True):
            continue
        try:
            total += float(item.get("price", item.get("amount")) or 0)
        except (TypeError, ValueError):
            logger.warning("Ignoring line item with non-numeric price: %r", item)
    try:
        total += float(job_payload.get("stump_grinding_price") or 0)
    except (TypeError, ValueError):
        pass
    return round(total, 2)


class CreateDraftInvoiceAction(Action):
    name = "create_draft_invoice"

    def __init__(self, invoices: InvoiceService):
        self.invoices = invoices

    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> ActionResult:
        job_id = _job_id_of(payload)
        if not job_id:
            return ActionResult(self.name, success=False, error="Event carries no job id")

        existing = self.invoices.find_by_job(job_id)
        if existing is not None:
            logger.info("Job %s already has invoice %s; nothing to do", job_id, existing.id)
            return ActionResult(
                self.name,
                success=True,
                detail={"invoice_id": existing.id, "created": False},
            )

        job = _job_of(payload)
        job_payload = job.get("payload") or {}
        amount = config.get("amount")
        if amount is None:
            amount = invoice_amount(job_payload)
        line_items = [
            {"description": config.get("description", "Field service"), "price": amount}
        ]
        invoice = self.invoices.create_draft(
            job_id=job_id,
            client_id=job.get("client_id"),
            amount=float(amount),
            line_items=line_items,
            due_in_days=int(config.get("due_in_days", 30)),
        )
        return ActionResult(
            self.name,
            success=True,
            detail={"invoice_id": invoice.id, "created": True, "amount": invoice.amount},
        )


class SetClientCategoryAction(Action):
    name = "set_client_category"

    def __init__(self, clients: ClientDirectory):
        self.clients = clients

    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> ActionResult:
        client_id = _job_of(payload).get("client_id")
        if not client_id:
            return ActionResult(self.name, success=False, error="Job has no client")
        category = ClientCategory(config.get("category", ClientCategory.ACTIVE.value)).value
        previous = self.clients.get_category(client_id)
        if previous != category:
            self.clients.set_category(client_id, category)
        return ActionResult(
            self.name,
            success=True,
            detail={"client_id": client_id, "category": category, "previous": previous},
        )


class DowngradeClientCategoryAction(Action):
    """Moves a client back to ``potential`` once it has no other live job.

    ``scope`` decides what counts as another job: ``client`` looks at every job
    of the client, ``client_property`` only at jobs on the same property.
    """

    name = "downgrade_client_category"
    SCOPES = ("client", "client_property")

    def __init__(self, clients: ClientDirectory, jobs):
        self.clients = clients
        self.jobs = jobs

    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> ActionResult:
        job = _job_of(payload)
        job_id = _job_id_of(payload)
        client_id = job.get("client_id")
        if not client_id:
            return ActionResult(self.name, success=False, error="Job has no client")

        scope = config.get("scope", "client")
        if scope not in self.SCOPES:
            return ActionResult(self.name, success=False, error=f"Unknown scope '{scope}'")
        property_id = job.get("property_id") if scope == "client_property" else None

        others = [
            other.id
            for other in self.jobs.list_jobs(client_id=client_id, property_id=property_id)
            if other.id != job_id and other.state != JobState.CANCELLED
        ]
        if others:
            return ActionResult(
                self.name,
                success=True,
                detail={
                    "client_id": client_id,
                    "downgraded": False,
                    "other_jobs": len(others),
                    "scope": scope,
                },
            )

        category = config.get("category", ClientCategory.POTENTIAL.value)
        self.clients.set_category(client_id, category)
        return ActionResult(
            self.name,
            success=True,
            detail={"client_id": client_id, "downgraded": True, "category": category, "scope": scope},
        )


class NotifyAction(Action):
    name = "notify"

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> ActionResult:
        values = defaultdict(str, payload)
        values.update({f"job_{k}": v for k, v in _job_of(payload).items()})
        recipient = config.get("recipient", "office").format_map(values)
        message = config.get("message", "Job {job_id} is now {to_state}").format_map(values)
        self.notifier.send(recipient, message, job_id=_job_id_of(payload))
        return ActionResult(self.name, success=True, detail={"recipient": recipient})


class TransitionJobAction(Action):
    """Requests a transition on the event's job through the state machine.

    The request is made by a system actor, so it is audited as
    ``system_triggered`` and passes through the same table, role and data
    guards as a user request. ``roles`` in the config grants the actor the
    roles the edge requires.
    """

    name = "transition_job"

    def __init__(self, machine):
        self.machine = machine

    def execute(self, payload: Dict[str, Any], config: Dict[str, Any]) -> ActionResult:
        job_id = config.get("job_id") or _job_id_of(payload)
        if not job_id:
            return ActionResult(self.name, success=False, error="Event carries no job id")
        to_state = config.get("to_state")
        if not to_state:
            return ActionResult(self.name, success=False, error="Config has no to_state")

        actor = Actor(
            id=config.get("actor_id", "automation"),
            roles=frozenset(config.get("roles") or [Role.SYSTEM.value]),
            system=True,
        )
        result = self.machine.request_transition(
            job_id, to_state, actor, reason=config.get("reason", "automation")
        )
        return ActionResult(
            self.name,
            success=True,
            detail={
                "job_id": job_id,
                "from_state": result.transition.from_state.value,
                "to_state": result.state.value,
                "transition_id": result.transition_id,
            },
        )


def build_default_registry(
    invoices: InvoiceService,
    clients: ClientDirectory,
    notifier: Notifier,
    jobs,
    machine=None,
) -> ActionRegistry:
    registry = ActionRegistry()
    registry.register(CreateDraftInvoiceAction.name, CreateDraftInvoiceAction(invoices))
    registry.register(SetClientCategoryAction.name, SetClientCategoryAction(clients))
    registry.register(
        DowngradeClientCategoryAction.name, DowngradeClientCategoryAction(clients, jobs)
    )
    registry.register(NotifyAction.name, NotifyAction(notifier))
    if machine is not None:
        registry.register(TransitionJobAction.name, TransitionJobAction(machine))
    return registry

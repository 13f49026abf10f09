"""FastAPI integration helpers for FieldFlow."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

try:
    from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
    from fastapi.responses import JSONResponse
    from pydantic import BaseModel, Field
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install fastapi`."
    ) from exc

from fieldflow.client import FieldFlowClient
from fieldflow.common.automation import AutomationRule
from fieldflow.common.exceptions import FieldFlowException
from fieldflow.common.job import Actor
from fieldflow.integrations.errors import status_code_for

logger = logging.getLogger(__name__)


class TransitionRequest(BaseModel):
    to_state: str
    reason: Optional[str] = None


class JobRequest(BaseModel):
    client_id: Optional[str] = None
    property_id: Optional[str] = None
    quote_id: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    assigned_crew: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)


class RuleRequest(BaseModel):
    trigger: str
    name: str = ""
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    actions: List[Any] = Field(default_factory=list)
    enabled: bool = True
    max_firings: int = 0
    window_seconds: int = 3600


class RecurrenceRunRequest(BaseModel):
    today: Optional[date] = None


def get_client(request: Request) -> FieldFlowClient:
    return request.app.state.fieldflow_client


def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_roles: str = Header(default=""),
) -> Actor:
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header is required")
    roles = [role.strip() for role in x_actor_roles.split(",") if role.strip()]
    return Actor(id=x_actor_id, roles=frozenset(roles))


async def fieldflow_exception_handler(request: Request, exc: FieldFlowException) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("Request %s failed", request.url.path, exc_info=exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_router() -> APIRouter:
    router = APIRouter()

    @router.post("/jobs", status_code=201)
    def create_job(body: JobRequest, client: FieldFlowClient = Depends(get_client)):
        job = client.create_job(**body.model_dump())
        return job.to_dict()

    @router.get("/jobs/{job_id}")
    def get_job(job_id: str, client: FieldFlowClient = Depends(get_client)):
        return client.get_job(job_id).to_dict()

    @router.post("/jobs/{job_id}/transitions")
    def request_transition(
        job_id: str,
        body: TransitionRequest,
        actor: Actor = Depends(get_actor),
        client: FieldFlowClient = Depends(get_client),
    ):
        result = client.request_transition(job_id, body.to_state, actor, body.reason)
        return {
            "state": result.state.value,
            "transition_id": result.transition_id,
            "transition": result.transition.to_dict(),
        }

    @router.get("/jobs/{job_id}/allowed-transitions")
    def allowed_transitions(
        job_id: str,
        actor: Actor = Depends(get_actor),
        client: FieldFlowClient = Depends(get_client),
    ):
        return [state.value for state in client.get_allowed_transitions(job_id, actor)]

    @router.get("/jobs/{job_id}/transition-options")
    def transition_options(
        job_id: str,
        actor: Actor = Depends(get_actor),
        client: FieldFlowClient = Depends(get_client),
    ):
        return [option.to_dict() for option in client.get_transition_options(job_id, actor)]

    @router.get("/jobs/{job_id}/transitions")
    def transition_history(job_id: str, client: FieldFlowClient = Depends(get_client)):
        return [t.to_dict() for t in client.get_transition_history(job_id)]

    @router.get("/automation/rules")
    def list_rules(trigger: Optional[str] = None, client: FieldFlowClient = Depends(get_client)):
        return [rule.to_dict() for rule in client.list_rules(trigger)]

    @router.post("/automation/rules", status_code=201)
    def create_rule(body: RuleRequest, client: FieldFlowClient = Depends(get_client)):
        return client.save_rule(AutomationRule.from_dict(body.model_dump())).to_dict()

    @router.put("/automation/rules/{rule_id}")
    def update_rule(rule_id: str, body: RuleRequest, client: FieldFlowClient = Depends(get_client)):
        existing = client.get_rule(rule_id)
        rule = AutomationRule.from_dict({**body.model_dump(), "id": rule_id})
        rule.created_at = existing.created_at
        return client.save_rule(rule).to_dict()

    @router.delete("/automation/rules/{rule_id}", status_code=204)
    def delete_rule(rule_id: str, client: FieldFlowClient = Depends(get_client)):
        client.delete_rule(rule_id)

    @router.get("/automation/runs")
    def list_runs(
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: Optional[int] = 100,
        client: FieldFlowClient = Depends(get_client),
    ):
        runs = client.get_automation_runs(
            rule_id=rule_id, event_id=event_id, job_id=job_id, limit=limit
        )
        return [run.to_dict() for run in runs]

    @router.post("/recurrence/run")
    def run_recurrence(
        body: Optional[RecurrenceRunRequest] = None,
        client: FieldFlowClient = Depends(get_client),
    ):
        report = client.run_recurrence(body.today if body else None)
        return {
            "run_date": report.run_date.isoformat(),
            "created_instances": report.created_instances,
            "materialized_jobs": report.materialized_jobs,
            "skipped_series": report.skipped_series,
            "job_ids": report.job_ids,
        }

    return router


class FieldFlowFastAPIPlugin:
    def __init__(self, app: FastAPI, client: FieldFlowClient, prefix: str = ""):
        self.app = app
        self.client = client
        app.state.fieldflow_client = client
        app.include_router(create_router(), prefix=prefix)
        app.add_exception_handler(FieldFlowException, fieldflow_exception_handler)

    def get_client(self) -> FieldFlowClient:
        return self.client


def fieldflow_lifespan(client: FieldFlowClient, run_recurrence_worker: bool = False):
    """Starts the bus (and optionally the recurrence worker) with the app, stops them after."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client.start(run_recurrence_worker=run_recurrence_worker)
        try:
            yield
        finally:
            client.close()

    return lifespan


def add_fieldflow_to_fastapi(
    app: FastAPI, client: FieldFlowClient, prefix: str = ""
) -> FieldFlowFastAPIPlugin:
    return FieldFlowFastAPIPlugin(app, client, prefix=prefix)


def create_app(client: FieldFlowClient, run_recurrence_worker: bool = False) -> FastAPI:
    app = FastAPI(
        title="FieldFlow",
        lifespan=fieldflow_lifespan(client, run_recurrence_worker),
    )
    add_fieldflow_to_fastapi(app, client)
    return app

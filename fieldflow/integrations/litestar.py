"""Litestar integration helpers for FieldFlow."""

from __future__ import annotations

import logging
from typing import Any, Dict

try:
    from litestar import Litestar, Request, Response
    from litestar.datastructures import State
    from litestar.di import Provide
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install litestar`."
    ) from exc

from fieldflow.client import FieldFlowClient
from fieldflow.common.exceptions import FieldFlowException
from fieldflow.integrations.errors import status_code_for

logger = logging.getLogger(__name__)


def get_fieldflow_client(state: State) -> FieldFlowClient:
    return state.fieldflow_client


def fieldflow_dependency() -> Provide:
    return Provide(get_fieldflow_client, sync_to_thread=False)


def fieldflow_exception_handler(request: Request, exc: FieldFlowException) -> Response:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("Request %s failed", request.url.path, exc_info=exc)
    return Response(content=exc.to_dict(), status_code=status_code)


def fieldflow_exception_handlers() -> Dict[Any, Any]:
    """Pass to ``Litestar(exception_handlers=...)`` to map FieldFlow errors to HTTP statuses."""
    return {FieldFlowException: fieldflow_exception_handler}


def configure_fieldflow(app: Litestar, client: FieldFlowClient) -> FieldFlowClient:
    """Expose ``client`` through app state and tie the event bus to the app's lifespan."""
    app.state.fieldflow_client = client
    app.on_startup.append(lambda: client.start())
    app.on_shutdown.append(lambda: client.close())
    return client

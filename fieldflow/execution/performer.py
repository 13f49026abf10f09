# fieldflow/execution/performer.py
import importlib
import logging
import time
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from typing import Any, Dict, Optional

from fieldflow.common.automation import ActionResult
from fieldflow.common.exceptions import ActionLoadError, ActionTimeout

logger = logging.getLogger(__name__)


def load_action(reference: str) -> Any:
    """Dynamically imports an action given as ``module:attribute`` (or ``module.attribute``)."""
    if ":" in reference:
        module_name, attr_name = reference.split(":", 1)
    else:
        module_name, _, attr_name = reference.rpartition(".")
    if not module_name or not attr_name:
        raise ActionLoadError(f"Could not load action target: {reference}")
    try:
        module = importlib.import_module(module_name)
        target = module
        for part in attr_name.split("."):
            target = getattr(target, part)
        return target
    except (ImportError, AttributeError) as e:
        raise ActionLoadError(f"Could not load action target: {reference}") from e


def perform_action(
    name: str,
    action: Any,
    payload: Dict[str, Any],
    config: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    executor: Optional[Executor] = None,
) -> ActionResult:
    """Runs one action and converts every outcome, including errors, into an ActionResult."""
    config = dict(config or {})
    started = time.monotonic()
    try:
        if executor is None:
            outcome = action.execute(payload, config)
        else:
            future = executor.submit(action.execute, payload, config)
            try:
                outcome = future.result(timeout=timeout)
            except FutureTimeout:
                future.cancel()
                error = ActionTimeout(name, timeout)
                logger.error("Action %s timed out after %ss", name, timeout)
                return ActionResult(
                    action=name,
                    success=False,
                    error=error.message,
                    timed_out=True,
                    duration_ms=(time.monotonic() - started) * 1000,
                )
        result = ActionResult.coerce(name, outcome)
    except Exception as e:
        logger.error("Action %s failed.", name, exc_info=True)
        result = ActionResult(
            action=name,
            success=False,
            error=f"{type(e).__name__}: {e}",
        )
    result.duration_ms = (time.monotonic() - started) * 1000
    return result

# fieldflow/common/exceptions.py
from typing import Any, Dict, Iterable, Optional


class FieldFlowException(Exception):
    """Base exception for the FieldFlow library."""

    error_code = "FIELDFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(FieldFlowException):
    """Raised for an invalid transition table, settings or generator setup."""

    error_code = "CONFIGURATION_ERROR"


class JobNotFound(FieldFlowException):
    error_code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", {"job_id": job_id})
        self.job_id = job_id


class InvalidTransition(FieldFlowException):
    """The requested edge is not in the transition table. Never retried."""

    error_code = "INVALID_TRANSITION"

    def __init__(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: Any,
        message: Optional[str] = None,
    ):
        from_value = getattr(from_state, "value", from_state)
        to_value = getattr(to_state, "value", to_state)
        super().__init__(
            message or f"Transition from '{from_value}' to '{to_value}' is not allowed",
            {"job_id": job_id, "from_state": from_value, "to_state": to_value},
        )
        self.job_id = job_id
        self.from_state = from_value
        self.to_state = to_value


class Forbidden(FieldFlowException):
    """The actor holds none of the roles the transition rule requires."""

    error_code = "FORBIDDEN"

    def __init__(
        self,
        job_id: str,
        from_state: Any,
        to_state: Any,
        actor_id: str,
        required_roles: Iterable[str],
    ):
        from_value = getattr(from_state, "value", from_state)
        to_value = getattr(to_state, "value", to_state)
        required = sorted(required_roles)
        super().__init__(
            f"Actor {actor_id} may not move job {job_id} from '{from_value}' "
            f"to '{to_value}' (requires one of: {', '.join(required)})",
            {
                "job_id": job_id,
                "from_state": from_value,
                "to_state": to_value,
                "actor_id": actor_id,
                "required_roles": required,
            },
        )
        self.required_roles = required


class ConcurrentModification(FieldFlowException):
    """Lock contention or a lost compare-and-set. Safe to retry with backoff."""

    error_code = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, job_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Job {job_id} is being modified concurrently, retry later",
            {"job_id": job_id},
        )
        self.job_id = job_id


class ActionFailed(FieldFlowException):
    error_code = "ACTION_FAILED"

    def __init__(self, action: str, message: str):
        super().__init__(f"Action {action} failed: {message}", {"action": action})
        self.action = action


class ActionTimeout(ActionFailed):
    error_code = "ACTION_TIMEOUT"

    def __init__(self, action: str, timeout: float):
        super().__init__(action, f"timed out after {timeout}s")
        self.timeout = timeout


class ActionLoadError(FieldFlowException):
    """Raised when an action name or reference cannot be resolved."""

    error_code = "ACTION_LOAD_ERROR"


class RuleNotFound(FieldFlowException):
    error_code = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        super().__init__(f"Automation rule {rule_id} not found", {"rule_id": rule_id})


class SeriesNotFound(FieldFlowException):
    error_code = "SERIES_NOT_FOUND"

    def __init__(self, series_id: str):
        super().__init__(f"Recurring series {series_id} not found", {"series_id": series_id})


class InstanceNotFound(FieldFlowException):
    error_code = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        super().__init__(
            f"Recurring instance {instance_id} not found", {"instance_id": instance_id}
        )


class InstanceMaterialized(FieldFlowException):
    """A materialized recurring instance can no longer change status."""

    error_code = "INSTANCE_MATERIALIZED"

    def __init__(self, instance_id: str):
        super().__init__(
            f"Recurring instance {instance_id} was already turned into a job",
            {"instance_id": instance_id},
        )


class GuardFailed(FieldFlowException):
    """The edge exists and the actor may take it, but the job's data does not allow it yet."""

    error_code = "GUARD_FAILED"

    def __init__(self, job_id: str, from_state: Any, to_state: Any, reasons: Iterable[str]):
        from_value = getattr(from_state, "value", from_state)
        to_value = getattr(to_state, "value", to_state)
        reasons = list(reasons)
        super().__init__(
            f"Job {job_id} cannot move from '{from_value}' to '{to_value}': {'; '.join(reasons)}",
            {
                "job_id": job_id,
                "from_state": from_value,
                "to_state": to_value,
                "blocked_reasons": reasons,
            },
        )
        self.blocked_reasons = reasons


class InvalidRule(FieldFlowException):
    """An automation rule definition that the engine cannot run as written."""

    error_code = "INVALID_RULE"

# fieldflow/integrations/errors.py
from fieldflow.common.exceptions import (
    ConcurrentModification,
    ConfigurationError,
    FieldFlowException,
    Forbidden,
    GuardFailed,
    InstanceMaterialized,
    InstanceNotFound,
    InvalidTransition,
    JobNotFound,
    RuleNotFound,
    SeriesNotFound,
)

STATUS_CODES = {
    JobNotFound: 404,
    RuleNotFound: 404,
    SeriesNotFound: 404,
    InstanceNotFound: 404,
    InvalidTransition: 409,
    InstanceMaterialized: 409,
    Forbidden: 403,
    GuardFailed: 422,
    ConcurrentModification: 423,
    ConfigurationError: 500,
}


def status_code_for(exc: FieldFlowException) -> int:
    """HTTP status for ``exc``, resolved through its class hierarchy; 400 by default."""
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400

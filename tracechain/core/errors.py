"""
Domain-specific exceptions for the TraceChain registry.

These exceptions represent business logic violations and are mapped
to appropriate HTTP status codes in the API layer.
"""

from typing import Any


class TraceChainError(Exception):
    """Base exception for all registry domain errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(TraceChainError):
    """
    Raised when input data fails validation.

    Examples:
    - Empty name, batch key or location
    - valid_until not after valid_from
    - Batch larger than the configured maximum
    - Evidence text too long, confidence outside 0-100

    HTTP Status: 400 Bad Request
    """

    pass


class NotFoundError(TraceChainError):
    """
    Raised when a requested resource does not exist.

    Examples:
    - Unknown entity id or batch key
    - Unknown rule id
    - Checkpoint sequence or check index out of range

    HTTP Status: 404 Not Found
    """

    pass


class UnauthorizedError(TraceChainError):
    """
    Raised when the caller cannot be identified.

    Examples:
    - Missing bearer token
    - Invalid or expired token

    HTTP Status: 401 Unauthorized
    """

    pass


class AuthorizationError(TraceChainError):
    """
    Raised when an identified actor may not perform the mutation.

    Examples:
    - Actor not in the entity's authorization set
    - Owner/admin-only operation called by someone else
    - Rule catalog change by a non-admin

    HTTP Status: 403 Forbidden
    """

    pass


class ConflictError(TraceChainError):
    """
    Raised when an operation conflicts with existing data.

    Examples:
    - Duplicate batch key
    - Actor already authorized, or adding oneself
    - Rule id collision
    - Removing the owner from the authorization set

    HTTP Status: 409 Conflict
    """

    pass


class StateError(TraceChainError):
    """
    Raised when the target is not in a state that allows the operation.

    Examples:
    - Adding a checkpoint to an inactive entity
    - Deactivating an already inactive entity
    - Recording a check against an inactive rule
    - Any mutation while the registry is paused

    HTTP Status: 409 Conflict
    """

    pass


class ConfidenceThresholdError(TraceChainError):
    """
    Raised when a check on a critical-severity rule has too little confidence.

    HTTP Status: 422 Unprocessable Entity
    """

    pass


# HTTP Status Code Mapping
ERROR_STATUS_MAP = {
    ValidationError: 400,
    UnauthorizedError: 401,
    AuthorizationError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StateError: 409,
    ConfidenceThresholdError: 422,
}


def get_status_code(error: Exception) -> int:
    """
    Get the HTTP status code for a given exception.

    Subclasses inherit the status code of their nearest mapped base class.

    Args:
        error: The exception instance

    Returns:
        HTTP status code (defaults to 500 for unknown errors)
    """
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS_MAP:
            return ERROR_STATUS_MAP[error_type]
    return 500

"""
Exception hierarchy for the swap service

Every expected failure is raised as an ``AppException`` subclass carrying the
HTTP status it maps to; ``slotswap.main`` renders them as ``{"error": message}``.

Exception Hierarchy:
    AppException (base, 500)
    ├── ValidationException (400)
    ├── AuthenticationException (401)
    ├── ForbiddenException (403)
    ├── NotFoundException (404)
    ├── InvalidOperationException (400)
    │   └── InvalidStateException (400)
    ├── ConflictException (409)
    └── ConsistencyException (500)
"""
from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception for all application errors

    Attributes:
        status_code: HTTP status code for the error
        error_type: String identifier for the error type
        message: Human-readable error message
        details: Additional context about the error
    """
    status_code = 500
    error_type = 'ApplicationError'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'error': self.message,
            'type': self.error_type,
        }
        if self.details:
            result.update(self.details)
        return result

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}('{self.message}', status_code={self.status_code})>"


class ValidationException(AppException):
    """Request data failed validation (HTTP 400)."""
    status_code = 400
    error_type = 'ValidationError'


class AuthenticationException(AppException):
    """Missing or invalid credentials (HTTP 401)."""
    status_code = 401
    error_type = 'AuthenticationError'


class ForbiddenException(AppException):
    """Caller does not own the slot or request it is acting on (HTTP 403)."""
    status_code = 403
    error_type = 'ForbiddenError'


class NotFoundException(AppException):
    """Slot or swap request does not exist (HTTP 404)."""
    status_code = 404
    error_type = 'NotFoundError'


class InvalidOperationException(AppException):
    """
    Operation is not allowed in the current state (HTTP 400)

    Examples: responding to a resolved request, offering a slot for itself,
    swapping two slots with the same owner.
    """
    status_code = 400
    error_type = 'InvalidOperation'


class InvalidStateException(InvalidOperationException):
    """A slot involved in a new request is not SWAPPABLE."""
    error_type = 'InvalidState'


class ConflictException(AppException):
    """
    Lost a concurrency race (HTTP 409)

    The caller should refetch authoritative state; nothing was applied on its
    behalf.
    """
    status_code = 409
    error_type = 'Conflict'


class ConsistencyException(AppException):
    """
    Internal invariant violated (HTTP 500)

    Raised when a slot expected to be SWAP_PENDING was not, or a compensating
    rollback could not complete. Never retried automatically.
    """
    status_code = 500
    error_type = 'InternalError'

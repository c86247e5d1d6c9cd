"""
Error taxonomy for the report amendment workflow.

Every store and workflow failure is one of these kinds. Views map them
to HTTP status codes; callers decide whether to retry based on
``retryable``.
"""
from typing import Any, Dict, Optional


class ReportError(Exception):
    """Base class for report amendment errors."""

    code = 'REPORT_ERROR'
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': self.details,
        }


class ValidationError(ReportError):
    """Bad input: blank reason, empty diff, unknown field."""
    code = 'VALIDATION_ERROR'


class InvalidStateError(ReportError):
    """Operation is not legal in the entity's current state."""
    code = 'INVALID_STATE'


class ConflictError(ReportError):
    """Concurrent modification, stale amendment or duplicate pending request."""
    code = 'CONFLICT'
    retryable = True


class NotFoundError(ReportError):
    """Unknown report or amendment id."""
    code = 'NOT_FOUND'


class UnavailableError(ReportError):
    """Transient store failure or timeout. No partial write was persisted."""
    code = 'UNAVAILABLE'
    retryable = True

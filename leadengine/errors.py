"""
Error taxonomy for the allocation core.

Services raise these; the API layer turns them into ErrorResponse bodies.
"""

from typing import Any, Optional


class LeadEngineError(Exception):
    status_code = 500
    error = "internal_error"
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class NotFoundError(LeadEngineError):
    status_code = 404
    error = "not_found"
    default_code = "NOT_FOUND"


class ConflictError(LeadEngineError):
    status_code = 409
    error = "conflict"
    default_code = "CONFLICT"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict] = None,
        existing: Any = None,
    ):
        super().__init__(message, code, details)
        # The resource that already won, e.g. the lead created for a booking
        self.existing = existing


class AlreadyResolvedError(ConflictError):
    """Someone else bound a partner to this lead first."""
    default_code = "LEAD_ALREADY_RESOLVED"


class LeadValidationError(LeadEngineError):
    status_code = 422
    error = "validation_error"
    default_code = "VALIDATION_FAILED"

    def __init__(self, message: str, errors: Optional[list[str]] = None, code: Optional[str] = None):
        super().__init__(message, code, {"errors": errors or []})
        self.errors = errors or []


class DependencyError(LeadEngineError):
    status_code = 503
    error = "dependency_error"
    default_code = "DEPENDENCY_FAILURE"

"""
Error taxonomy for the CreditGate service.

Every failure surfaced by the services carries an ErrorKind; the API layer
maps kinds to HTTP statuses in one place (see api/middleware.py).
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Error categories shared by services and the HTTP layer"""
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CONFLICT = "CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    INTERNAL = "INTERNAL"


class CreditGateError(Exception):
    """Base exception for service errors

    Attributes:
        kind: Error category
        code: Stable error code for programmatic handling
        message: Human-readable message safe to return to callers
        payload: Optional structured data attached to the response
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.payload = payload or {}
        super().__init__(message)


class InputValidationError(CreditGateError):
    """Raised when input validation fails

    Attributes:
        field: The field that failed validation
        suggestion: Optional suggestion for fixing the error
    """

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        code: str = "VALIDATION_ERROR",
        suggestion: str = ""
    ):
        self.field = field
        self.suggestion = suggestion
        super().__init__(message, code=code)


class NotFoundError(CreditGateError):
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"


class AccessDeniedError(CreditGateError):
    """Raised when a query is not authorized by consent or entity status"""

    kind = ErrorKind.AUTHORIZATION_DENIED
    default_code = "ACCESS_DENIED"

    def __init__(self, reason: str, code: str = "ACCESS_DENIED"):
        self.reason = reason
        super().__init__(reason, code=code, payload={"reason": reason})


class QuotaExceededError(CreditGateError):
    """Raised when the consultant has used every query of the current period"""

    kind = ErrorKind.QUOTA_EXCEEDED
    default_code = "QUOTA_EXCEEDED"

    def __init__(self, used: int, limit: int, period_start: str, resets_at: str):
        self.used = used
        self.limit = limit
        super().__init__(
            f"Monthly query limit reached ({used}/{limit})",
            payload={
                "used": used,
                "limit": limit,
                "remaining": max(limit - used, 0),
                "period_start": period_start,
                "resets_at": resets_at,
            }
        )


class ConsentConflictError(CreditGateError):
    kind = ErrorKind.CONFLICT
    default_code = "CONSENT_CONFLICT"


class InvalidConsentStateError(CreditGateError):
    kind = ErrorKind.INVALID_STATE
    default_code = "INVALID_CONSENT_STATE"


class UpstreamError(CreditGateError):
    """Credit bureau unavailable or returned a server error"""

    kind = ErrorKind.UPSTREAM_FAILURE
    default_code = "UPSTREAM_FAILURE"

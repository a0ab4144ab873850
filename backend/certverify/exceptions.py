"""
CertVerify Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions, each carrying its HTTP status and a
       machine-readable error code.
Why:   Inner components never write error responses themselves; they raise
       one of these and the error-handling stage of the request pipeline
       turns it into the uniform JSON envelope.
Who:   Raised by services, repositories and pipeline stages.

Exception Hierarchy:
    CertVerifyError (base)            → 500
    ├── ValidationError               → 400 (malformed or unsafe input)
    ├── UnauthorizedError             → 401 (no caller identity)
    ├── ForbiddenError                → 403 (identity lacks permission)
    │   ├── CsrfInvalidError          → 403
    │   └── CorsRejectedError         → 403
    ├── NotFoundError                 → 404
    ├── ConflictError                 → 409 (illegal state transition)
    ├── RateLimitExceededError        → 429 (+ Retry-After)
    ├── DatabaseError                 → 500 (generic message, details logged)
    └── StoreUnavailableError         → never surfaced; handled per FailurePolicy
        └── CircuitBreakerOpenError

Design Decision:
    status_code / error_code live on the class rather than in a lookup table
    in the error stage, so adding an exception is a one-file change.
    VerificationService does NOT raise for "certificate not valid"; that is
    an expected outcome, returned as a result with a `reason`.
"""

from typing import Any, Dict, List, Optional


class CertVerifyError(Exception):
    """
    Base exception for all CertVerify application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    @property
    def errors(self) -> Optional[List[Dict[str, Any]]]:
        """Per-field problems to expose in the envelope's `errors` array."""
        return None

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(CertVerifyError):
    """
    Raised when client input fails validation.

    When:    Unsafe verification identifiers, empty revocation reasons,
             request bodies rejected by FastAPI's schema validation.
    HTTP:    400 Bad Request
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        field_errors: Optional[List[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field
        self.field_errors = field_errors

    @property
    def errors(self) -> Optional[List[Dict[str, Any]]]:
        if self.field_errors:
            return self.field_errors
        if self.field:
            return [{"field": self.field, "message": self.message}]
        return None


class UnauthorizedError(CertVerifyError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ForbiddenError(CertVerifyError):
    status_code = 403
    error_code = "forbidden"

    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CsrfInvalidError(ForbiddenError):
    """
    Raised when a state-changing request carries no CSRF token, an expired
    one, or one that does not match the stored hash for the caller.

    HTTP:    403 Forbidden
    """

    error_code = "csrf_invalid"

    def __init__(
        self,
        message: str = "Invalid or missing CSRF token",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CorsRejectedError(ForbiddenError):
    error_code = "cors_rejected"

    def __init__(
        self,
        origin: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["origin"] = origin
        super().__init__(message="CORS policy violation", context=ctx)


class NotFoundError(CertVerifyError):
    """
    Raised when a requested resource does not exist.

    Why a custom exception:
        Repositories return None for missing rows. Services convert
        None → NotFoundError so routes stay free of status-code logic.
    """

    status_code = 404
    error_code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ConflictError(CertVerifyError):
    """
    Raised when a request is valid but the resource's current state forbids it.

    When:    Revoking an already-revoked or expired certificate; issuing with
             a certificateId that already exists; losing a concurrent
             revoke race.
    HTTP:    409 Conflict
    """

    status_code = 409
    error_code = "conflict"

    def __init__(
        self,
        message: str = "The resource is in a conflicting state",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(CertVerifyError):
    """
    Raised when a caller exhausts its route-class budget.

    HTTP:    429 Too Many Requests, with a Retry-After header
    """

    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(
            message="Too many requests, please try again later",
            context=ctx,
        )
        self.retry_after = retry_after

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class DatabaseError(CertVerifyError):
    """
    Raised when database operations fail unexpectedly.

    Security Note:
        The message returned to the client is always generic. The SQL
        error is kept in `context` and only ever logged.
    """

    status_code = 500
    error_code = "server_error"

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StoreUnavailableError(CertVerifyError):
    """
    Raised by the coordination store when Redis cannot be reached.

    The cache and rate limiter fail open on it and CSRF validation fails
    closed (surfacing as CsrfInvalidError). Only CSRF token issuance lets
    it reach the client, as a 503.
    """

    status_code = 503
    error_code = "store_unavailable"

    def __init__(
        self,
        message: str = "Coordination store is unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CircuitBreakerOpenError(StoreUnavailableError):
    """Raised without touching the network while the store circuit is OPEN."""

    def __init__(
        self,
        recovery_time: int = 30,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(
            message=f"Coordination store circuit is open; retrying in ~{recovery_time}s",
            context=ctx,
        )
        self.recovery_time = recovery_time

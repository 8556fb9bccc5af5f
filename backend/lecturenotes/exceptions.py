"""
Lecture Notes Backend — Custom Exception Hierarchy
====================================================

What:  Application-specific exceptions for every error scenario.
Why:   Targeted handling with correct HTTP status codes and user-facing
       messages, without leaking internals to API consumers.
How:   Each exception carries a message and an optional context dict.
       Global handlers (main.py) turn them into structured JSON responses.

Exception Hierarchy:
    LectureNotesError (base)
    ├── ValidationError            → 400 Bad Request (client can fix)
    ├── WebhookAuthError           → 401 Unauthorized
    ├── QuotaError                 → 402 Payment Required (upgrade messaging)
    │   ├── PerFileLimitExceeded
    │   ├── FileCountExceeded
    │   ├── QuotaExceeded
    │   └── QuotaCommitRejected    (raised at commit, never reaches HTTP)
    ├── NotFoundError              → 404 Not Found
    ├── ConflictError              → 409 Conflict
    ├── GraceOverdrawError         (grace counter would go out of range)
    ├── FileStorageError           → 500 Internal Server Error
    ├── DatabaseError              → 500 Internal Server Error
    ├── CircuitBreakerOpenError    → 503 Service Unavailable
    └── CollaboratorError          (captured by the pipeline, stored on the job)
        ├── ServiceUnavailable     retryable
        ├── RateLimited            retryable
        ├── AuthFailed             fatal
        ├── BadInput               fatal
        └── EmptyResult            fatal, integrity failure

Quota errors are client-correctable and returned synchronously at submission,
before any job exists. Collaborator errors never cross the pipeline boundary;
they are recorded in the job's stage history and surfaced via job status.
"""

from typing import Any, Dict, Optional


class LectureNotesError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, returned only where noted)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(LectureNotesError):
    """Client input failed a business rule. HTTP 400."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class WebhookAuthError(LectureNotesError):
    """Subscription webhook call without a valid shared secret. HTTP 401."""

    def __init__(self, message: str = "Invalid webhook credentials"):
        super().__init__(message=message)


class NotFoundError(LectureNotesError):
    """Requested resource does not exist. HTTP 404."""

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


class ConflictError(LectureNotesError):
    """Operation is not valid for the resource's current state. HTTP 409."""


# ══════════════════════════════════════════════════════════════════════════
# Quota Errors
# ══════════════════════════════════════════════════════════════════════════

class QuotaError(LectureNotesError):
    """
    Base for admission/commit rejections.

    Every quota error carries the numbers the client needs for precise upgrade
    messaging: current usage, the limit that was hit, grace remaining and the
    effective tier. They are never retried.
    """

    code = "quota_error"

    def __init__(
        self,
        message: str,
        tier: str,
        current_usage: int,
        limit: int,
        grace_remaining: int = 0,
        requested: Optional[int] = None,
        files_this_period: Optional[int] = None,
        file_limit: Optional[int] = None,
    ):
        context = {
            "code": self.code,
            "tier": tier,
            "current_usage": current_usage,
            "limit": limit,
            "grace_remaining": grace_remaining,
        }
        if requested is not None:
            context["requested"] = requested
        if files_this_period is not None:
            context["files_this_period"] = files_this_period
        if file_limit is not None:
            context["file_limit"] = file_limit
        super().__init__(message=message, context=context)
        self.tier = tier
        self.current_usage = current_usage
        self.limit = limit
        self.grace_remaining = grace_remaining
        self.requested = requested


class PerFileLimitExceeded(QuotaError):
    """The single upload is larger than the tier allows. Grace never applies."""

    code = "per_file_limit_exceeded"


class FileCountExceeded(QuotaError):
    """The tier's file count for the current period is used up."""

    code = "file_count_exceeded"


class QuotaExceeded(QuotaError):
    """Base allotment plus remaining grace cannot absorb the upload."""

    code = "quota_exceeded"


class QuotaCommitRejected(QuotaError):
    """
    A commit lost the evaluate/commit race.

    Raised by UsageTracker when the locked totals no longer fit the upload
    (another job for the same account committed first).
    """

    code = "quota_exceeded_at_commit"


class GraceOverdrawError(LectureNotesError):
    """Grace consumption would go negative or past the allowance."""


# ══════════════════════════════════════════════════════════════════════════
# Infrastructure Errors
# ══════════════════════════════════════════════════════════════════════════

class FileStorageError(LectureNotesError):
    """Reading, writing or deleting a stored file failed. HTTP 500."""

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(LectureNotesError):
    """
    A database operation failed unexpectedly. HTTP 500.

    The client always gets a generic message; details stay in server logs.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CircuitBreakerOpenError(LectureNotesError):
    """
    Raised while the Gemini circuit breaker is OPEN.

    CLOSED → (threshold failures) → OPEN → (recovery timeout) → HALF_OPEN
    → success → CLOSED, or failure → OPEN again.
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


# ══════════════════════════════════════════════════════════════════════════
# Collaborator Errors
# ══════════════════════════════════════════════════════════════════════════

class CollaboratorError(LectureNotesError):
    """
    An external processing service failed.

    `code` is the stable value stored as the job's failure_code;
    `retryable` decides whether the stage boundary retries the call.
    """

    code = "collaborator_error"
    retryable = False

    def __init__(
        self,
        message: str = "External service call failed",
        service: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if service:
            ctx["service"] = service
        super().__init__(message=message, context=ctx)
        self.service = service


class ServiceUnavailable(CollaboratorError):
    code = "unavailable"
    retryable = True


class RateLimited(CollaboratorError):
    code = "rate_limited"
    retryable = True


class AuthFailed(CollaboratorError):
    code = "auth_failed"


class BadInput(CollaboratorError):
    code = "bad_input"


class EmptyResult(CollaboratorError):
    """The collaborator answered, but with nothing usable."""

    code = "empty_result"

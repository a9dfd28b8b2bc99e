# Calendar API Error Handling
# Error taxonomy and JSON error envelopes

import logging
from typing import Any, Optional
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


# ============================================================================
# ERROR REASONS
# ============================================================================

ERROR_NOT_FOUND = "notFound"
ERROR_INVALID = "invalid"
ERROR_REQUIRED = "required"
ERROR_FORBIDDEN = "forbidden"
ERROR_UNAUTHORIZED = "authError"
ERROR_INVALID_TOKEN = "invalidToken"
ERROR_CONFLICT = "conflict"
ERROR_RATE_LIMITED = "rateLimitExceeded"
ERROR_INTERNAL = "internalError"

ERROR_CALENDAR_NOT_FOUND = "calendarNotFound"
ERROR_EVENT_NOT_FOUND = "eventNotFound"
ERROR_COMMENT_NOT_FOUND = "commentNotFound"
ERROR_VERSION_MISMATCH = "versionMismatch"


# ============================================================================
# EXCEPTION CLASSES
# ============================================================================


class CalendarAPIError(Exception):
    """
    Base exception for calendar API errors.

    Subclasses set `status_code`, `reason` and `default_message`; callers
    may override the message, reason or location per instance.
    """

    status_code = 400
    reason = ERROR_INVALID
    default_message = "Bad Request"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        location: Optional[str] = None,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if reason is not None:
            self.reason = reason
        self.location = location

    def to_dict(self) -> dict[str, Any]:
        """Convert to the `{success: false, ...}` response envelope."""
        detail: dict[str, Any] = {
            "code": self.status_code,
            "reason": self.reason,
            "message": self.message,
        }
        if self.location:
            detail["location"] = self.location
        return {"success": False, "message": self.message, "error": detail}

    def to_response(self) -> JSONResponse:
        return JSONResponse(self.to_dict(), status_code=self.status_code)


class ValidationError(CalendarAPIError):
    """Malformed input (400). `field` is reported as the error location."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, reason=reason, location=field)


class RequiredFieldError(ValidationError):
    reason = ERROR_REQUIRED

    def __init__(self, field: str):
        super().__init__(f"Required field missing: {field}", field=field)


class AuthenticationError(CalendarAPIError):
    status_code = 401
    reason = ERROR_UNAUTHORIZED
    default_message = "Authentication required"


class InvalidTokenError(CalendarAPIError):
    """Expired or forged RSVP token."""

    status_code = 401
    reason = ERROR_INVALID_TOKEN
    default_message = "Invalid or expired RSVP link"


class ForbiddenError(CalendarAPIError):
    status_code = 403
    reason = ERROR_FORBIDDEN
    default_message = "Forbidden"


class NotFoundError(CalendarAPIError):
    status_code = 404
    reason = ERROR_NOT_FOUND
    default_message = "Not Found"
    resource = "Resource"

    def __init__(self, resource_id: Optional[str] = None):
        message = f"{self.resource} not found: {resource_id}" if resource_id else None
        super().__init__(message)


class CalendarNotFoundError(NotFoundError):
    reason = ERROR_CALENDAR_NOT_FOUND
    resource = "Calendar"


class EventNotFoundError(NotFoundError):
    reason = ERROR_EVENT_NOT_FOUND
    resource = "Event"


class CommentNotFoundError(NotFoundError):
    reason = ERROR_COMMENT_NOT_FOUND
    resource = "Comment"


class ConflictError(CalendarAPIError):
    """State conflict (409): events still present, stale versions."""

    status_code = 409
    reason = ERROR_CONFLICT
    default_message = "Conflict"


class VersionMismatchError(ConflictError):
    reason = ERROR_VERSION_MISMATCH

    def __init__(self, event_id: str, expected: int, actual: int):
        super().__init__(
            f"Event {event_id} was modified by someone else "
            f"(expected version {expected}, current version {actual})"
        )


class RateLimitedError(CalendarAPIError):
    status_code = 429
    reason = ERROR_RATE_LIMITED
    default_message = "Rate Limit Exceeded"


class InternalError(CalendarAPIError):
    status_code = 500
    reason = ERROR_INTERNAL
    default_message = "Internal server error"


# ============================================================================
# ERROR HANDLING UTILITIES
# ============================================================================


def handle_exception(exc: Exception) -> JSONResponse:
    """Convert an exception to a JSONResponse, hiding internal details."""
    if isinstance(exc, CalendarAPIError):
        return exc.to_response()

    logger.error("Unexpected exception: %s", exc, exc_info=exc)
    return InternalError().to_response()

"""Domain errors raised by the signup, lineup, and hosting services.

Every error carries the HTTP status the API responds with and a stable
machine-readable ``code`` so clients can branch without parsing messages.
"""

from __future__ import annotations

from typing import Any


class HappeningsError(Exception):
    status_code = 400
    code = "BAD_REQUEST"
    message = "Something went wrong."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        **extra: Any,
    ) -> None:
        self.message = message or self.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class InvalidRequestError(HappeningsError):
    status_code = 400
    code = "INVALID_REQUEST"


class AuthenticationRequired(HappeningsError):
    status_code = 401
    code = "UNAUTHENTICATED"
    message = "Authentication required"


class PermissionDenied(HappeningsError):
    status_code = 403
    code = "FORBIDDEN"
    message = "You do not have permission to do that"


class NotFoundError(HappeningsError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Not found"


class ConflictError(HappeningsError):
    status_code = 409
    code = "CONFLICT"


class RateLimitedError(HappeningsError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests. Please try again later."


# Date key and occurrence failures shared by every occurrence-scoped write.
class InvalidDateKey(InvalidRequestError):
    code = "INVALID_DATE_KEY"
    message = "Invalid date_key format. Expected YYYY-MM-DD."


class OccurrenceCancelled(ConflictError):
    code = "OCCURRENCE_CANCELLED"
    message = "This occurrence has been cancelled"


class EventNotFound(NotFoundError):
    code = "EVENT_NOT_FOUND"
    message = "Event not found"

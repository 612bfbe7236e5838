"""Failure taxonomy shared by the calendar integration and the route layer."""

from __future__ import annotations


class CalendarIntegrationError(Exception):
    """Base error for Google Calendar integration issues."""

    kind = "calendar_error"


class UnauthenticatedError(CalendarIntegrationError):
    """Raised when the request carries no valid local session."""

    kind = "unauthenticated"


class NoConnectionError(CalendarIntegrationError):
    """Raised when the user never linked (or has unlinked) a calendar account."""

    kind = "no_connection"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("No Google Calendar connection found")


class EventNotFoundError(CalendarIntegrationError):
    """Raised when a referenced remote event no longer exists."""

    kind = "not_found"

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event '{event_id}' was not found")


class UpstreamError(CalendarIntegrationError):
    """Raised for any other provider-side or transport failure."""

    kind = "upstream_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f"Google Calendar request failed ({status_code}): {message}")


class EventValidationError(CalendarIntegrationError, ValueError):
    """Raised when event input is missing required fields or is malformed."""

    kind = "validation_error"

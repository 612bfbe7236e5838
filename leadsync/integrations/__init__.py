"""Integration layer for the Google Calendar provider."""

from .config import GoogleCalendarConfig
from .errors import (
    CalendarIntegrationError,
    EventNotFoundError,
    EventValidationError,
    NoConnectionError,
    UnauthenticatedError,
    UpstreamError,
)
from .follow_ups import FollowUpSyncService
from .google_calendar import (
    CalendarEvent,
    EventInput,
    EventPatch,
    GoogleCalendarClient,
    compose_description,
    extract_back_reference,
)
from .google_oauth import ConnectionStatusService, GoogleOAuthClient, TokenRefresher

__all__ = [
    "CalendarEvent",
    "CalendarIntegrationError",
    "ConnectionStatusService",
    "EventInput",
    "EventNotFoundError",
    "EventPatch",
    "EventValidationError",
    "FollowUpSyncService",
    "GoogleCalendarClient",
    "GoogleCalendarConfig",
    "GoogleOAuthClient",
    "NoConnectionError",
    "TokenRefresher",
    "UnauthenticatedError",
    "UpstreamError",
    "compose_description",
    "extract_back_reference",
]

from __future__ import annotations

import os
from dataclasses import dataclass

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.events"


@dataclass(slots=True)
class GoogleCalendarConfig:
    """Configuration required to interact with the Google Calendar API."""

    client_id: str
    client_secret: str
    redirect_uri: str
    auth_endpoint: str = GOOGLE_AUTH_ENDPOINT
    token_endpoint: str = GOOGLE_TOKEN_ENDPOINT
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL
    calendar_id: str = "primary"
    scope: str = GOOGLE_CALENDAR_SCOPE
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> GoogleCalendarConfig:
        """Build a config from ``GOOGLE_*`` environment variables."""

        env = os.environ if environ is None else environ
        required = {
            "client_id": "GOOGLE_CLIENT_ID",
            "client_secret": "GOOGLE_CLIENT_SECRET",
            "redirect_uri": "GOOGLE_REDIRECT_URI",
        }
        values = {field: env.get(name, "").strip() for field, name in required.items()}
        missing = sorted(required[field] for field, value in values.items() if not value)
        if missing:
            raise ValueError(f"Missing required environment variable(s): {', '.join(missing)}")
        calendar_id = env.get("GOOGLE_CALENDAR_ID", "").strip() or "primary"
        return cls(calendar_id=calendar_id, **values)

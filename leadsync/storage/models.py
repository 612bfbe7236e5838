from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

REFRESH_MARGIN = timedelta(seconds=60)


@dataclass(slots=True)
class CredentialRecord:
    """Stored OAuth 2.0 credential for a single user."""

    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def needs_refresh(self, *, now: datetime | None = None) -> bool:
        """Return True when the access token is missing an expiry or is about to lapse."""

        if self.expires_at is None:
            return True
        reference = now or datetime.now(timezone.utc)
        return self.expires_at - reference <= REFRESH_MARGIN

    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(user_id={self.user_id!r}, access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )


@dataclass(slots=True)
class FollowUp:
    """A note on a lead, optionally carrying a follow-up date."""

    id: str
    lead_id: str
    content: str
    follow_up_date: date | None = None
    lead_name: str | None = None
    remote_event_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.content.strip():
            raise ValueError("Note content is required")

    @property
    def event_title(self) -> str:
        return f"Follow-up: {self.lead_name}" if self.lead_name else "Follow-up"

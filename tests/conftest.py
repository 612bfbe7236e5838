from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from leadsync.integrations.config import GoogleCalendarConfig
from leadsync.integrations.follow_ups import FollowUpSyncService
from leadsync.integrations.google_calendar import GoogleCalendarClient
from leadsync.integrations.google_oauth import GoogleOAuthClient, TokenRefresher
from leadsync.storage.memory import InMemoryCredentialStore, InMemoryFollowUpStore
from leadsync.storage.models import CredentialRecord

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
API_BASE_URL = "https://calendar.test/v3"
EVENTS_PATH = "/v3/calendars/primary/events"


class FakeTokenEndpoint:
    """Stands in for Google's token endpoint; records every grant request."""

    def __init__(self, *, access_token: str = "fresh-token", expires_in: int | None = 3600) -> None:
        self.calls: list[dict[str, Any]] = []
        self.access_token = access_token
        self.expires_in = expires_in
        self.refresh_token: str | None = None
        self.error: Exception | None = None

    async def __call__(self, config: GoogleCalendarConfig, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(payload)
        if self.error is not None:
            raise self.error
        response: dict[str, Any] = {"access_token": self.access_token, "token_type": "Bearer"}
        if self.expires_in is not None:
            response["expires_in"] = self.expires_in
        if self.refresh_token is not None:
            response["refresh_token"] = self.refresh_token
        return response


class RecordingCredentialStore(InMemoryCredentialStore):
    def __init__(self) -> None:
        super().__init__()
        self.writes: list[tuple[str, dict[str, Any]]] = []

    async def upsert_credential(self, user_id: str, **fields: Any) -> CredentialRecord:
        self.writes.append((user_id, fields))
        return await super().upsert_credential(user_id, **fields)

    def seed(self, record: CredentialRecord) -> None:
        self._records[record.user_id] = record


class FakeGoogleCalendar:
    """In-memory Google Calendar events endpoint served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.deleted: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self._counter = 0

    def add_event(self, event_id: str, **fields: Any) -> dict[str, Any]:
        event = {"id": event_id, **fields}
        self.events[event_id] = event
        return event

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"message": "backend   unavailable"}})

        path = request.url.path
        if path == EVENTS_PATH:
            if request.method == "GET":
                items = sorted(self.events.values(), key=lambda event: str(event["start"]))
                return httpx.Response(200, json={"items": items})
            if request.method == "POST":
                self._counter += 1
                event_id = f"evt-{self._counter}"
                body = json.loads(request.content)
                event = self.add_event(event_id, htmlLink=f"https://calendar.test/{event_id}", **body)
                return httpx.Response(200, json=event)

        event_id = path[len(EVENTS_PATH) + 1 :]
        if event_id in self.deleted:
            return httpx.Response(410, json={"error": {"message": "Resource has been deleted"}})
        if event_id not in self.events:
            return httpx.Response(404, json={"error": {"message": "Not Found"}})
        if request.method == "PATCH":
            self.events[event_id].update(json.loads(request.content))
            return httpx.Response(200, json=self.events[event_id])
        if request.method == "DELETE":
            del self.events[event_id]
            self.deleted.add(event_id)
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture
def config() -> GoogleCalendarConfig:
    return GoogleCalendarConfig(
        client_id="client",
        client_secret="secret",
        redirect_uri="https://crm.test/api/auth/google/callback",
        api_base_url=API_BASE_URL,
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def credential_store() -> RecordingCredentialStore:
    return RecordingCredentialStore()


@pytest.fixture
def follow_up_store() -> InMemoryFollowUpStore:
    return InMemoryFollowUpStore()


@pytest.fixture
def fake_calendar() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
def oauth_client(config, token_endpoint, clock) -> GoogleOAuthClient:
    return GoogleOAuthClient(config, token_fetcher=token_endpoint, clock=clock)


@pytest.fixture
def refresher(credential_store, oauth_client, clock) -> TokenRefresher:
    return TokenRefresher(credential_store, oauth_client, clock=clock)


@pytest.fixture
def http_client(fake_calendar) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_calendar.handler))


@pytest.fixture
def calendar_client(config, refresher, http_client, clock) -> GoogleCalendarClient:
    return GoogleCalendarClient(config, refresher, http_client=http_client, clock=clock)


@pytest.fixture
def sync_service(calendar_client, follow_up_store) -> FollowUpSyncService:
    return FollowUpSyncService(calendar_client, follow_up_store)


@pytest.fixture
def connected_user(credential_store) -> str:
    credential_store.seed(
        CredentialRecord(
            user_id="user-1",
            access_token="valid-token",
            refresh_token="refresh-1",
            expires_at=NOW + timedelta(hours=1),
        )
    )
    return "user-1"

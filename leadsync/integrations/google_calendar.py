from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import httpx

from .config import GoogleCalendarConfig
from .errors import EventNotFoundError, EventValidationError, UpstreamError
from .google_oauth import Clock, TokenRefresher, summarize_error_response

logger = logging.getLogger(__name__)

LEAD_TAG = "LeadID"
NOTE_TAG = "NoteID"
UPCOMING_MAX_RESULTS = 50
_GONE_STATUS_CODES = {404, 410}


@dataclass(slots=True)
class EventInput:
    """Fields needed to create an all-day follow-up event."""

    title: str
    date: date
    description: str | None = None
    lead_id: str | None = None
    note_id: str | None = None

    def __post_init__(self) -> None:
        if not self.title or not self.title.strip():
            raise EventValidationError("title and date are required")
        if not isinstance(self.date, date):
            raise EventValidationError("title and date are required")
        if isinstance(self.date, datetime):
            raise EventValidationError("date must be a calendar date, not a datetime")


@dataclass(slots=True)
class EventPatch:
    """Partial update; ``None`` leaves the remote field untouched."""

    title: str | None = None
    description: str | None = None
    date: date | None = None

    def __post_init__(self) -> None:
        if self.title is not None and not self.title.strip():
            raise EventValidationError("title must not be blank")
        if isinstance(self.date, datetime):
            raise EventValidationError("date must be a calendar date, not a datetime")

    def is_empty(self) -> bool:
        return self.title is None and self.description is None and self.date is None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.title is not None:
            body["summary"] = self.title
        if self.description is not None:
            body["description"] = self.description
        if self.date is not None:
            body["start"] = {"date": self.date.isoformat()}
            body["end"] = {"date": self.date.isoformat()}
        return body


@dataclass(slots=True)
class CalendarEvent:
    """Represents a remote calendar event in a normalized structure."""

    id: str
    summary: str
    start: date | datetime | None
    end: date | datetime | None
    description: str | None = None
    html_link: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def all_day(self) -> bool:
        return isinstance(self.start, date) and not isinstance(self.start, datetime)

    @property
    def lead_id(self) -> str | None:
        return extract_back_reference(self.description, LEAD_TAG)

    @property
    def note_id(self) -> str | None:
        return extract_back_reference(self.description, NOTE_TAG)


def compose_description(
    text: str | None,
    *,
    lead_id: str | None = None,
    note_id: str | None = None,
) -> str:
    """Join free text and ``Key:value`` back-reference lines, skipping empty parts."""

    segments = [text or ""]
    for key, value in ((LEAD_TAG, lead_id), (NOTE_TAG, note_id)):
        if not value:
            continue
        if "\n" in value or "\r" in value:
            raise EventValidationError(f"{key} must not contain line breaks")
        segments.append(f"{key}:{value}")
    return "\n".join(segment for segment in segments if segment)


def extract_back_reference(description: str | None, key: str = LEAD_TAG) -> str | None:
    """Recover the identifier embedded under ``key``; the last tag line wins."""

    if not description:
        return None
    pattern = re.compile(rf"^{re.escape(key)}:([^\r\n]+)\r?$", re.MULTILINE)
    matches = pattern.findall(description)
    return matches[-1] if matches else None


class GoogleCalendarClient:
    """Client responsible for talking to the Google Calendar REST API."""

    def __init__(
        self,
        config: GoogleCalendarConfig,
        refresher: TokenRefresher,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._refresher = refresher
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logger_instance or logger

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # Calendar operations -----------------------------------------------------------
    async def create_event(self, user_id: str, event: EventInput) -> CalendarEvent:
        body = {
            "summary": event.title,
            "description": compose_description(
                event.description,
                lead_id=event.lead_id,
                note_id=event.note_id,
            ),
            "start": {"date": event.date.isoformat()},
            "end": {"date": event.date.isoformat()},
        }
        response = await self._request(user_id, "POST", self._events_path(), json_body=body)
        created = _parse_event(self._json(response))
        self._logger.info("Created calendar event %s on %s", created.id, event.date.isoformat())
        return created

    async def update_event(self, user_id: str, event_id: str, patch: EventPatch) -> CalendarEvent:
        if patch.is_empty():
            raise EventValidationError("At least one of title, description or date is required")
        response = await self._request(
            user_id,
            "PATCH",
            self._events_path(event_id),
            json_body=patch.to_body(),
        )
        if response.status_code in _GONE_STATUS_CODES:
            raise EventNotFoundError(event_id)
        updated = _parse_event(self._json(response))
        self._logger.info("Updated calendar event %s", updated.id)
        return updated

    async def delete_event(self, user_id: str, event_id: str) -> bool:
        """Delete a remote event; returns False when it was already gone."""

        response = await self._request(user_id, "DELETE", self._events_path(event_id))
        if response.status_code in _GONE_STATUS_CODES:
            self._logger.debug("Calendar event %s already deleted; treating as success", event_id)
            return False
        self._ensure_success(response)
        self._logger.info("Deleted calendar event %s", event_id)
        return True

    async def list_upcoming(self, user_id: str, window_days: int = 30) -> list[CalendarEvent]:
        if window_days < 1:
            raise EventValidationError("window_days must be at least 1")
        # The window starts once the credential is in hand.
        credential = await self._refresher.obtain_valid_credential(user_id)
        now = self._clock()
        params = {
            "timeMin": _rfc3339(now),
            "timeMax": _rfc3339(now + timedelta(days=window_days)),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": UPCOMING_MAX_RESULTS,
        }
        response = await self._send(credential.authorization_header(), "GET", self._events_path(), params=params)
        payload = self._json(response)
        items = payload.get("items") or []
        events: list[CalendarEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                events.append(_parse_event(item))
            except UpstreamError as exc:
                self._logger.warning("Unable to parse event %s: %s", item.get("id"), exc)
        self._logger.info("Loaded %s upcoming events for %s", len(events), user_id)
        return events

    # Internal helpers -------------------------------------------------------------
    def _events_path(self, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(self.config.calendar_id, safe='')}/events"
        if event_id is not None:
            normalized = event_id.strip()
            if not normalized:
                raise EventValidationError("event_id must be a non-empty string")
            path = f"{path}/{quote(normalized, safe='')}"
        return path

    async def _request(
        self,
        user_id: str,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        credential = await self._refresher.obtain_valid_credential(user_id)
        return await self._send(credential.authorization_header(), method, path, json_body=json_body)

    async def _send(
        self,
        authorization: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self.config.api_base_url}{path}"
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": authorization},
            )
        except httpx.HTTPError as exc:
            self._logger.warning("Google Calendar %s %s failed: %s", method, path, type(exc).__name__)
            raise UpstreamError(f"Google Calendar request failed: {type(exc).__name__}") from exc

    def _ensure_success(self, response: httpx.Response) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamError(summarize_error_response(response), status_code=response.status_code)

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        self._ensure_success(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("Google Calendar API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamError("Google Calendar API returned an unexpected payload shape")
        return payload


def _parse_event(payload: dict[str, Any]) -> CalendarEvent:
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise UpstreamError("Calendar event payload is missing an id")
    return CalendarEvent(
        id=event_id,
        summary=payload.get("summary") or "",
        start=_parse_boundary(payload.get("start")),
        end=_parse_boundary(payload.get("end")),
        description=payload.get("description"),
        html_link=payload.get("htmlLink"),
        raw=payload,
    )


def _parse_boundary(value: Any) -> date | datetime | None:
    if not isinstance(value, dict):
        return None
    try:
        if value.get("dateTime"):
            raw = str(value["dateTime"])
            if raw.endswith("Z"):
                raw = f"{raw[:-1]}+00:00"
            return datetime.fromisoformat(raw)
        if value.get("date"):
            return date.fromisoformat(str(value["date"]))
    except ValueError as exc:
        raise UpstreamError(f"Unparseable event boundary: {value!r}") from exc
    return None


def _rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return normalized.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

"""REST API exposing the Google Calendar sync layer to the CRM front end."""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

import httpx
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from ..integrations.config import GoogleCalendarConfig
from ..integrations.errors import (
    CalendarIntegrationError,
    EventNotFoundError,
    EventValidationError,
    NoConnectionError,
    UnauthenticatedError,
    UpstreamError,
)
from ..integrations.follow_ups import FollowUpSyncService
from ..integrations.google_calendar import CalendarEvent, EventInput, EventPatch, GoogleCalendarClient
from ..integrations.google_oauth import (
    Clock,
    ConnectionStatusService,
    GoogleOAuthClient,
    TokenFetcher,
    TokenRefresher,
)
from ..storage.memory import (
    CredentialStore,
    FollowUpNotFoundError,
    InMemoryCredentialStore,
    InMemoryFollowUpStore,
    NoteStore,
)
from ..storage.models import FollowUp

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

Authenticator = Callable[[Request], str]

_ERROR_STATUS = {
    UnauthenticatedError: status.HTTP_401_UNAUTHORIZED,
    NoConnectionError: status.HTTP_409_CONFLICT,
    EventNotFoundError: status.HTTP_404_NOT_FOUND,
    UpstreamError: status.HTTP_502_BAD_GATEWAY,
    EventValidationError: status.HTTP_400_BAD_REQUEST,
}


def header_authenticator(request: Request) -> str:
    """Read the user identity forwarded by the session layer."""

    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise UnauthenticatedError("Unauthenticated")
    return user_id


class EventCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    date: dt.date
    description: Optional[str] = None
    lead_id: Optional[str] = Field(default=None, alias="leadId")
    note_id: Optional[str] = Field(default=None, alias="noteId")


class EventUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[dt.date] = None


class EventResponse(BaseModel):
    id: str
    summary: str
    description: Optional[str]
    start: Optional[dt.datetime | dt.date]
    end: Optional[dt.datetime | dt.date]
    all_day: bool
    html_link: Optional[str]
    lead_id: Optional[str]
    note_id: Optional[str]


class EventEnvelope(BaseModel):
    event: EventResponse


class EventListResponse(BaseModel):
    events: List[EventResponse]


class DeleteEventResponse(BaseModel):
    success: bool
    already_deleted: bool


class StatusResponse(BaseModel):
    connected: bool


class SuccessResponse(BaseModel):
    success: bool = True


class NoteCreateRequest(BaseModel):
    lead_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    follow_up_date: Optional[dt.date] = None
    lead_name: Optional[str] = None


class NoteUpdateRequest(BaseModel):
    content: str = Field(min_length=1)
    follow_up_date: Optional[dt.date] = None


class NoteResponse(BaseModel):
    id: str
    lead_id: str
    lead_name: Optional[str]
    content: str
    follow_up_date: Optional[dt.date]
    google_calendar_event_id: Optional[str]


class NoteEnvelope(BaseModel):
    note: NoteResponse
    calendar_warning: Optional[str] = None


class NoteListResponse(BaseModel):
    notes: List[NoteResponse]


def _serialize_event(event: CalendarEvent) -> EventResponse:
    return EventResponse(
        id=event.id,
        summary=event.summary,
        description=event.description,
        start=event.start,
        end=event.end,
        all_day=event.all_day,
        html_link=event.html_link,
        lead_id=event.lead_id,
        note_id=event.note_id,
    )


def _serialize_note(note: FollowUp) -> NoteResponse:
    return NoteResponse(
        id=note.id,
        lead_id=note.lead_id,
        lead_name=note.lead_name,
        content=note.content,
        follow_up_date=note.follow_up_date,
        google_calendar_event_id=note.remote_event_id,
    )


def _calendar_warning(exc: CalendarIntegrationError, action: str = "saved") -> Optional[str]:
    if isinstance(exc, NoConnectionError):
        return None
    return f"Note {action}, but calendar sync failed: {exc}"


def create_app(
    config: Optional[GoogleCalendarConfig] = None,
    *,
    credential_store: Optional[CredentialStore] = None,
    follow_up_store: Optional[NoteStore] = None,
    authenticate: Optional[Authenticator] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    token_fetcher: Optional[TokenFetcher] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    config = config or GoogleCalendarConfig.from_env()
    credentials = credential_store or InMemoryCredentialStore()
    notes = follow_up_store or InMemoryFollowUpStore()
    authenticate = authenticate or header_authenticator

    oauth = GoogleOAuthClient(config, token_fetcher=token_fetcher, clock=clock)
    refresher = TokenRefresher(credentials, oauth, clock=clock)
    calendar = GoogleCalendarClient(config, refresher, http_client=http_client, clock=clock)
    links = FollowUpSyncService(calendar, notes)
    connections = ConnectionStatusService(credentials)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await calendar.aclose()

    app = FastAPI(title="Lead CRM Calendar Sync API", lifespan=lifespan)

    def current_user_id(request: Request) -> str:
        return authenticate(request)

    @app.exception_handler(CalendarIntegrationError)
    async def handle_integration_error(_: Request, exc: CalendarIntegrationError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        return JSONResponse(status_code=status_code, content={"error": str(exc), "kind": exc.kind})

    @app.exception_handler(FollowUpNotFoundError)
    async def handle_missing_note(_: Request, exc: FollowUpNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": f"Note '{exc.args[0]}' was not found.", "kind": "not_found"},
        )

    # Authorization handshake ---------------------------------------------------------
    @app.get("/api/auth/google")
    def start_google_authorization(request: Request) -> RedirectResponse:
        try:
            authenticate(request)
        except UnauthenticatedError:
            return RedirectResponse("/login", status_code=status.HTTP_302_FOUND)
        return RedirectResponse(oauth.authorization_url(), status_code=status.HTTP_302_FOUND)

    @app.get("/api/auth/google/callback")
    async def google_authorization_callback(
        request: Request,
        code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RedirectResponse:
        if error or not code:
            logger.warning("Google authorization aborted: %s", error or "missing code")
            return RedirectResponse("/settings?google_error=access_denied", status_code=status.HTTP_302_FOUND)
        try:
            user_id = authenticate(request)
        except UnauthenticatedError:
            return RedirectResponse("/login", status_code=status.HTTP_302_FOUND)
        try:
            await refresher.complete_authorization(user_id, code)
        except UpstreamError as exc:
            logger.warning("Google token exchange failed for %s: %s", user_id, exc)
            return RedirectResponse(
                "/settings?google_error=token_exchange_failed", status_code=status.HTTP_302_FOUND
            )
        return RedirectResponse(
            "/settings?tab=integrations&connected=true", status_code=status.HTTP_302_FOUND
        )

    # Connection lifecycle ------------------------------------------------------------
    @app.get("/api/calendar/status", response_model=StatusResponse)
    async def calendar_status(request: Request) -> StatusResponse:
        try:
            user_id = authenticate(request)
        except UnauthenticatedError:
            return StatusResponse(connected=False)
        return StatusResponse(connected=await connections.is_connected(user_id))

    @app.delete("/api/calendar/disconnect", response_model=SuccessResponse)
    async def disconnect_calendar(user_id: str = Depends(current_user_id)) -> SuccessResponse:
        await connections.disconnect(user_id)
        return SuccessResponse()

    # Calendar events -----------------------------------------------------------------
    @app.get("/api/calendar/events", response_model=EventListResponse)
    async def list_events(
        days: int = Query(default=30, ge=1, le=365),
        user_id: str = Depends(current_user_id),
    ) -> EventListResponse:
        events = await calendar.list_upcoming(user_id, days)
        return EventListResponse(events=[_serialize_event(event) for event in events])

    @app.post("/api/calendar/events", status_code=status.HTTP_201_CREATED, response_model=EventEnvelope)
    async def create_event(
        payload: EventCreateRequest,
        user_id: str = Depends(current_user_id),
    ) -> EventEnvelope:
        event_input = EventInput(
            title=payload.title,
            date=payload.date,
            description=payload.description,
            lead_id=payload.lead_id,
            note_id=payload.note_id,
        )
        event = await links.create_linked_event(user_id, event_input)
        return EventEnvelope(event=_serialize_event(event))

    @app.put("/api/calendar/events/{event_id}", response_model=EventEnvelope)
    async def update_event(
        event_id: str,
        payload: EventUpdateRequest,
        user_id: str = Depends(current_user_id),
    ) -> EventEnvelope:
        patch = EventPatch(title=payload.title, description=payload.description, date=payload.date)
        event = await calendar.update_event(user_id, event_id, patch)
        return EventEnvelope(event=_serialize_event(event))

    @app.delete("/api/calendar/events/{event_id}", response_model=DeleteEventResponse)
    async def delete_event(event_id: str, user_id: str = Depends(current_user_id)) -> DeleteEventResponse:
        deleted = await calendar.delete_event(user_id, event_id)
        return DeleteEventResponse(success=True, already_deleted=not deleted)

    # Follow-up notes -----------------------------------------------------------------
    @app.get("/api/follow-ups", response_model=NoteListResponse)
    async def list_follow_ups(_: str = Depends(current_user_id)) -> NoteListResponse:
        return NoteListResponse(notes=[_serialize_note(note) for note in await notes.list_follow_ups()])

    @app.post("/api/notes", status_code=status.HTTP_201_CREATED, response_model=NoteEnvelope)
    async def create_note(payload: NoteCreateRequest, user_id: str = Depends(current_user_id)) -> NoteEnvelope:
        note = await notes.create(
            lead_id=payload.lead_id,
            content=payload.content,
            follow_up_date=payload.follow_up_date,
            lead_name=payload.lead_name,
        )
        warning: Optional[str] = None
        if note.follow_up_date is not None:
            try:
                await links.sync_follow_up(user_id, note)
            except CalendarIntegrationError as exc:
                logger.warning("Calendar sync failed for note %s: %s", note.id, exc)
                warning = _calendar_warning(exc)
            note = await notes.get(note.id)
        return NoteEnvelope(note=_serialize_note(note), calendar_warning=warning)

    @app.put("/api/notes/{note_id}", response_model=NoteEnvelope)
    async def update_note(
        note_id: str,
        payload: NoteUpdateRequest,
        user_id: str = Depends(current_user_id),
    ) -> NoteEnvelope:
        note = await notes.update(note_id, content=payload.content, follow_up_date=payload.follow_up_date)
        warning: Optional[str] = None
        try:
            if note.remote_event_id and note.follow_up_date is not None:
                await links.reschedule_follow_up(user_id, note)
            elif note.remote_event_id:
                await links.unlink_follow_up(user_id, note)
                await notes.set_remote_event_id(note.id, None)
            elif note.follow_up_date is not None:
                await links.sync_follow_up(user_id, note)
        except CalendarIntegrationError as exc:
            logger.warning("Calendar sync failed for note %s: %s", note.id, exc)
            warning = _calendar_warning(exc)
        note = await notes.get(note.id)
        return NoteEnvelope(note=_serialize_note(note), calendar_warning=warning)

    @app.delete("/api/notes/{note_id}", response_model=NoteEnvelope)
    async def delete_note(note_id: str, user_id: str = Depends(current_user_id)) -> NoteEnvelope:
        note = await notes.delete(note_id)
        warning: Optional[str] = None
        try:
            await links.unlink_follow_up(user_id, note)
        except CalendarIntegrationError as exc:
            logger.warning("Calendar cleanup failed for deleted note %s: %s", note.id, exc)
            warning = _calendar_warning(exc, action="deleted")
        return NoteEnvelope(note=_serialize_note(note), calendar_warning=warning)

    return app

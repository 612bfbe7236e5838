from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone

import pytest

from leadsync.integrations.errors import (
    EventNotFoundError,
    EventValidationError,
    NoConnectionError,
    UpstreamError,
)
from leadsync.integrations.google_calendar import (
    EventInput,
    EventPatch,
    compose_description,
    extract_back_reference,
)
from leadsync.storage.models import CredentialRecord

from conftest import NOW


async def test_create_event_builds_all_day_event_with_back_references(
    calendar_client, fake_calendar, connected_user
) -> None:
    event = await calendar_client.create_event(
        connected_user,
        EventInput(
            title="Follow-up: Acme",
            date=date(2024, 3, 15),
            description="Call about renewal",
            lead_id="lead-42",
            note_id="note-7",
        ),
    )

    request = fake_calendar.requests[0]
    body = json.loads(request.content)
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer valid-token"
    assert body == {
        "summary": "Follow-up: Acme",
        "description": "Call about renewal\nLeadID:lead-42\nNoteID:note-7",
        "start": {"date": "2024-03-15"},
        "end": {"date": "2024-03-15"},
    }
    assert event.id == "evt-1"
    assert event.all_day is True
    assert event.start == date(2024, 3, 15)
    assert event.lead_id == "lead-42"
    assert event.note_id == "note-7"


async def test_create_event_omits_empty_description_segments(calendar_client, fake_calendar, connected_user) -> None:
    await calendar_client.create_event(
        connected_user,
        EventInput(title="Follow-up", date=date(2024, 3, 15), lead_id="lead-42"),
    )

    body = json.loads(fake_calendar.requests[0].content)
    assert body["description"] == "LeadID:lead-42"


@pytest.mark.parametrize("title", ["", "   "])
def test_event_input_requires_title(title) -> None:
    with pytest.raises(EventValidationError):
        EventInput(title=title, date=date(2024, 3, 15))


def test_event_input_requires_date() -> None:
    with pytest.raises(EventValidationError):
        EventInput(title="Follow-up", date=None)  # type: ignore[arg-type]


async def test_create_event_surfaces_provider_rejection(calendar_client, fake_calendar, connected_user) -> None:
    fake_calendar.fail_with = 403

    with pytest.raises(UpstreamError) as excinfo:
        await calendar_client.create_event(connected_user, EventInput(title="Follow-up", date=date(2024, 3, 15)))

    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "backend unavailable"


async def test_update_with_only_date_sends_only_start_and_end(calendar_client, fake_calendar, connected_user) -> None:
    fake_calendar.add_event(
        "evt-9",
        summary="Follow-up: Acme",
        description="Keep me\nLeadID:lead-42",
        start={"date": "2024-03-15"},
        end={"date": "2024-03-15"},
    )

    event = await calendar_client.update_event(connected_user, "evt-9", EventPatch(date=date(2024, 4, 1)))

    body = json.loads(fake_calendar.requests[0].content)
    assert fake_calendar.requests[0].method == "PATCH"
    assert body == {"start": {"date": "2024-04-01"}, "end": {"date": "2024-04-01"}}
    assert event.summary == "Follow-up: Acme"
    assert event.description == "Keep me\nLeadID:lead-42"
    assert event.start == date(2024, 4, 1)


async def test_update_can_clear_description(calendar_client, fake_calendar, connected_user) -> None:
    fake_calendar.add_event("evt-9", summary="x", description="old", start={"date": "2024-03-15"})

    await calendar_client.update_event(connected_user, "evt-9", EventPatch(description=""))

    assert json.loads(fake_calendar.requests[0].content) == {"description": ""}


async def test_update_missing_event_raises_not_found(calendar_client, connected_user) -> None:
    with pytest.raises(EventNotFoundError) as excinfo:
        await calendar_client.update_event(connected_user, "ghost", EventPatch(title="New"))

    assert excinfo.value.event_id == "ghost"


async def test_update_requires_at_least_one_field(calendar_client, fake_calendar, connected_user) -> None:
    with pytest.raises(EventValidationError):
        await calendar_client.update_event(connected_user, "evt-9", EventPatch())

    assert fake_calendar.requests == []


async def test_delete_twice_is_benign(calendar_client, fake_calendar, connected_user) -> None:
    fake_calendar.add_event("evt-3", summary="x", start={"date": "2024-03-15"})

    first = await calendar_client.delete_event(connected_user, "evt-3")
    second = await calendar_client.delete_event(connected_user, "evt-3")

    assert first is True
    assert second is False
    assert [request.method for request in fake_calendar.requests] == ["DELETE", "DELETE"]


async def test_delete_unknown_event_is_benign(calendar_client, connected_user) -> None:
    assert await calendar_client.delete_event(connected_user, "never-existed") is False


async def test_delete_auth_failure_is_upstream_error(calendar_client, fake_calendar, connected_user) -> None:
    fake_calendar.fail_with = 401

    with pytest.raises(UpstreamError):
        await calendar_client.delete_event(connected_user, "evt-3")


async def test_list_upcoming_refreshes_then_lists_window(
    calendar_client, fake_calendar, credential_store, token_endpoint
) -> None:
    credential_store.seed(
        CredentialRecord(
            user_id="user-1",
            access_token="expiring",
            refresh_token="refresh-1",
            expires_at=NOW + timedelta(seconds=10),
        )
    )
    fake_calendar.add_event(
        "evt-2",
        summary="Demo",
        start={"dateTime": "2024-03-02T15:00:00Z"},
        end={"dateTime": "2024-03-02T16:00:00Z"},
    )
    fake_calendar.add_event(
        "evt-1",
        summary="Follow-up: Acme",
        description="LeadID:lead-42",
        start={"date": "2024-03-02"},
        end={"date": "2024-03-02"},
    )

    events = await calendar_client.list_upcoming("user-1", 7)

    assert len(token_endpoint.calls) == 1
    assert len(credential_store.writes) == 1
    assert len(fake_calendar.requests) == 1
    request = fake_calendar.requests[0]
    assert request.method == "GET"
    assert request.headers["Authorization"] == "Bearer fresh-token"
    assert dict(request.url.params) == {
        "timeMin": "2024-03-01T12:00:00Z",
        "timeMax": "2024-03-08T12:00:00Z",
        "singleEvents": "true",
        "orderBy": "startTime",
        "maxResults": "50",
    }
    assert [event.id for event in events] == ["evt-1", "evt-2"]
    assert events[0].lead_id == "lead-42"
    assert events[1].start == datetime(2024, 3, 2, 15, 0, tzinfo=timezone.utc)
    assert events[1].all_day is False


async def test_list_upcoming_restarts_from_current_moment(
    config, refresher, http_client, fake_calendar, connected_user
) -> None:
    from leadsync.integrations.google_calendar import GoogleCalendarClient

    moments = iter([NOW, NOW + timedelta(hours=5)])
    client = GoogleCalendarClient(config, refresher, http_client=http_client, clock=lambda: next(moments))

    await client.list_upcoming(connected_user, 1)
    await client.list_upcoming(connected_user, 1)

    time_mins = [request.url.params["timeMin"] for request in fake_calendar.requests]
    assert time_mins == ["2024-03-01T12:00:00Z", "2024-03-01T17:00:00Z"]


async def test_list_upcoming_rejects_empty_window(calendar_client, connected_user) -> None:
    with pytest.raises(EventValidationError):
        await calendar_client.list_upcoming(connected_user, 0)


async def test_operations_without_connection_never_reach_the_network(calendar_client, fake_calendar) -> None:
    operations = [
        calendar_client.create_event("nobody", EventInput(title="Follow-up: Acme", date=date(2024, 3, 15))),
        calendar_client.update_event("nobody", "evt-1", EventPatch(title="x")),
        calendar_client.delete_event("nobody", "evt-1"),
        calendar_client.list_upcoming("nobody", 7),
    ]
    for operation in operations:
        with pytest.raises(NoConnectionError):
            await operation

    assert fake_calendar.requests == []


@pytest.mark.parametrize(
    "identifier",
    ["lead-42", "3f1c9a2e-6b1d-4c8a-9f0e-2b7d5e1a4c33", "with spaces inside", "Key:value:more", "ümlaut"],
)
def test_back_reference_round_trip(identifier) -> None:
    description = compose_description("Remember to send the quote", lead_id=identifier, note_id="note-1")

    assert extract_back_reference(description, "LeadID") == identifier
    assert extract_back_reference(description, "NoteID") == "note-1"


def test_embedded_tag_wins_over_free_text() -> None:
    description = compose_description("LeadID:not-this-one\nmore text", lead_id="lead-42")

    assert extract_back_reference(description) == "lead-42"


def test_extract_without_tag_returns_none() -> None:
    assert extract_back_reference(None) is None
    assert extract_back_reference("Just a reminder") is None


def test_identifiers_with_line_breaks_are_rejected() -> None:
    with pytest.raises(EventValidationError):
        compose_description("text", lead_id="lead\n42")


def test_back_reference_survives_crlf_line_endings() -> None:
    description = compose_description("Call back", lead_id="lead-42", note_id="n-1").replace("\n", "\r\n")

    assert extract_back_reference(description, "LeadID") == "lead-42"
    assert extract_back_reference(description, "NoteID") == "n-1"


def test_event_dates_reject_datetimes() -> None:
    with pytest.raises(EventValidationError):
        EventInput(title="Follow-up", date=datetime(2024, 3, 15, 9, 30))
    with pytest.raises(EventValidationError):
        EventPatch(date=datetime(2024, 3, 15))

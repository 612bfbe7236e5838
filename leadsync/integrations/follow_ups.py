from __future__ import annotations

import logging
from dataclasses import replace

from ..storage.memory import FollowUpStore
from ..storage.models import FollowUp
from .errors import EventNotFoundError, EventValidationError
from .google_calendar import (
    CalendarEvent,
    EventInput,
    EventPatch,
    GoogleCalendarClient,
    compose_description,
)

logger = logging.getLogger(__name__)


class FollowUpSyncService:
    """Links local follow-up notes to events in the user's Google Calendar.

    The remote event id written back onto a note is the only handle for later
    updates and deletes. The write happens after the remote create and is not
    compensated: when it fails the remote event is left orphaned.
    """

    def __init__(
        self,
        client: GoogleCalendarClient,
        follow_ups: FollowUpStore,
        *,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._follow_ups = follow_ups
        self._logger = logger_instance or logger

    async def sync_follow_up(self, user_id: str, follow_up: FollowUp) -> CalendarEvent:
        if follow_up.follow_up_date is None:
            raise EventValidationError(f"Follow-up {follow_up.id} has no follow-up date")
        event_input = EventInput(
            title=follow_up.event_title,
            date=follow_up.follow_up_date,
            description=follow_up.content,
            lead_id=follow_up.lead_id,
            note_id=follow_up.id,
        )
        return await self.create_linked_event(user_id, event_input)

    async def create_linked_event(self, user_id: str, event_input: EventInput) -> CalendarEvent:
        if event_input.note_id:
            # Unknown notes are rejected before anything is written remotely.
            await self._follow_ups.get(event_input.note_id)
        event = await self._client.create_event(user_id, event_input)
        if event_input.note_id:
            await self._follow_ups.set_remote_event_id(event_input.note_id, event.id)
            self._logger.debug("Linked note %s to calendar event %s", event_input.note_id, event.id)
        return event

    async def reschedule_follow_up(self, user_id: str, follow_up: FollowUp) -> CalendarEvent:
        """Push the note's current date and text onto its linked event.

        When the linked event was deleted on the calendar side the stale link is
        cleared and, for a dated note, a fresh event is created in its place.
        """

        if follow_up.remote_event_id is None:
            raise EventValidationError(f"Follow-up {follow_up.id} is not linked to a calendar event")
        patch = EventPatch(
            date=follow_up.follow_up_date,
            description=compose_description(
                follow_up.content,
                lead_id=follow_up.lead_id,
                note_id=follow_up.id,
            ),
        )
        try:
            return await self._client.update_event(user_id, follow_up.remote_event_id, patch)
        except EventNotFoundError:
            self._logger.info(
                "Calendar event %s for note %s is gone; clearing link",
                follow_up.remote_event_id,
                follow_up.id,
            )
            await self._follow_ups.set_remote_event_id(follow_up.id, None)
            if follow_up.follow_up_date is None:
                raise
            return await self.sync_follow_up(user_id, replace(follow_up, remote_event_id=None))

    async def unlink_follow_up(self, user_id: str, follow_up: FollowUp) -> bool:
        """Delete the linked event; an event that is already gone counts as removed."""

        if follow_up.remote_event_id is None:
            return False
        return await self._client.delete_event(user_id, follow_up.remote_event_id)

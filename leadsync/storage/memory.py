"""Persistence collaborator interfaces and their in-memory implementations."""

from __future__ import annotations

import uuid
from dataclasses import fields as dataclass_fields, replace
from datetime import date
from typing import Any, Protocol

from .models import CredentialRecord, FollowUp

_CREDENTIAL_FIELDS = {f.name for f in dataclass_fields(CredentialRecord)} - {"user_id"}
_FOLLOW_UP_FIELDS = {"content", "follow_up_date", "lead_name", "remote_event_id"}


class CredentialStore(Protocol):
    async def get_credential(self, user_id: str) -> CredentialRecord | None: ...

    async def upsert_credential(self, user_id: str, **fields: Any) -> CredentialRecord: ...

    async def delete_credential(self, user_id: str) -> None: ...


class FollowUpStore(Protocol):
    async def get(self, follow_up_id: str) -> FollowUp: ...

    async def set_remote_event_id(self, follow_up_id: str, remote_event_id: str | None) -> None: ...


class NoteStore(FollowUpStore, Protocol):
    async def create(
        self,
        *,
        lead_id: str,
        content: str,
        follow_up_date: date | None = None,
        lead_name: str | None = None,
    ) -> FollowUp: ...

    async def update(self, follow_up_id: str, **changes: Any) -> FollowUp: ...

    async def delete(self, follow_up_id: str) -> FollowUp: ...

    async def list_follow_ups(self) -> list[FollowUp]: ...


class FollowUpNotFoundError(LookupError):
    """Raised when a follow-up note does not exist locally."""


class InMemoryCredentialStore:
    """Credential records keyed by user; one live record per user."""

    def __init__(self) -> None:
        self._records: dict[str, CredentialRecord] = {}

    async def get_credential(self, user_id: str) -> CredentialRecord | None:
        record = self._records.get(user_id)
        # Copies; stored state only changes through upsert.
        return replace(record) if record is not None else None

    async def upsert_credential(self, user_id: str, **fields: Any) -> CredentialRecord:
        unknown = set(fields) - _CREDENTIAL_FIELDS
        if unknown:
            raise TypeError(f"Unknown credential field(s): {', '.join(sorted(unknown))}")
        existing = self._records.get(user_id)
        if existing is None:
            if "access_token" not in fields:
                raise ValueError("access_token is required when creating a credential")
            record = CredentialRecord(user_id=user_id, **fields)
        else:
            record = replace(existing, **fields)
        self._records[user_id] = record
        return replace(record)

    async def delete_credential(self, user_id: str) -> None:
        self._records.pop(user_id, None)


class InMemoryFollowUpStore:
    """Notes with optional follow-up dates."""

    def __init__(self) -> None:
        self._notes: dict[str, FollowUp] = {}

    async def create(
        self,
        *,
        lead_id: str,
        content: str,
        follow_up_date: date | None = None,
        lead_name: str | None = None,
    ) -> FollowUp:
        note = FollowUp(
            id=str(uuid.uuid4()),
            lead_id=lead_id,
            content=content,
            follow_up_date=follow_up_date,
            lead_name=lead_name,
        )
        self._notes[note.id] = note
        return replace(note)

    async def get(self, follow_up_id: str) -> FollowUp:
        try:
            return replace(self._notes[follow_up_id])
        except KeyError:
            raise FollowUpNotFoundError(follow_up_id) from None

    async def update(self, follow_up_id: str, **changes: Any) -> FollowUp:
        unknown = set(changes) - _FOLLOW_UP_FIELDS
        if unknown:
            raise TypeError(f"Unknown follow-up field(s): {', '.join(sorted(unknown))}")
        current = await self.get(follow_up_id)
        updated = replace(current, **changes)
        self._notes[follow_up_id] = updated
        return replace(updated)

    async def delete(self, follow_up_id: str) -> FollowUp:
        try:
            return self._notes.pop(follow_up_id)
        except KeyError:
            raise FollowUpNotFoundError(follow_up_id) from None

    async def set_remote_event_id(self, follow_up_id: str, remote_event_id: str | None) -> None:
        await self.update(follow_up_id, remote_event_id=remote_event_id)

    async def list_follow_ups(self) -> list[FollowUp]:
        dated = [note for note in self._notes.values() if note.follow_up_date is not None]
        dated.sort(key=lambda note: (note.follow_up_date, note.created_at))
        return [replace(note) for note in dated]

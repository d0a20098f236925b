"""Encrypted local mirror of fetched Google Calendar events."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError

from daypulse.crypto import Cipher, decrypt_or_none
from daypulse.models import CALENDAR_EVENTS_COLLECTION, CalendarCacheEntry
from daypulse.storage.documents import StoredDocument

logger = logging.getLogger(__name__)


class MirrorStore(Protocol):
    async def list(self, user_id: str, collection: str) -> list[StoredDocument]: ...

    async def put(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None: ...

    async def delete(self, user_id: str, collection: str, doc_id: str) -> bool: ...


@dataclass(frozen=True)
class MirrorWriteResult:
    calendar_id: str
    upserted: int
    removed: int


class CalendarMirror:
    """One encrypted document per event id in ``calendar_events``.

    The owning calendar id lives inside the encrypted payload, so replacing a
    calendar's slice decrypts the mirror to find that calendar's entries.
    """

    collection = CALENDAR_EVENTS_COLLECTION

    def __init__(self, store: MirrorStore, cipher: Cipher, user_id: str) -> None:
        self._store = store
        self._cipher = cipher
        self._user_id = user_id

    async def entries(self) -> list[CalendarCacheEntry]:
        """Decrypt and return every mirrored entry; unreadable documents are skipped."""
        entries: list[CalendarCacheEntry] = []
        for document in await self._store.list(self._user_id, self.collection):
            payload = await decrypt_or_none(
                self._cipher, document.value, context=f"{self.collection}/{document.doc_id}"
            )
            if payload is None:
                continue
            try:
                entries.append(CalendarCacheEntry.model_validate({"id": document.doc_id, **payload}))
            except ValidationError as exc:
                logger.debug("Skipping malformed mirror entry %s: %s", document.doc_id, exc)
        return entries

    async def replace_calendar(
        self, calendar_id: str, entries: Iterable[CalendarCacheEntry]
    ) -> MirrorWriteResult:
        """Make the mirror's slice for *calendar_id* equal *entries*.

        Entries are upserted by event id; ids previously owned by the calendar
        that are no longer present are deleted. Other calendars are untouched.
        """
        fresh = {entry.id: entry for entry in entries}
        previous_ids = {
            entry.id for entry in await self.entries() if entry.calendar_id == calendar_id
        }

        for entry in fresh.values():
            encrypted = await self._cipher.encrypt(entry.to_record())
            await self._store.put(self._user_id, self.collection, entry.id, encrypted)

        stale_ids = sorted(previous_ids - fresh.keys())
        for event_id in stale_ids:
            await self._store.delete(self._user_id, self.collection, event_id)

        logger.debug(
            "Mirror slice replaced (calendar_id=%s, upserted=%d, removed=%d)",
            calendar_id,
            len(fresh),
            len(stale_ids),
        )
        return MirrorWriteResult(calendar_id=calendar_id, upserted=len(fresh), removed=len(stale_ids))

    async def clear(self) -> int:
        """Delete every mirrored event. Returns the number of documents removed."""
        removed = 0
        for document in await self._store.list(self._user_id, self.collection):
            if await self._store.delete(self._user_id, self.collection, document.doc_id):
                removed += 1
        logger.info("Calendar mirror cleared (%d events)", removed)
        return removed

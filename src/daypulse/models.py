"""Shared data model for the alerts engine.

- ``AlertSource``: origin tag carried by every alert item
- ``SourceKind``: adapter-level key, one per backing collection
- ``SourceRecord``: decrypted record handed from an adapter to the normalizer
- ``AlertItem``: normalized, immutable worklist entry
- ``CalendarCacheEntry``: one mirrored Google Calendar event
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AlertSource(StrEnum):
    """Origin tag of an alert item."""

    task = "task"
    note = "note"
    markdown = "markdown"
    checklist = "checklist"
    counter = "counter"
    finance_subscription = "finance_subscription"
    finance_bill = "finance_bill"
    reminder = "reminder"
    calendar = "calendar"


class SourceKind(StrEnum):
    """Key under which a source adapter publishes its snapshot."""

    task = "task"
    note = "note"
    markdown = "markdown"
    checklist = "checklist"
    counter = "counter"
    finance = "finance"
    reminder = "reminder"
    calendar = "calendar"


# Backing collection for every adapter kind.
SOURCE_COLLECTIONS: Mapping[SourceKind, str] = {
    SourceKind.task: "tasks",
    SourceKind.note: "notes",
    SourceKind.markdown: "markdown",
    SourceKind.checklist: "checklists",
    SourceKind.counter: "counters",
    SourceKind.finance: "finance",
    SourceKind.reminder: "reminders",
    SourceKind.calendar: "calendar_events",
}

CALENDAR_EVENTS_COLLECTION = SOURCE_COLLECTIONS[SourceKind.calendar]


@dataclass(frozen=True)
class SourceRecord:
    """A document as seen by the normalizer.

    ``data`` is ``None`` when the adapter could not decrypt the document.
    """

    id: str
    data: Mapping[str, Any] | None


class AlertItem(BaseModel):
    """Normalized, source-tagged representation of a due-date-bearing record."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: AlertSource
    title: str
    date: datetime
    original: dict[str, Any] = Field(default_factory=dict)
    link: str | None = None
    calendar_name: str | None = None

    @field_validator("date")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("date must be timezone-aware")
        return value

    @property
    def key(self) -> tuple[AlertSource, str]:
        """Composite key, stable across recomputation cycles."""
        return (self.source, self.id)

    def is_overdue(self, now: datetime) -> bool:
        return self.date < now


class CalendarCacheEntry(BaseModel):
    """One Google Calendar event as stored (encrypted) in the calendar mirror.

    Field aliases are the stored document keys.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    title: str = Field(default="Busy", alias="summary")
    date: str = Field(alias="startStr")
    location: str | None = None
    link: str | None = None
    calendar_id: str = Field(alias="calendarId")
    calendar_name: str | None = Field(default=None, alias="calendarName")
    synced_at: str | None = Field(default=None, alias="syncedAt")
    source: Literal["calendar"] = "calendar"

    def to_record(self) -> dict[str, Any]:
        """Return the document body written to the mirror."""
        return self.model_dump(by_alias=True, exclude={"source"})

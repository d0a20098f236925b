"""Persistence for the alerts engine: document collections and local state."""

from daypulse.storage.calendar_ids import CalendarIdStore, parse_calendar_input
from daypulse.storage.documents import (
    DOCUMENTS_CHANNEL,
    DocumentChangeFeed,
    DocumentNotFoundError,
    DocumentStore,
    StoredDocument,
)

__all__ = [
    "DOCUMENTS_CHANNEL",
    "CalendarIdStore",
    "DocumentChangeFeed",
    "DocumentNotFoundError",
    "DocumentStore",
    "StoredDocument",
    "parse_calendar_input",
]

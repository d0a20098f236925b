"""Google Calendar integration: OAuth client, encrypted mirror and sync manager."""

from daypulse.calendar.google import (
    CalendarAuthError,
    CalendarRequestError,
    CalendarTokenError,
    GoogleCalendarClient,
    GoogleOAuthClient,
    OAuthToken,
)
from daypulse.calendar.mirror import CalendarMirror, MirrorWriteResult
from daypulse.calendar.sync import (
    CalendarSyncManager,
    CalendarSyncResult,
    SyncPhase,
    SyncSessionState,
    TokenClient,
)

__all__ = [
    "CalendarAuthError",
    "CalendarMirror",
    "CalendarRequestError",
    "CalendarSyncManager",
    "CalendarSyncResult",
    "CalendarTokenError",
    "GoogleCalendarClient",
    "GoogleOAuthClient",
    "MirrorWriteResult",
    "OAuthToken",
    "SyncPhase",
    "SyncSessionState",
    "TokenClient",
]

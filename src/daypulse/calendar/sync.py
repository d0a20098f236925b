"""Google Calendar sync lifecycle.

``CalendarSyncManager`` owns the OAuth session and keeps the encrypted
calendar mirror up to date::

    uninitialized -> client_loading -> client_ready
    client_ready  -> checking_stored_token -> signed_out | signed_in
    signed_in     -> syncing -> signed_in      (never two syncs at once)
    signed_in     -> signed_out                (disconnect)

Every failure path resolves to a state plus an error string; nothing here
propagates an exception to the UI layer except programming errors.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from daypulse.calendar.google import (
    CalendarAuthError,
    CalendarRequestError,
    CalendarTokenError,
    GoogleCalendarClient,
    GoogleOAuthClient,
    OAuthToken,
    google_event_to_cache_entry,
    safe_error_text,
)
from daypulse.calendar.mirror import CalendarMirror
from daypulse.config import CalendarSettings
from daypulse.crypto import Cipher, decrypt_or_none

logger = logging.getLogger(__name__)

SETTINGS_COLLECTION = "settings"
TOKEN_DOCUMENT_ID = "google_calendar_token"
# A stored token needs at least this much lifetime left to be reused.
TOKEN_MIN_TTL_SECONDS = 60
PRIMARY_CALENDAR_ID = "primary"
PRIMARY_CALENDAR_NAME = "My Calendar"
FALLBACK_CALENDAR_NAME = "Calendar"

CLIENT_INIT_FAILED_MESSAGE = "API Init Failed"
SESSION_EXPIRED_MESSAGE = "Session expired."

ConsentPrompt = Callable[[str], Awaitable[str | None]]
ErrorCallback = Callable[[str], None]
SignedInCallback = Callable[[], None]


class SyncPhase(StrEnum):
    uninitialized = "uninitialized"
    client_loading = "client_loading"
    client_ready = "client_ready"
    checking_stored_token = "checking_stored_token"
    signed_out = "signed_out"
    signed_in = "signed_in"
    syncing = "syncing"


@dataclass
class SyncSessionState:
    """Process-local view of the calendar integration."""

    phase: SyncPhase = SyncPhase.uninitialized
    client_ready: bool = False
    signed_in: bool = False
    syncing: bool = False
    last_error: str | None = None
    last_synced_at: datetime | None = None


@dataclass(frozen=True)
class CalendarSyncResult:
    """Outcome of one sync pass: events mirrored per calendar and per-calendar errors."""

    synced: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_summary(self) -> str | None:
        if not self.errors:
            return None
        messages = list(dict.fromkeys(self.errors.values()))
        if messages == [SESSION_EXPIRED_MESSAGE]:
            return SESSION_EXPIRED_MESSAGE
        return "; ".join(f"{calendar_id}: {message}" for calendar_id, message in self.errors.items())


class TokenStore(Protocol):
    async def get(self, user_id: str, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def put(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None: ...

    async def delete(self, user_id: str, collection: str, doc_id: str) -> bool: ...


def _safe_call(callback: Callable[..., None] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Calendar callback %r failed", callback)


def _extract_authorization_code(response: str, expected_state: str) -> str | None:
    """Accept either a bare code or the full redirect URL pasted back by the user."""
    value = response.strip()
    if not value:
        return None
    if "code=" not in value:
        return value
    query = parse_qs(urlparse(value).query)
    state = query.get("state", [None])[0]
    if state is not None and state != expected_state:
        raise CalendarTokenError("OAuth state mismatch in redirect URL")
    error = query.get("error", [None])[0]
    if error:
        raise CalendarTokenError(f"Authorization was denied: {error}")
    code = query.get("code", [None])[0]
    return code or None


class TokenClient:
    """Interactive consent flow bound to one manager."""

    def __init__(
        self,
        manager: CalendarSyncManager,
        consent: ConsentPrompt,
        on_signed_in: SignedInCallback | None = None,
    ) -> None:
        self._manager = manager
        self._consent = consent
        self._on_signed_in = on_signed_in

    async def request_access_token(self, *, prompt: str = "consent") -> bool:
        """Run consent and sign in. Returns ``False`` on cancellation or failure."""
        manager = self._manager
        try:
            oauth = manager.require_oauth()
            state = secrets.token_urlsafe(16)
            response = await self._consent(oauth.authorization_url(state=state, prompt=prompt))
            code = _extract_authorization_code(response, state) if response else None
            if code is None:
                logger.info("Google Calendar consent was cancelled")
                manager.mark_signed_out()
                return False
            token = await oauth.exchange_code(code)
        except asyncio.CancelledError:
            manager.mark_signed_out()
            raise
        except Exception as exc:
            message = safe_error_text(exc)
            logger.warning("Google Calendar sign-in failed: %s", message)
            manager.state.last_error = message
            manager.mark_signed_out()
            return False

        await manager.accept_token(token)
        _safe_call(self._on_signed_in)
        return True


class CalendarSyncManager:
    """OAuth lifecycle plus mirror sync for one user.

    Parameters
    ----------
    on_error:
        Receives the aggregated non-fatal error of a sync pass.
    clock:
        Returns the current aware datetime; used for token expiry and the
        sync window.
    """

    def __init__(
        self,
        *,
        user_id: str,
        settings: CalendarSettings,
        store: TokenStore,
        cipher: Cipher,
        mirror: CalendarMirror,
        http_client: httpx.AsyncClient | None = None,
        on_error: ErrorCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.state = SyncSessionState()
        self._user_id = user_id
        self._settings = settings
        self._store = store
        self._cipher = cipher
        self._mirror = mirror
        self._http_client = http_client
        self._owns_http_client = False
        self._on_error = on_error
        self._clock = clock or (lambda: datetime.now(UTC))
        self._oauth: GoogleOAuthClient | None = None
        self._calendar: GoogleCalendarClient | None = None
        self._token: OAuthToken | None = None
        self._token_client: TokenClient | None = None
        self._refresh_lock = asyncio.Lock()
        self._init_task: asyncio.Task[None] | None = None
        self._tracer = trace.get_tracer("daypulse")

    # ------------------------------------------------------------------
    # Client loading
    # ------------------------------------------------------------------

    def initialize(
        self,
        on_client_ready: Callable[[], None] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Task[None] | None:
        """Start loading the Calendar client in the background.

        Never raises: outside a running event loop, ``on_error`` is called
        immediately and ``None`` is returned.
        """
        if self._init_task is not None:
            return self._init_task
        if self.state.client_ready:
            _safe_call(on_client_ready)
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("Calendar client initialization requires a running event loop")
            self.state.last_error = CLIENT_INIT_FAILED_MESSAGE
            _safe_call(on_error, CLIENT_INIT_FAILED_MESSAGE)
            return None

        self._set_phase(SyncPhase.client_loading)
        self._init_task = loop.create_task(self._load_client(on_client_ready, on_error))
        return self._init_task

    async def _load_client(
        self,
        on_client_ready: Callable[[], None] | None,
        on_error: ErrorCallback | None,
    ) -> None:
        try:
            if not self._settings.client_id:
                raise CalendarAuthError("Google Calendar client_id is not configured")
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(timeout=30.0)
                self._owns_http_client = True
            self._oauth = GoogleOAuthClient(
                client_id=self._settings.client_id,
                client_secret=self._settings.client_secret,
                redirect_uri=self._settings.redirect_uri,
                http_client=self._http_client,
            )
            self._calendar = GoogleCalendarClient(self._http_client, self._access_token)
            await self._calendar.load_discovery()
        except Exception as exc:
            logger.error("Calendar client initialization failed: %s", safe_error_text(exc))
            self._init_task = None
            self.state.client_ready = False
            self.state.last_error = CLIENT_INIT_FAILED_MESSAGE
            self._set_phase(SyncPhase.uninitialized)
            _safe_call(on_error, CLIENT_INIT_FAILED_MESSAGE)
            return

        self.state.client_ready = True
        self._set_phase(SyncPhase.client_ready)
        logger.debug("Calendar client ready")
        _safe_call(on_client_ready)

    def require_oauth(self) -> GoogleOAuthClient:
        if self._oauth is None or not self.state.client_ready:
            raise CalendarAuthError("Calendar client is not initialized; call initialize first")
        return self._oauth

    def _require_calendar(self) -> GoogleCalendarClient:
        if self._calendar is None or not self.state.client_ready:
            raise CalendarAuthError("Calendar client is not initialized; call initialize first")
        return self._calendar

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    def create_token_client(
        self,
        consent: ConsentPrompt,
        on_signed_in: SignedInCallback | None = None,
    ) -> TokenClient:
        self._token_client = TokenClient(self, consent, on_signed_in)
        return self._token_client

    async def request_access_token(self, *, prompt: str = "consent") -> bool:
        """Trigger interactive consent through the current token client."""
        if self._token_client is None:
            logger.warning("request_access_token called before create_token_client")
            return False
        return await self._token_client.request_access_token(prompt=prompt)

    async def check_stored_token(
        self,
        on_signed_in: SignedInCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> bool:
        """Silently restore a previous session. Returns ``True`` when signed in."""
        if not self.state.client_ready:
            logger.debug("Skipping stored token check; calendar client not ready")
            return False

        self._set_phase(SyncPhase.checking_stored_token)
        try:
            token = await self._load_stored_token()
        except Exception as exc:
            logger.warning("Could not load stored calendar token: %s", safe_error_text(exc))
            token = None

        if token is None:
            self.mark_signed_out()
            return False

        if not token.expires_within(TOKEN_MIN_TTL_SECONDS, self._clock()):
            self._token = token
            self._mark_signed_in()
            _safe_call(on_signed_in)
            return True

        if token.refresh_token:
            try:
                refreshed = await self.require_oauth().refresh(token)
            except CalendarAuthError as exc:
                logger.warning("Stored calendar token refresh failed: %s", safe_error_text(exc))
            else:
                await self.accept_token(refreshed)
                _safe_call(on_signed_in)
                return True

        self.state.last_error = SESSION_EXPIRED_MESSAGE
        _safe_call(on_error, SESSION_EXPIRED_MESSAGE)
        try:
            await self._store.delete(self._user_id, SETTINGS_COLLECTION, TOKEN_DOCUMENT_ID)
        except Exception as exc:
            logger.warning("Could not clear expired calendar token: %s", exc)
        self.mark_signed_out()
        return False

    async def accept_token(self, token: OAuthToken) -> None:
        """Adopt *token*, persist it encrypted and switch to ``signed_in``.

        A persistence failure is logged; the session still signs in.
        """
        self._token = token
        await self._persist_token(token)
        self._mark_signed_in()
        logger.info("Google Calendar signed in")

    async def disconnect(self) -> None:
        """Sign out. The calendar mirror and calendar id list are kept."""
        token, self._token = self._token, None
        try:
            await self._store.delete(self._user_id, SETTINGS_COLLECTION, TOKEN_DOCUMENT_ID)
        except Exception as exc:
            logger.warning("Could not clear stored calendar token: %s", exc)
        if token is not None and self._oauth is not None:
            try:
                await self._oauth.revoke(token)
            except CalendarAuthError as exc:
                logger.warning("Google token revoke failed: %s", safe_error_text(exc))
        self.mark_signed_out()
        logger.info("Google Calendar disconnected")

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, calendar_ids: Sequence[str]) -> CalendarSyncResult | None:
        """Fetch upcoming events of every calendar and replace their mirror slices.

        Returns ``None`` without doing anything when signed out or when a sync
        is already running (the request is dropped).
        """
        if not self.state.signed_in or not self.state.client_ready:
            logger.debug("Calendar sync skipped; not signed in")
            return None
        if self.state.syncing:
            logger.info("Calendar sync already in progress; dropping request")
            return None

        self.state.syncing = True
        self._set_phase(SyncPhase.syncing)
        try:
            with self._tracer.start_as_current_span("daypulse.calendar.sync") as span:
                result = await self._sync_all(list(calendar_ids))
                span.set_attribute("calendar.synced_count", len(result.synced))
                span.set_attribute("calendar.error_count", len(result.errors))
        finally:
            self.state.syncing = False
            if self.state.signed_in:
                self._set_phase(SyncPhase.signed_in)

        summary = result.error_summary()
        if summary is None:
            self.state.last_error = None
            self.state.last_synced_at = self._clock()
        else:
            self.state.last_error = summary
            _safe_call(self._on_error, summary)
        return result

    async def _sync_all(self, calendar_ids: list[str]) -> CalendarSyncResult:
        calendar = self._require_calendar()
        now = self._clock()

        try:
            listed = await calendar.list_calendars()
        except Exception as exc:
            logger.warning("Calendar list fetch failed: %s", safe_error_text(exc))
            listed = []
        names: dict[str, str | None] = {
            str(item["id"]): item.get("summary") if isinstance(item.get("summary"), str) else None
            for item in listed
        }

        fetch_list = [*names, *calendar_ids] if names else [PRIMARY_CALENDAR_ID, *calendar_ids]
        unique_ids = list(dict.fromkeys(calendar_id for calendar_id in fetch_list if calendar_id))

        synced: dict[str, int] = {}
        errors: dict[str, str] = {}
        for calendar_id in unique_ids:
            try:
                events = await calendar.list_events(
                    calendar_id=calendar_id,
                    start_at=now,
                    end_at=now + timedelta(days=self._settings.window_days),
                    limit=self._settings.max_results,
                )
                calendar_name = names.get(calendar_id) or (
                    PRIMARY_CALENDAR_NAME
                    if calendar_id == PRIMARY_CALENDAR_ID
                    else FALLBACK_CALENDAR_NAME
                )
                entries = [
                    entry
                    for entry in (
                        google_event_to_cache_entry(
                            event,
                            calendar_id=calendar_id,
                            calendar_name=calendar_name,
                            synced_at=now,
                        )
                        for event in events
                    )
                    if entry is not None
                ]
                await self._mirror.replace_calendar(calendar_id, entries)
            except Exception as exc:
                message = self._describe_sync_error(exc)
                logger.error("Calendar sync failed for '%s': %s", calendar_id, message)
                errors[calendar_id] = message
                continue
            synced[calendar_id] = len(entries)

        logger.info(
            "Calendar sync completed (calendars=%d, failed=%d, events=%d)",
            len(synced),
            len(errors),
            sum(synced.values()),
        )
        return CalendarSyncResult(synced=synced, errors=errors)

    @staticmethod
    def _describe_sync_error(exc: Exception) -> str:
        if isinstance(exc, CalendarTokenError):
            return SESSION_EXPIRED_MESSAGE
        if isinstance(exc, CalendarRequestError) and exc.status_code == 401:
            return SESSION_EXPIRED_MESSAGE
        return safe_error_text(exc)

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    async def _access_token(self, force_refresh: bool = False) -> str:
        token = self._token
        if token is None:
            raise CalendarTokenError(SESSION_EXPIRED_MESSAGE)
        if not force_refresh and not token.expires_within(TOKEN_MIN_TTL_SECONDS, self._clock()):
            return token.access_token

        async with self._refresh_lock:
            token = self._token
            if token is None:
                raise CalendarTokenError(SESSION_EXPIRED_MESSAGE)
            if force_refresh or token.expires_within(TOKEN_MIN_TTL_SECONDS, self._clock()):
                token = await self.require_oauth().refresh(token)
                self._token = token
                await self._persist_token(token)
            return token.access_token

    async def _load_stored_token(self) -> OAuthToken | None:
        blob = await self._store.get(self._user_id, SETTINGS_COLLECTION, TOKEN_DOCUMENT_ID)
        payload = await decrypt_or_none(self._cipher, blob, context=TOKEN_DOCUMENT_ID)
        if payload is None:
            return None
        try:
            return OAuthToken.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Stored calendar token is malformed: %d error(s)", exc.error_count())
            return None

    async def _persist_token(self, token: OAuthToken) -> None:
        try:
            encrypted = await self._cipher.encrypt(token.model_dump(mode="json"))
            await self._store.put(self._user_id, SETTINGS_COLLECTION, TOKEN_DOCUMENT_ID, encrypted)
        except Exception as exc:
            logger.warning("Could not persist calendar token: %s", safe_error_text(exc))

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _set_phase(self, phase: SyncPhase) -> None:
        if self.state.phase is not phase:
            logger.debug("Calendar phase %s -> %s", self.state.phase, phase)
        self.state.phase = phase

    def _mark_signed_in(self) -> None:
        self.state.signed_in = True
        self.state.last_error = None
        self._set_phase(SyncPhase.syncing if self.state.syncing else SyncPhase.signed_in)

    def mark_signed_out(self) -> None:
        self._token = None
        self.state.signed_in = False
        self._set_phase(SyncPhase.signed_out)

    async def close(self) -> None:
        """Release the HTTP client and return to ``uninitialized``.

        A later :meth:`initialize` loads the client again and reports readiness
        anew, so the stored token is re-checked.
        """
        init_task, self._init_task = self._init_task, None
        if init_task is not None and not init_task.done():
            init_task.cancel()
            await asyncio.gather(init_task, return_exceptions=True)
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_http_client = False
        self._oauth = None
        self._calendar = None
        self._token = None
        self._token_client = None
        self.state.client_ready = False
        self.state.signed_in = False
        self.state.syncing = False
        self._set_phase(SyncPhase.uninitialized)

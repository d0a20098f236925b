"""Google OAuth and Google Calendar API helpers.

This module defines:
- ``OAuthToken``: the token set persisted (encrypted) for the signed-in user
- ``GoogleOAuthClient``: consent URL, code exchange, refresh and revoke
- ``GoogleCalendarClient``: read-only Calendar API requests with retry
- ``google_event_to_cache_entry``: event payload -> calendar mirror entry
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field

from daypulse.models import CalendarCacheEntry

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_DISCOVERY_URL = "https://www.googleapis.com/discovery/v1/apis/calendar/v3/rest"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.events.readonly",
    "https://www.googleapis.com/auth/calendar.readonly",
)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

DEFAULT_EXPIRES_IN_SECONDS = 3600

AccessTokenProvider = Callable[[bool], Awaitable[str]]


class CalendarAuthError(RuntimeError):
    """Base error raised by Google OAuth/Calendar helpers."""


class CalendarTokenError(CalendarAuthError):
    """Raised when a token cannot be obtained, exchanged or refreshed."""


class CalendarRequestError(CalendarAuthError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class OAuthToken(BaseModel):
    """Access token (and optional refresh token) for the Calendar API."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return self.expires_at - current <= timedelta(seconds=seconds)

    def __repr__(self) -> str:
        return (
            f"OAuthToken(access_token=<REDACTED>, expires_at={self.expires_at.isoformat()!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, scope={self.scope!r})"
        )

    __str__ = __repr__


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer)\s+[A-Za-z0-9._\-]+", r"\1 [REDACTED]", redacted)
    return redacted


def safe_error_text(exc: BaseException) -> str:
    """Redacted, whitespace-normalised, truncated text for surfacing an error."""
    return " ".join(redact_credential_values(str(exc)).split())[:200]


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _token_from_payload(
    payload: Any,
    *,
    previous_refresh_token: str | None = None,
    now: datetime | None = None,
) -> OAuthToken:
    if not isinstance(payload, dict):
        raise CalendarTokenError("Google OAuth token endpoint returned an unexpected payload")
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise CalendarTokenError("Google OAuth token response is missing a non-empty access_token")

    expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        # Google omits the refresh token on refresh responses.
        refresh_token = previous_refresh_token
    scope = payload.get("scope")
    return OAuthToken(
        access_token=access_token.strip(),
        expires_at=(now or datetime.now(UTC)) + timedelta(seconds=expires_in_seconds),
        refresh_token=refresh_token,
        scope=scope if isinstance(scope, str) else None,
        token_type=str(payload.get("token_type") or "Bearer"),
    )


class GoogleOAuthClient:
    """Installed-app OAuth helper for the read-only Calendar scopes."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        http_client: httpx.AsyncClient,
        scopes: tuple[str, ...] = GOOGLE_CALENDAR_SCOPES,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http_client = http_client
        self._scopes = scopes

    def authorization_url(self, *, state: str, prompt: str = "consent") -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": prompt,
            "state": state,
        }
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthToken:
        return await self._token_request(
            {
                "code": code.strip(),
                "redirect_uri": self._redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    async def refresh(self, token: OAuthToken) -> OAuthToken:
        if not token.refresh_token:
            raise CalendarTokenError("Session expired.")
        return await self._token_request(
            {"refresh_token": token.refresh_token, "grant_type": "refresh_token"},
            previous_refresh_token=token.refresh_token,
        )

    async def revoke(self, token: OAuthToken) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                data={"token": token.refresh_token or token.access_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenError(f"Google OAuth revoke request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenError(
                f"Google OAuth revoke failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )

    async def _token_request(
        self,
        grant: dict[str, str],
        *,
        previous_refresh_token: str | None = None,
    ) -> OAuthToken:
        data = {"client_id": self._client_id, **grant}
        if self._client_secret:
            data["client_secret"] = self._client_secret
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenError(f"Google OAuth token request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenError(
                "Google OAuth token request failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenError("Google OAuth token endpoint returned invalid JSON") from exc
        return _token_from_payload(payload, previous_refresh_token=previous_refresh_token)


class GoogleCalendarClient:
    """Read-only Google Calendar API client.

    ``token_provider(force_refresh)`` returns a bearer token; a 401 response
    is retried once with ``force_refresh=True``.
    """

    def __init__(self, http_client: httpx.AsyncClient, token_provider: AccessTokenProvider) -> None:
        self._http_client = http_client
        self._token_provider = token_provider

    async def load_discovery(self) -> dict[str, Any]:
        """Fetch the Calendar API discovery document (client readiness check)."""
        try:
            response = await self._http_client.get(GOOGLE_CALENDAR_DISCOVERY_URL)
        except httpx.HTTPError as exc:
            raise CalendarAuthError(f"Calendar discovery request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError("Calendar discovery document is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise CalendarAuthError("Calendar discovery document has an unexpected shape")
        return payload

    async def list_calendars(self) -> list[dict[str, Any]]:
        payload = await self._request_google_json("GET", "/users/me/calendarList")
        items = payload.get("items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict) and item.get("id")]

    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        normalized_calendar_id = quote(calendar_id, safe="")
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(start_at),
            "timeMax": _google_rfc3339(end_at),
            "showDeleted": "false",
            "singleEvents": "true",
            "maxResults": min(limit, 250),
            "orderBy": "startTime",
        }
        payload = await self._request_google_json(
            "GET",
            f"/calendars/{normalized_calendar_id}/events",
            params=params,
        )
        items = payload.get("items")
        if items is None:
            return []
        if not isinstance(items, list):
            raise CalendarAuthError("Google Calendar events response has a non-list items field")
        return [item for item in items if isinstance(item, dict)]

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(method=method, path=path, params=params)

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarAuthError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(method, url, params, force_refresh=False)
        if response.status_code == 401:
            try:
                response = await self._request_once(method, url, params, force_refresh=True)
            except CalendarTokenError:
                # No way to refresh; report the original 401.
                pass

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params, force_refresh=False)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_provider(force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarAuthError(f"Google Calendar request failed: {exc}") from exc


def google_event_to_cache_entry(
    payload: dict[str, Any],
    *,
    calendar_id: str,
    calendar_name: str | None,
    synced_at: datetime,
) -> CalendarCacheEntry | None:
    """Convert a Calendar API event into a mirror entry.

    Timed events keep their RFC 3339 ``dateTime``; all-day events keep the
    ``YYYY-MM-DD`` date. Events without an id or a start are skipped.
    """
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        return None
    start = payload.get("start")
    if not isinstance(start, dict):
        return None
    start_str = start.get("dateTime") or start.get("date")
    if not isinstance(start_str, str) or not start_str.strip():
        return None

    summary = payload.get("summary")
    location = payload.get("location")
    link = payload.get("htmlLink")
    return CalendarCacheEntry(
        id=event_id.strip(),
        title=summary.strip() if isinstance(summary, str) and summary.strip() else "Busy",
        date=start_str.strip(),
        location=location if isinstance(location, str) and location.strip() else None,
        link=link if isinstance(link, str) else None,
        calendar_id=calendar_id,
        calendar_name=calendar_name,
        synced_at=synced_at.astimezone(UTC).isoformat(),
    )

"""Shared test doubles for the DayPulse test suite."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import parse_qs, unquote

import httpx
import pytest

from daypulse.calendar.google import (
    GOOGLE_CALENDAR_DISCOVERY_URL,
    GOOGLE_OAUTH_REVOKE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
)
from daypulse.crypto import DecryptionError
from daypulse.storage.documents import DocumentNotFoundError, StoredDocument


class FakeCipher:
    """Reversible stand-in for the vault cipher: JSON wrapped in an envelope."""

    def __init__(self) -> None:
        self.encrypt_calls = 0

    async def encrypt(self, data: Mapping[str, Any]) -> dict[str, Any]:
        self.encrypt_calls += 1
        return {"iv": "test-iv", "data": json.dumps(dict(data), sort_keys=True)}

    async def decrypt(self, blob: Mapping[str, Any]) -> dict[str, Any]:
        data = blob.get("data")
        if not isinstance(data, str):
            raise DecryptionError("envelope has no ciphertext")
        try:
            return json.loads(data)
        except json.JSONDecodeError as exc:
            raise DecryptionError("corrupt ciphertext") from exc


class FakeChangeFeed:
    """In-process change feed; ``notify`` fans out synchronously."""

    def __init__(self) -> None:
        self._subscribers: dict[tuple[str, str], list[Callable[[], None]]] = defaultdict(list)

    def subscribe(
        self, user_id: str, collection: str, callback: Callable[[], None]
    ) -> Callable[[], None]:
        key = (user_id, collection)
        self._subscribers[key].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[key]:
                self._subscribers[key].remove(callback)

        return unsubscribe

    def subscriber_count(self, user_id: str, collection: str) -> int:
        return len(self._subscribers[(user_id, collection)])

    def notify(self, user_id: str, collection: str) -> None:
        for callback in list(self._subscribers[(user_id, collection)]):
            callback()


class InMemoryDocumentStore:
    """Dict-backed implementation of the DocumentStore interface."""

    def __init__(self, feed: FakeChangeFeed | None = None) -> None:
        self.documents: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.feed = feed
        self.fail_writes: Exception | None = None
        self.writes: list[tuple[str, str, str, str]] = []

    def _changed(self, user_id: str, collection: str) -> None:
        if self.feed is not None:
            self.feed.notify(user_id, collection)

    def _check_write(self) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes

    async def get(self, user_id: str, collection: str, doc_id: str) -> dict[str, Any] | None:
        value = self.documents.get((user_id, collection, doc_id))
        return dict(value) if value is not None else None

    async def list(self, user_id: str, collection: str) -> list[StoredDocument]:
        return [
            StoredDocument(doc_id=key[2], value=dict(value))
            for key, value in sorted(self.documents.items())
            if key[0] == user_id and key[1] == collection
        ]

    async def put(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None:
        self._check_write()
        self.writes.append(("put", user_id, collection, doc_id))
        self.documents[(user_id, collection, doc_id)] = dict(data)
        self._changed(user_id, collection)

    async def merge(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None:
        self._check_write()
        self.writes.append(("merge", user_id, collection, doc_id))
        current = self.documents.get((user_id, collection, doc_id), {})
        self.documents[(user_id, collection, doc_id)] = {**current, **data}
        self._changed(user_id, collection)

    async def update(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None:
        self._check_write()
        key = (user_id, collection, doc_id)
        if key not in self.documents:
            raise DocumentNotFoundError(user_id, collection, doc_id)
        self.writes.append(("update", user_id, collection, doc_id))
        self.documents[key] = {**self.documents[key], **data}
        self._changed(user_id, collection)

    async def delete(self, user_id: str, collection: str, doc_id: str) -> bool:
        self._check_write()
        self.writes.append(("delete", user_id, collection, doc_id))
        existed = self.documents.pop((user_id, collection, doc_id), None) is not None
        if existed:
            self._changed(user_id, collection)
        return existed

    async def seed(
        self,
        cipher: FakeCipher,
        user_id: str,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
    ) -> None:
        """Store *data* encrypted without recording a write or notifying."""
        self.documents[(user_id, collection, doc_id)] = await cipher.encrypt(data)

    async def decrypted(
        self, cipher: FakeCipher, user_id: str, collection: str, doc_id: str
    ) -> dict[str, Any] | None:
        value = self.documents.get((user_id, collection, doc_id))
        return await cipher.decrypt(value) if value is not None else None


class FakeGoogle:
    """Routes MockTransport requests to canned Google responses."""

    def __init__(self) -> None:
        self.calendar_list: list[dict[str, Any]] = []
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.event_status: dict[str, int] = {}
        self.discovery_status = 200
        self.token_response: dict[str, Any] = {
            "access_token": "at-new",
            "refresh_token": "rt-new",
            "expires_in": 3600,
        }
        self.token_requests: list[dict[str, list[str]]] = []
        self.revoked: list[str] = []
        self.event_requests: list[str] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == GOOGLE_CALENDAR_DISCOVERY_URL:
            return httpx.Response(self.discovery_status, json={"kind": "discovery#restDescription"})
        if url == GOOGLE_OAUTH_TOKEN_URL:
            self.token_requests.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json=self.token_response)
        if url == GOOGLE_OAUTH_REVOKE_URL:
            self.revoked.append(parse_qs(request.content.decode())["token"][0])
            return httpx.Response(200)

        path = unquote(request.url.path)
        if path.endswith("/users/me/calendarList"):
            return httpx.Response(200, json={"items": self.calendar_list})
        if "/calendars/" in path and path.endswith("/events"):
            calendar_id = path.split("/calendars/", 1)[1].rsplit("/events", 1)[0]
            self.event_requests.append(calendar_id)
            if self.gate is not None:
                await self.gate.wait()
            status = self.event_status.get(calendar_id, 200)
            if status != 200:
                return httpx.Response(status, json={"error": {"message": f"HTTP {status}"}})
            return httpx.Response(200, json={"items": self.events.get(calendar_id, [])})
        return httpx.Response(404, json={"error": {"message": "unexpected request"}})


async def drain() -> None:
    """Let queued background tasks run to completion."""
    for _ in range(10):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], attempts: int = 1000) -> None:
    """Yield to the loop until *predicate* holds; fails after *attempts* turns."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def cipher() -> FakeCipher:
    return FakeCipher()


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def store(feed: FakeChangeFeed) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(feed)


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()

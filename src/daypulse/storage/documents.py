"""Per-user document collections backed by PostgreSQL JSONB.

Each document is addressed by ``(user_id, collection, doc_id)`` and holds an
encrypted JSON object. Every insert, update and delete fires a
``pg_notify`` on :data:`DOCUMENTS_CHANNEL` (see the ``core`` migration
chain), which :class:`DocumentChangeFeed` fans out to subscribers.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import asyncpg

logger = logging.getLogger(__name__)

DOCUMENTS_CHANNEL = "daypulse_documents"

ChangeCallback = Callable[[], None]


class DocumentNotFoundError(LookupError):
    """Raised by a strict update when the target document does not exist."""

    def __init__(self, user_id: str, collection: str, doc_id: str) -> None:
        self.user_id = user_id
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} not found")


@dataclass(frozen=True)
class StoredDocument:
    doc_id: str
    value: dict[str, Any]


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned by asyncpg as text."""
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


def _as_object(value: Any) -> dict[str, Any]:
    decoded = decode_jsonb(value)
    return dict(decoded) if isinstance(decoded, Mapping) else {}


class DocumentReader(Protocol):
    async def list(self, user_id: str, collection: str) -> list[StoredDocument]: ...


class ChangeFeed(Protocol):
    def subscribe(
        self, user_id: str, collection: str, callback: ChangeCallback
    ) -> Callable[[], None]: ...


class DocumentStore:
    """Async CRUD over the ``documents`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, user_id: str, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return the stored object, or ``None`` when the document does not exist."""
        row = await self._pool.fetchval(
            "SELECT value FROM documents WHERE user_id = $1 AND collection = $2 AND doc_id = $3",
            user_id,
            collection,
            doc_id,
        )
        if row is None:
            return None
        return _as_object(row)

    async def list(self, user_id: str, collection: str) -> list[StoredDocument]:
        rows = await self._pool.fetch(
            """
            SELECT doc_id, value FROM documents
            WHERE user_id = $1 AND collection = $2
            ORDER BY doc_id
            """,
            user_id,
            collection,
        )
        return [StoredDocument(doc_id=row["doc_id"], value=_as_object(row["value"])) for row in rows]

    async def put(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None:
        """Create or wholly replace a document."""
        await self._pool.execute(
            """
            INSERT INTO documents (user_id, collection, doc_id, value, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, now(), now())
            ON CONFLICT (user_id, collection, doc_id) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now()
            """,
            user_id,
            collection,
            doc_id,
            json.dumps(dict(data)),
        )

    async def merge(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None:
        """Upsert: top-level keys of *data* overwrite, all other stored keys are kept.

        A missing document is created from *data*.
        """
        await self._pool.execute(
            """
            INSERT INTO documents (user_id, collection, doc_id, value, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, now(), now())
            ON CONFLICT (user_id, collection, doc_id) DO UPDATE
                SET value = documents.value || EXCLUDED.value,
                    updated_at = now()
            """,
            user_id,
            collection,
            doc_id,
            json.dumps(dict(data)),
        )

    async def update(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None:
        """Merge *data* into an existing document.

        Raises
        ------
        DocumentNotFoundError
            If the document does not exist.
        """
        status = await self._pool.execute(
            """
            UPDATE documents
            SET value = value || $4::jsonb,
                updated_at = now()
            WHERE user_id = $1 AND collection = $2 AND doc_id = $3
            """,
            user_id,
            collection,
            doc_id,
            json.dumps(dict(data)),
        )
        if status == "UPDATE 0":
            raise DocumentNotFoundError(user_id, collection, doc_id)

    async def delete(self, user_id: str, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns ``True`` if it existed."""
        status = await self._pool.execute(
            "DELETE FROM documents WHERE user_id = $1 AND collection = $2 AND doc_id = $3",
            user_id,
            collection,
            doc_id,
        )
        return status != "DELETE 0"


class DocumentChangeFeed:
    """Fan ``LISTEN`` notifications out to per-collection subscribers."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._connection: Any = None
        self._subscribers: dict[tuple[str, str], list[ChangeCallback]] = defaultdict(list)

    @property
    def listening(self) -> bool:
        return self._connection is not None

    async def start(self) -> None:
        if self._connection is not None:
            return
        connection = await self._pool.acquire()
        try:
            await connection.add_listener(DOCUMENTS_CHANNEL, self._on_notification)
        except Exception:
            await self._pool.release(connection)
            raise
        self._connection = connection
        logger.debug("Listening on %s", DOCUMENTS_CHANNEL)

    async def stop(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.remove_listener(DOCUMENTS_CHANNEL, self._on_notification)
        finally:
            await self._pool.release(connection)

    def subscribe(
        self, user_id: str, collection: str, callback: ChangeCallback
    ) -> Callable[[], None]:
        key = (user_id, collection)
        self._subscribers[key].append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(key, None)

        return unsubscribe

    def notify(self, user_id: str, collection: str) -> None:
        """Invoke every subscriber of ``(user_id, collection)``."""
        for callback in list(self._subscribers.get((user_id, collection), ())):
            try:
                callback()
            except Exception:
                logger.exception("Document change subscriber failed for %s", collection)

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            message = json.loads(payload)
            user_id = str(message["user_id"])
            collection = str(message["collection"])
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            logger.warning("Ignoring malformed %s payload %r: %s", channel, payload, exc)
            return
        self.notify(user_id, collection)

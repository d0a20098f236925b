"""Unit tests for the PostgreSQL document store and change feed."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from daypulse.storage.documents import (
    DOCUMENTS_CHANNEL,
    DocumentChangeFeed,
    DocumentNotFoundError,
    DocumentStore,
    StoredDocument,
    decode_jsonb,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def pool() -> AsyncMock:
    pool = AsyncMock()
    pool.execute = AsyncMock(return_value="INSERT 0 1")
    return pool


class TestDecodeJsonb:
    def test_passes_through_decoded_values(self):
        assert decode_jsonb({"a": 1}) == {"a": 1}

    def test_decodes_text(self):
        assert decode_jsonb('{"a": 1}') == {"a": 1}

    def test_double_encoded(self):
        assert decode_jsonb(json.dumps(json.dumps({"a": 1}))) == {"a": 1}


class TestDocumentStore:
    async def test_get_missing_returns_none(self, pool):
        pool.fetchval = AsyncMock(return_value=None)
        assert await DocumentStore(pool).get("u1", "tasks", "t1") is None
        assert pool.fetchval.await_args.args[1:] == ("u1", "tasks", "t1")

    async def test_get_decodes_text_value(self, pool):
        pool.fetchval = AsyncMock(return_value='{"iv": "x", "data": "y"}')
        assert await DocumentStore(pool).get("u1", "tasks", "t1") == {"iv": "x", "data": "y"}

    async def test_list_returns_documents_in_order(self, pool):
        pool.fetch = AsyncMock(
            return_value=[
                {"doc_id": "a", "value": {"data": "1"}},
                {"doc_id": "b", "value": '{"data": "2"}'},
            ]
        )
        documents = await DocumentStore(pool).list("u1", "notes")
        assert documents == [
            StoredDocument(doc_id="a", value={"data": "1"}),
            StoredDocument(doc_id="b", value={"data": "2"}),
        ]
        sql = pool.fetch.await_args.args[0]
        assert "ORDER BY doc_id" in sql

    async def test_put_upserts_json(self, pool):
        await DocumentStore(pool).put("u1", "tasks", "t1", {"iv": "x"})
        sql, *params = pool.execute.await_args.args
        assert "ON CONFLICT" in sql
        assert "SET value = EXCLUDED.value" in sql
        assert params == ["u1", "tasks", "t1", '{"iv": "x"}']

    async def test_merge_concatenates_jsonb(self, pool):
        await DocumentStore(pool).merge("u1", "finance", "f1", {"data": "z"})
        sql = pool.execute.await_args.args[0]
        assert "documents.value || EXCLUDED.value" in sql

    async def test_update_of_missing_document_raises(self, pool):
        pool.execute = AsyncMock(return_value="UPDATE 0")
        with pytest.raises(DocumentNotFoundError) as excinfo:
            await DocumentStore(pool).update("u1", "tasks", "gone", {"data": "z"})
        assert excinfo.value.doc_id == "gone"
        assert excinfo.value.collection == "tasks"

    async def test_update_existing(self, pool):
        pool.execute = AsyncMock(return_value="UPDATE 1")
        await DocumentStore(pool).update("u1", "tasks", "t1", {"data": "z"})
        assert pool.execute.await_args.args[0].strip().startswith("UPDATE documents")

    async def test_delete_reports_existence(self, pool):
        store = DocumentStore(pool)
        pool.execute = AsyncMock(return_value="DELETE 1")
        assert await store.delete("u1", "tasks", "t1") is True
        pool.execute = AsyncMock(return_value="DELETE 0")
        assert await store.delete("u1", "tasks", "t1") is False


class TestDocumentChangeFeed:
    def _payload(self, **fields: str) -> str:
        return json.dumps({"doc_id": "t1", "op": "UPDATE", **fields})

    def test_notification_reaches_matching_subscribers(self, pool):
        feed = DocumentChangeFeed(pool)
        calls: list[str] = []
        feed.subscribe("u1", "tasks", lambda: calls.append("tasks"))
        feed.subscribe("u1", "notes", lambda: calls.append("notes"))
        feed.subscribe("u2", "tasks", lambda: calls.append("other-user"))

        feed._on_notification(
            None, 1, DOCUMENTS_CHANNEL, self._payload(user_id="u1", collection="tasks")
        )

        assert calls == ["tasks"]

    def test_malformed_payload_is_ignored(self, pool):
        feed = DocumentChangeFeed(pool)
        calls: list[str] = []
        feed.subscribe("u1", "tasks", lambda: calls.append("x"))

        feed._on_notification(None, 1, DOCUMENTS_CHANNEL, "not json")
        feed._on_notification(None, 1, DOCUMENTS_CHANNEL, json.dumps({"user_id": "u1"}))

        assert calls == []

    def test_unsubscribe(self, pool):
        feed = DocumentChangeFeed(pool)
        calls: list[str] = []
        unsubscribe = feed.subscribe("u1", "tasks", lambda: calls.append("x"))
        unsubscribe()
        unsubscribe()
        feed.notify("u1", "tasks")
        assert calls == []

    def test_failing_subscriber_does_not_block_others(self, pool):
        feed = DocumentChangeFeed(pool)
        calls: list[str] = []

        def boom() -> None:
            raise RuntimeError("boom")

        feed.subscribe("u1", "tasks", boom)
        feed.subscribe("u1", "tasks", lambda: calls.append("ok"))
        feed.notify("u1", "tasks")
        assert calls == ["ok"]

    async def test_start_and_stop_manage_listener(self, pool):
        connection = MagicMock()
        connection.add_listener = AsyncMock()
        connection.remove_listener = AsyncMock()
        pool.acquire = AsyncMock(return_value=connection)
        pool.release = AsyncMock()
        feed = DocumentChangeFeed(pool)

        await feed.start()
        assert feed.listening
        connection.add_listener.assert_awaited_once_with(DOCUMENTS_CHANNEL, feed._on_notification)

        await feed.stop()
        assert not feed.listening
        connection.remove_listener.assert_awaited_once()
        pool.release.assert_awaited_once_with(connection)

"""Source adapter over one encrypted document collection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, tzinfo

from daypulse.crypto import Cipher, decrypt_or_none
from daypulse.models import SOURCE_COLLECTIONS, AlertItem, SourceKind, SourceRecord
from daypulse.normalizer import normalize
from daypulse.sources.base import Unsubscribe, UpdateCallback
from daypulse.storage.documents import ChangeFeed, DocumentReader

logger = logging.getLogger(__name__)


class _Subscription:
    """One live feed: reloads the whole collection on every change notification."""

    def __init__(
        self,
        adapter: CollectionSourceAdapter,
        user_id: str,
        cipher: Cipher,
        on_update: UpdateCallback,
    ) -> None:
        self._adapter = adapter
        self._user_id = user_id
        self._cipher = cipher
        self._on_update = on_update
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._unsubscribe_feed: Callable[[], None] | None = None

    def start(self) -> None:
        feed = self._adapter.feed
        if feed is None:
            raise RuntimeError(f"{self._adapter.kind} adapter has no change feed to subscribe to")
        self._unsubscribe_feed = feed.subscribe(
            self._user_id, self._adapter.collection, self.schedule_reload
        )
        self.schedule_reload()

    def schedule_reload(self) -> None:
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._reload())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reload(self) -> None:
        async with self._lock:
            if self._closed:
                return
            kind = self._adapter.kind
            try:
                items = await self._adapter.load(self._user_id, self._cipher)
            except Exception as exc:
                logger.error("Failed to load %s collection: %s", kind, exc, exc_info=True)
                return
            if self._closed:
                return
            try:
                self._on_update(kind, items)
            except Exception:
                logger.exception("Update callback failed for %s", kind)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe_feed is not None:
            self._unsubscribe_feed()
            self._unsubscribe_feed = None
        for task in list(self._tasks):
            task.cancel()


class CollectionSourceAdapter:
    """Adapter for one :class:`~daypulse.models.SourceKind`.

    Every change notification for the collection triggers a full reload,
    per-document decryption and normalization; the resulting snapshot is pushed
    to ``on_update``. Reloads of one subscription are serialised so snapshots
    arrive in order.
    """

    def __init__(
        self,
        kind: SourceKind,
        *,
        store: DocumentReader,
        feed: ChangeFeed | None = None,
        tz: tzinfo = UTC,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._kind = SourceKind(kind)
        self.collection = SOURCE_COLLECTIONS[self._kind]
        self.store = store
        self.feed = feed
        self.tz = tz
        self.clock = clock or (lambda: datetime.now(tz))

    @property
    def kind(self) -> SourceKind:
        return self._kind

    async def load(self, user_id: str, cipher: Cipher) -> list[AlertItem]:
        """Read, decrypt and normalize the whole collection once."""
        documents = await self.store.list(user_id, self.collection)
        records = [
            SourceRecord(
                id=document.doc_id,
                data=await decrypt_or_none(
                    cipher, document.value, context=f"{self._kind}/{document.doc_id}"
                ),
            )
            for document in documents
        ]
        return normalize(self._kind, records, tz=self.tz, now=self.clock())

    def subscribe(self, user_id: str, cipher: Cipher, on_update: UpdateCallback) -> Unsubscribe:
        """Start the feed. Must be called from within a running event loop."""
        subscription = _Subscription(self, user_id, cipher, on_update)
        subscription.start()
        return subscription.close


def default_adapters(
    *,
    store: DocumentReader,
    feed: ChangeFeed | None = None,
    tz: tzinfo = UTC,
    clock: Callable[[], datetime] | None = None,
) -> list[CollectionSourceAdapter]:
    """One adapter per source kind, the calendar mirror included.

    Without a *feed* the adapters only support one-shot :meth:`load` calls.
    """
    return [
        CollectionSourceAdapter(kind, store=store, feed=feed, tz=tz, clock=clock)
        for kind in SourceKind
    ]

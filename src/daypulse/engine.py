"""Alerts session: wires source feeds, calendar sync and actions together.

One :class:`AlertsEngine` corresponds to one signed-in session. It keeps the
latest snapshot per source kind, recomputes the categorized view whenever any
snapshot changes and hands the result to ``on_view``. The aggregated view is
never persisted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import Any

from daypulse.calendar.sync import CalendarSyncManager, CalendarSyncResult, ConsentPrompt
from daypulse.categorize import Bucket, Categorization, categorize
from daypulse.core.logging import set_user_context
from daypulse.crypto import Cipher
from daypulse.dispatch import ActionDispatcher, NavigationTarget
from daypulse.models import AlertItem, SourceKind
from daypulse.sources.base import SourceAdapter, Unsubscribe
from daypulse.storage.calendar_ids import CalendarIdStore
from daypulse.tabs import TabController

logger = logging.getLogger(__name__)

ViewListener = Callable[["AlertsView"], None]


@dataclass(frozen=True)
class AlertsView:
    """Everything a presentation layer needs after one recomputation."""

    categorization: Categorization
    active: Bucket
    auto_switched: bool
    loading: bool
    calendar_signed_in: bool
    calendar_syncing: bool
    calendar_error: str | None
    computed_at: datetime

    @property
    def visible(self) -> list[AlertItem]:
        return self.categorization.buckets[self.active]

    @property
    def focus(self) -> AlertItem | None:
        return self.categorization.focus


class AlertsEngine:
    """Session context owning the tab controller and all background work."""

    def __init__(
        self,
        *,
        user_id: str,
        cipher: Cipher,
        adapters: Iterable[SourceAdapter],
        dispatcher: ActionDispatcher,
        calendar: CalendarSyncManager | None = None,
        calendar_ids: CalendarIdStore | None = None,
        tz: tzinfo = UTC,
        clock: Callable[[], datetime] | None = None,
        on_view: ViewListener | None = None,
    ) -> None:
        self.user_id = user_id
        self.tabs = TabController()
        self._cipher = cipher
        self._adapters = list(adapters)
        self._dispatcher = dispatcher
        self._calendar = calendar
        self._calendar_ids = calendar_ids
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(tz))
        self._on_view = on_view

        self._snapshots: dict[SourceKind, list[AlertItem]] = {}
        self._loading = True
        self._unsubscribers: list[Unsubscribe] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._view: AlertsView | None = None
        self._ready = asyncio.Event()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe every adapter and start calendar client loading."""
        if self._started:
            return
        self._started = True
        set_user_context(self.user_id)

        for adapter in self._adapters:
            self._unsubscribers.append(
                adapter.subscribe(self.user_id, self._cipher, self._on_source_update)
            )
        if not self._adapters:
            self._ready.set()

        if self._calendar_ids is not None:
            await self._calendar_ids.load()
            self._unsubscribers.append(
                self._calendar_ids.add_listener(self._on_calendar_ids_changed)
            )

        if self._calendar is not None:
            self._calendar.initialize(
                on_client_ready=self._on_calendar_ready,
                on_error=self._on_calendar_error,
            )
        logger.info("Alerts session started (%d sources)", len(self._adapters))

    async def stop(self) -> None:
        """Unsubscribe all feeds and cancel pending background work."""
        for unsubscribe in self._unsubscribers:
            try:
                unsubscribe()
            except Exception:
                logger.exception("Failed to unsubscribe feed")
        self._unsubscribers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self._calendar is not None:
            await self._calendar.close()
        self._started = False
        self._ready.clear()
        logger.info("Alerts session stopped")

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    async def wait_ready(self, timeout: float | None = None) -> AlertsView:
        """Wait until every adapter has delivered its first snapshot.

        Raises :class:`TimeoutError` when *timeout* seconds pass first.
        """
        async with asyncio.timeout(timeout):
            await self._ready.wait()
        return self.view

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def view(self) -> AlertsView:
        return self._view if self._view is not None else self.recompute()

    def snapshot(self, kind: SourceKind) -> list[AlertItem]:
        return list(self._snapshots.get(kind, []))

    def _on_source_update(self, kind: SourceKind, items: list[AlertItem]) -> None:
        self._snapshots[kind] = list(items)
        if kind is not SourceKind.calendar:
            self._loading = False
        if all(adapter.kind in self._snapshots for adapter in self._adapters):
            self._ready.set()
        logger.debug("Snapshot updated (source=%s, items=%d)", kind, len(items))
        self.recompute()

    def recompute(self) -> AlertsView:
        """Categorize the union of all snapshots and apply the tab policy."""
        now = self._clock()
        merged = [item for items in self._snapshots.values() for item in items]
        result = categorize(merged, now)

        calendar_state = self._calendar.state if self._calendar is not None else None
        calendar_active = bool(self._snapshots.get(SourceKind.calendar)) or bool(
            calendar_state is not None and calendar_state.signed_in
        )
        self.tabs.evaluate(result.counts, calendar_active=calendar_active, loading=self._loading)

        self._view = AlertsView(
            categorization=result,
            active=self.tabs.active,
            auto_switched=self.tabs.auto_switched,
            loading=self._loading,
            calendar_signed_in=bool(calendar_state and calendar_state.signed_in),
            calendar_syncing=bool(calendar_state and calendar_state.syncing),
            calendar_error=calendar_state.last_error if calendar_state else None,
            computed_at=now,
        )
        if self._on_view is not None:
            try:
                self._on_view(self._view)
            except Exception:
                logger.exception("View listener failed")
        return self._view

    def select_tab(self, bucket: Bucket | str) -> AlertsView:
        self.tabs.select(bucket)
        return self.recompute()

    def next_tab(self) -> AlertsView:
        self.tabs.next()
        return self.recompute()

    def previous_tab(self) -> AlertsView:
        self.tabs.previous()
        return self.recompute()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def complete(self, item: AlertItem) -> None:
        await self._dispatcher.complete(item)

    async def snooze(self, item: AlertItem) -> datetime:
        return await self._dispatcher.snooze(item)

    def navigate(self, item: AlertItem) -> NavigationTarget:
        return self._dispatcher.navigate(item)

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    async def add_calendar(self, raw: str) -> bool:
        if self._calendar_ids is None:
            raise RuntimeError("No calendar id store configured")
        return await self._calendar_ids.add(raw)

    async def remove_calendar(self, calendar_id: str) -> bool:
        if self._calendar_ids is None:
            raise RuntimeError("No calendar id store configured")
        return await self._calendar_ids.remove(calendar_id)

    async def connect(self, consent: ConsentPrompt) -> bool:
        """Run interactive Google sign-in; a successful sign-in triggers a sync."""
        calendar = self._require_calendar()
        calendar.create_token_client(consent, on_signed_in=self._on_signed_in)
        signed_in = await calendar.request_access_token()
        self.recompute()
        return signed_in

    async def disconnect(self) -> None:
        await self._require_calendar().disconnect()
        self.recompute()

    async def sync_calendars(self) -> CalendarSyncResult | None:
        """Resync every subscribed calendar now."""
        calendar = self._require_calendar()
        ids = self._calendar_ids.ids if self._calendar_ids is not None else []
        result = await calendar.sync(ids)
        self.recompute()
        return result

    def _require_calendar(self) -> CalendarSyncManager:
        if self._calendar is None:
            raise RuntimeError("Google Calendar integration is not configured")
        return self._calendar

    def _on_calendar_ready(self) -> None:
        assert self._calendar is not None
        self._spawn(
            self._calendar.check_stored_token(
                on_signed_in=self._on_signed_in,
                on_error=self._on_calendar_error,
            ),
            name="daypulse-check-stored-token",
        )

    def _on_signed_in(self) -> None:
        self._spawn(self.sync_calendars(), name="daypulse-calendar-sync")

    def _on_calendar_ids_changed(self, ids: list[str]) -> None:
        if self._calendar is None or not self._calendar.state.signed_in:
            return
        logger.debug("Calendar id list changed (%d ids); resyncing", len(ids))
        self._spawn(self.sync_calendars(), name="daypulse-calendar-sync")

    def _on_calendar_error(self, message: str) -> None:
        logger.warning("Google Calendar: %s", message)
        self.recompute()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

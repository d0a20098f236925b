"""Generic alert actions routed back to the originating collection.

Each action resolves through an explicit table keyed by
:class:`~daypulse.models.AlertSource`:

- ``COMPLETION_PATCHES``: which collection and which fields mark an item done
- ``SNOOZE_TARGETS``: which collection and which date field a snooze moves
- ``NAVIGATION_ROUTES``: which in-app route opens an item

Calendar items are read-only mirrors: they cannot be completed or snoozed and
open their Google Calendar link instead of an in-app route.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal, Protocol

from daypulse.crypto import Cipher
from daypulse.models import AlertItem, AlertSource

logger = logging.getLogger(__name__)

# Fields never written back by a snooze.
SNOOZE_STRIPPED_FIELDS = frozenset({"id", "createdAt", "updatedAt"})


class ActionError(Exception):
    """Base error for alert actions."""


class ActionNotSupportedError(ActionError, ValueError):
    """Raised when an action is not defined for the item's source."""

    def __init__(self, action: str, source: AlertSource) -> None:
        self.action = action
        self.source = source
        super().__init__(f"{action} is not supported for {source} items")


class ActionWriteError(ActionError, RuntimeError):
    """Raised when the write-back of an action is rejected by the store."""

    def __init__(self, action: str, item: AlertItem, collection: str, cause: Exception) -> None:
        self.action = action
        self.source = item.source
        self.item_id = item.id
        self.collection = collection
        super().__init__(f"{action} of {item.source} {item.id!r} in {collection!r} failed: {cause}")


class DocumentWriter(Protocol):
    """Write side of the document store used by the dispatcher."""

    async def merge(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None: ...

    async def update(
        self, user_id: str, collection: str, doc_id: str, data: Mapping[str, Any]
    ) -> None: ...


class Navigator(Protocol):
    """UI hook that performs the actual navigation."""

    def open_route(self, route: str) -> None: ...

    def open_external(self, url: str) -> None: ...


@dataclass(frozen=True)
class CompletionPatch:
    collection: str
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class SnoozeTarget:
    collection: str
    date_field: str
    stripped_fields: frozenset[str] = field(default=SNOOZE_STRIPPED_FIELDS)


@dataclass(frozen=True)
class NavigationTarget:
    kind: Literal["route", "external"]
    target: str | None


COMPLETION_PATCHES: Mapping[AlertSource, CompletionPatch] = {
    AlertSource.task: CompletionPatch("tasks", {"completed": True}),
    AlertSource.reminder: CompletionPatch("reminders", {"isActive": False}),
}

SNOOZE_TARGETS: Mapping[AlertSource, SnoozeTarget] = {
    # A snooze must never carry a stale ``completed`` flag back onto a task.
    AlertSource.task: SnoozeTarget("tasks", "dueDate", SNOOZE_STRIPPED_FIELDS | {"completed"}),
    AlertSource.note: SnoozeTarget("notes", "dueDate"),
    AlertSource.markdown: SnoozeTarget("markdown", "dueDate"),
    AlertSource.checklist: SnoozeTarget("checklists", "dueDate"),
    AlertSource.counter: SnoozeTarget("counters", "dueDate"),
    AlertSource.reminder: SnoozeTarget("reminders", "datetime"),
    AlertSource.finance_subscription: SnoozeTarget("finance", "nextDate"),
    AlertSource.finance_bill: SnoozeTarget("finance", "dueDate"),
}

NAVIGATION_ROUTES: Mapping[AlertSource, Callable[[str], str]] = {
    AlertSource.task: lambda item_id: f"#tasks/inbox?edit={item_id}",
    AlertSource.note: lambda item_id: f"#notes/doc/{item_id}",
    AlertSource.markdown: lambda item_id: f"#markdown/doc/{item_id}",
    AlertSource.checklist: lambda item_id: f"#checklist/list/{item_id}",
    AlertSource.counter: lambda item_id: f"#counter?openId={item_id}",
    AlertSource.finance_subscription: lambda item_id: "#finance/subscriptions",
    AlertSource.finance_bill: lambda item_id: "#finance/expenses",
    AlertSource.reminder: lambda item_id: f"#reminders/upcoming?edit={item_id}",
}


def is_completable(source: AlertSource) -> bool:
    return source in COMPLETION_PATCHES


def is_snoozable(source: AlertSource) -> bool:
    return source in SNOOZE_TARGETS


def to_iso_utc(value: datetime) -> str:
    """Serialize like ``Date.toISOString``: UTC, millisecond precision, ``Z``."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def snoozed_date(value: datetime) -> datetime:
    """Advance *value* by one calendar day, keeping the local wall-clock time."""
    return value + timedelta(days=1)


def build_completion_payload(item: AlertItem) -> tuple[CompletionPatch, dict[str, Any]]:
    patch = COMPLETION_PATCHES.get(item.source)
    if patch is None:
        raise ActionNotSupportedError("complete", item.source)
    return patch, {**item.original, **patch.fields}


def build_snooze_payload(
    item: AlertItem,
) -> tuple[SnoozeTarget, datetime, dict[str, Any]]:
    """Return the target, the new due date and the payload for snoozing *item*."""
    target = SNOOZE_TARGETS.get(item.source)
    if target is None:
        raise ActionNotSupportedError("snooze", item.source)
    new_date = snoozed_date(item.date)
    payload = {**item.original, target.date_field: to_iso_utc(new_date)}
    for name in target.stripped_fields:
        payload.pop(name, None)
    return target, new_date, payload


def resolve_navigation(item: AlertItem) -> NavigationTarget:
    if item.source is AlertSource.calendar:
        return NavigationTarget(kind="external", target=item.link)
    route = NAVIGATION_ROUTES.get(item.source)
    if route is None:
        raise ActionNotSupportedError("navigate", item.source)
    return NavigationTarget(kind="route", target=route(item.id))


class ActionDispatcher:
    """Apply complete/snooze/navigate for one signed-in user."""

    def __init__(
        self,
        *,
        user_id: str,
        store: DocumentWriter,
        cipher: Cipher,
        navigator: Navigator | None = None,
    ) -> None:
        self._user_id = user_id
        self._store = store
        self._cipher = cipher
        self._navigator = navigator

    async def complete(self, item: AlertItem) -> None:
        """Mark a task complete or deactivate a reminder.

        The document must still exist; a stale item is a rejected write.
        """
        patch, payload = build_completion_payload(item)
        try:
            encrypted = await self._cipher.encrypt(payload)
            await self._store.update(self._user_id, patch.collection, item.id, encrypted)
        except Exception as exc:
            logger.error("Complete failed for %s %s: %s", item.source, item.id, exc)
            raise ActionWriteError("complete", item, patch.collection, exc) from exc
        logger.info("Completed %s %s", item.source, item.id)

    async def snooze(self, item: AlertItem) -> datetime:
        """Push the item's due date out by one day and return the new date.

        The write is an upsert-merge so a concurrently deleted document is
        recreated instead of failing.
        """
        target, new_date, payload = build_snooze_payload(item)
        try:
            encrypted = await self._cipher.encrypt(payload)
            await self._store.merge(self._user_id, target.collection, item.id, encrypted)
        except Exception as exc:
            logger.error("Snooze failed for %s %s: %s", item.source, item.id, exc)
            raise ActionWriteError("snooze", item, target.collection, exc) from exc
        logger.info(
            "Snoozed %s %s: %s -> %s", item.source, item.id, target.date_field, new_date.isoformat()
        )
        return new_date

    def navigate(self, item: AlertItem) -> NavigationTarget:
        target = resolve_navigation(item)
        if self._navigator is None:
            return target
        if target.kind == "external":
            if target.target:
                self._navigator.open_external(target.target)
            else:
                logger.warning("Calendar item %s has no link to open", item.id)
        else:
            assert target.target is not None
            self._navigator.open_route(target.target)
        return target

"""Map decrypted source records into :class:`~daypulse.models.AlertItem` objects.

``normalize`` is total: a record that cannot produce an item (undecryptable,
completed, inactive, dateless, unparsable date) is dropped and logged at DEBUG,
never raised.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

from daypulse.models import AlertItem, AlertSource, SourceKind, SourceRecord

logger = logging.getLogger(__name__)

_DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Calendar events that started longer ago than this are not shown.
CALENDAR_PAST_CUTOFF = timedelta(days=1)

# finance record ``type`` -> (alert source, date field)
FINANCE_TYPES: Mapping[str, tuple[AlertSource, str]] = {
    "subscriptions": (AlertSource.finance_subscription, "nextDate"),
    "debts": (AlertSource.finance_bill, "dueDate"),
}


def parse_due_date(value: Any, tz: tzinfo = UTC) -> datetime | None:
    """Parse a stored due date into an aware datetime in *tz*.

    Accepts ``datetime``/``date`` objects, ISO 8601 strings (``Z`` = UTC) and
    date-only strings, which resolve to local midnight. Returns ``None`` for
    anything else.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        normalized = value.strip()
        if not normalized:
            return None
        if _DATE_ONLY_PATTERN.match(normalized):
            try:
                parsed = datetime.combine(date.fromisoformat(normalized), time.min)
            except ValueError:
                return None
        else:
            if normalized.endswith(("Z", "z")):
                normalized = f"{normalized[:-1]}+00:00"
            try:
                parsed = datetime.fromisoformat(normalized)
            except ValueError:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def _title(data: Mapping[str, Any], *keys: str, default: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return default


def _read_standard(kind: SourceKind) -> Callable[..., AlertItem | None]:
    source = AlertSource(kind.value)

    def reader(record_id: str, data: Mapping[str, Any], tz: tzinfo, now: datetime | None):
        due = parse_due_date(data.get("dueDate"), tz)
        if due is None:
            return None
        return AlertItem(
            id=record_id,
            source=source,
            title=_title(data, "title", default="Untitled"),
            date=due,
            original=copy.deepcopy(dict(data)),
        )

    return reader


def _read_reminder(record_id: str, data: Mapping[str, Any], tz: tzinfo, now: datetime | None):
    if not data.get("isActive"):
        return None
    due = parse_due_date(data.get("datetime"), tz)
    if due is None:
        return None
    return AlertItem(
        id=record_id,
        source=AlertSource.reminder,
        title=_title(data, "title", default="Reminder"),
        date=due,
        original=copy.deepcopy(dict(data)),
    )


def _read_finance(record_id: str, data: Mapping[str, Any], tz: tzinfo, now: datetime | None):
    mapping = FINANCE_TYPES.get(data.get("type"))  # type: ignore[arg-type]
    if mapping is None:
        return None
    source, date_field = mapping
    due = parse_due_date(data.get(date_field), tz)
    if due is None:
        return None
    return AlertItem(
        id=record_id,
        source=source,
        title=_title(data, "name", "person", default="Bill"),
        date=due,
        original=copy.deepcopy(dict(data)),
    )


def _read_calendar(record_id: str, data: Mapping[str, Any], tz: tzinfo, now: datetime | None):
    start = parse_due_date(data.get("startStr"), tz)
    if start is None:
        return None
    if now is not None and start <= now - CALENDAR_PAST_CUTOFF:
        return None
    link = data.get("link")
    calendar_name = data.get("calendarName")
    return AlertItem(
        id=record_id,
        source=AlertSource.calendar,
        title=_title(data, "summary", default="Busy"),
        date=start,
        original=copy.deepcopy(dict(data)),
        link=link if isinstance(link, str) else None,
        calendar_name=calendar_name if isinstance(calendar_name, str) else None,
    )


_READERS: Mapping[SourceKind, Callable[..., AlertItem | None]] = {
    SourceKind.task: _read_standard(SourceKind.task),
    SourceKind.note: _read_standard(SourceKind.note),
    SourceKind.markdown: _read_standard(SourceKind.markdown),
    SourceKind.checklist: _read_standard(SourceKind.checklist),
    SourceKind.counter: _read_standard(SourceKind.counter),
    SourceKind.finance: _read_finance,
    SourceKind.reminder: _read_reminder,
    SourceKind.calendar: _read_calendar,
}


def normalize(
    source_key: SourceKind | str,
    records: Iterable[SourceRecord],
    *,
    tz: tzinfo = UTC,
    now: datetime | None = None,
) -> list[AlertItem]:
    """Normalize one adapter batch into alert items.

    Parameters
    ----------
    source_key:
        The adapter kind the batch came from.
    records:
        Decrypted records; ``data=None`` marks a decryption failure.
    tz:
        Local timezone used for naive and date-only values.
    now:
        Reference instant for dropping long-past calendar events. When
        omitted no calendar event is dropped for being in the past.
    """
    try:
        kind = SourceKind(source_key)
    except ValueError:
        logger.warning("Unknown source key %r; dropping batch", source_key)
        return []
    reader = _READERS[kind]

    items: list[AlertItem] = []
    dropped = 0
    for record in records:
        data = record.data
        if not isinstance(data, Mapping) or data.get("completed"):
            dropped += 1
            continue
        try:
            item = reader(str(record.id), data, tz, now)
        except Exception as exc:
            logger.debug("Dropping %s record %s: %s", kind, record.id, exc)
            item = None
        if item is None:
            dropped += 1
            continue
        items.append(item)

    if dropped:
        logger.debug("Normalized %s batch: kept=%d dropped=%d", kind, len(items), dropped)
    return items

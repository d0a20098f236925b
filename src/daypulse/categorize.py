"""Time bucketing of alert items.

Everything here is a pure function of its arguments. ``now`` must be
timezone-aware; its timezone defines the local calendar day used for the
day arithmetic.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from daypulse.models import AlertItem


class Bucket(StrEnum):
    """Mutually exclusive time categories, in display order."""

    today = "today"
    tomorrow = "tomorrow"
    this_week = "this_week"
    next_week = "next_week"
    upcoming = "upcoming"


BUCKET_ORDER: tuple[Bucket, ...] = tuple(Bucket)

BUCKET_LABELS: Mapping[Bucket, str] = {
    Bucket.today: "Today",
    Bucket.tomorrow: "Tomorrow",
    Bucket.this_week: "This Week",
    Bucket.next_week: "Next Week",
    Bucket.upcoming: "Upcoming",
}


@dataclass(frozen=True)
class Categorization:
    """Result of one categorization pass."""

    buckets: dict[Bucket, list[AlertItem]]
    counts: dict[Bucket, int]
    focus: AlertItem | None

    @property
    def items(self) -> list[AlertItem]:
        return [item for bucket in BUCKET_ORDER for item in self.buckets[bucket]]


def weekday_index(value: datetime) -> int:
    """Day of week with Sunday=0 ... Saturday=6."""
    return (value.weekday() + 1) % 7


def day_difference(value: datetime, now: datetime) -> int:
    """Number of local calendar days from ``now``'s day to ``value``'s day."""
    local = value.astimezone(now.tzinfo)
    return (local.date() - now.date()).days


def categorize_date(value: datetime, now: datetime) -> Bucket:
    """Assign a single instant to its bucket. Overdue instants land in ``today``."""
    if value < now:
        return Bucket.today

    diff_days = day_difference(value, now)
    if diff_days == 0:
        return Bucket.today
    if diff_days == 1:
        return Bucket.tomorrow

    days_until_end_of_week = 6 - weekday_index(now)
    if diff_days <= days_until_end_of_week:
        return Bucket.this_week
    if diff_days <= days_until_end_of_week + 7:
        return Bucket.next_week
    return Bucket.upcoming


def categorize(items: Iterable[AlertItem], now: datetime) -> Categorization:
    """Bucket *items*, count each bucket and pick the focus item."""
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    ordered = sorted(items, key=lambda item: item.date)
    buckets: dict[Bucket, list[AlertItem]] = {bucket: [] for bucket in BUCKET_ORDER}
    focus: AlertItem | None = None

    for item in ordered:
        bucket = categorize_date(item.date, now)
        buckets[bucket].append(item)
        # Every overdue item is bucketed as today, so the first today item is
        # the earliest urgent one.
        if focus is None and bucket is Bucket.today:
            focus = item

    if focus is None and ordered:
        focus = ordered[0]

    counts = {bucket: len(bucket_items) for bucket, bucket_items in buckets.items()}
    return Categorization(buckets=buckets, counts=counts, focus=focus)


def relative_label(value: datetime, now: datetime) -> str:
    """Short human label for a due instant relative to *now*."""
    delta = value - now
    if delta < timedelta(0):
        return "Overdue"
    if delta < timedelta(hours=1):
        return "In < 1 hr"
    local = value.astimezone(now.tzinfo)
    if delta < timedelta(hours=24) and local.day == now.day:
        return f"{local.hour % 12 or 12}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"
    if math.ceil(delta / timedelta(days=1)) == 1:
        return "Tomorrow"
    return f"{local.strftime('%b')} {local.day}"

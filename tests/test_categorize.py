"""Tests for time bucketing, focus selection and relative labels."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from daypulse.categorize import (
    BUCKET_ORDER,
    Bucket,
    categorize,
    categorize_date,
    day_difference,
    relative_label,
    weekday_index,
)
from daypulse.models import AlertItem, AlertSource

pytestmark = pytest.mark.unit

# Monday, 09:00 UTC
MONDAY = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def _item(item_id: str, when: datetime, source: AlertSource = AlertSource.task) -> AlertItem:
    return AlertItem(id=item_id, source=source, title=item_id, date=when)


class TestDayArithmetic:
    def test_weekday_index_starts_on_sunday(self):
        assert weekday_index(MONDAY) == 1
        assert weekday_index(MONDAY - timedelta(days=1)) == 0
        assert weekday_index(MONDAY + timedelta(days=5)) == 6

    def test_day_difference_uses_calendar_days_not_hours(self):
        late_tonight = MONDAY.replace(hour=23, minute=59)
        early_tomorrow = MONDAY.replace(hour=0, minute=1) + timedelta(days=1)
        assert day_difference(late_tonight, MONDAY) == 0
        assert day_difference(early_tomorrow, MONDAY) == 1

    def test_day_difference_follows_now_timezone(self):
        tokyo = ZoneInfo("Asia/Tokyo")
        now = datetime(2026, 10, 19, 22, 0, tzinfo=tokyo)
        # 15:30 UTC on the 19th is already the 20th in Tokyo.
        value = datetime(2026, 10, 19, 15, 30, tzinfo=UTC)
        assert day_difference(value, now) == 1


class TestCategorizeDate:
    def test_overdue_lands_in_today(self):
        assert categorize_date(MONDAY - timedelta(days=1), MONDAY) is Bucket.today
        assert categorize_date(MONDAY - timedelta(days=30), MONDAY) is Bucket.today

    def test_later_today(self):
        assert categorize_date(MONDAY.replace(hour=20), MONDAY) is Bucket.today

    def test_tomorrow(self):
        assert categorize_date(MONDAY + timedelta(days=1), MONDAY) is Bucket.tomorrow

    def test_monday_week_boundary(self):
        """On a Monday the week ends five days out; day six is next week."""
        assert categorize_date(MONDAY + timedelta(days=5), MONDAY) is Bucket.this_week
        assert categorize_date(MONDAY + timedelta(days=6), MONDAY) is Bucket.next_week

    def test_next_week_boundary(self):
        assert categorize_date(MONDAY + timedelta(days=12), MONDAY) is Bucket.next_week
        assert categorize_date(MONDAY + timedelta(days=13), MONDAY) is Bucket.upcoming

    def test_saturday_has_no_this_week(self):
        saturday = MONDAY + timedelta(days=5)
        assert categorize_date(saturday + timedelta(days=1), saturday) is Bucket.tomorrow
        assert categorize_date(saturday + timedelta(days=2), saturday) is Bucket.next_week
        assert categorize_date(saturday + timedelta(days=8), saturday) is Bucket.upcoming


class TestCategorize:
    def test_overdue_task_is_today_and_overdue(self):
        item = _item("yesterday", MONDAY - timedelta(days=1))
        result = categorize([item], MONDAY)
        assert result.buckets[Bucket.today] == [item]
        assert item.is_overdue(MONDAY)

    def test_buckets_partition_the_input(self):
        items = [
            _item(f"i{offset}", MONDAY + timedelta(days=offset, hours=1))
            for offset in range(-3, 20)
        ]
        result = categorize(items, MONDAY)

        seen = [item.key for bucket in BUCKET_ORDER for item in result.buckets[bucket]]
        assert len(seen) == len(set(seen)) == len(items)
        assert set(seen) == {item.key for item in items}
        assert sum(result.counts.values()) == len(items)
        assert all(result.counts[b] == len(result.buckets[b]) for b in BUCKET_ORDER)

    def test_buckets_are_sorted_ascending(self):
        later = _item("later", MONDAY.replace(hour=18))
        earlier = _item("earlier", MONDAY.replace(hour=11))
        result = categorize([later, earlier], MONDAY)
        assert result.buckets[Bucket.today] == [earlier, later]

    def test_focus_prefers_earliest_urgent_item(self):
        overdue = _item("overdue", MONDAY - timedelta(hours=2))
        tonight = _item("tonight", MONDAY.replace(hour=21))
        next_week = _item("next-week", MONDAY + timedelta(days=8))
        result = categorize([next_week, tonight, overdue], MONDAY)
        assert result.focus == overdue

    def test_focus_falls_back_to_earliest_overall(self):
        friday = _item("friday", MONDAY + timedelta(days=4))
        tomorrow = _item("tomorrow", MONDAY + timedelta(days=1))
        result = categorize([friday, tomorrow], MONDAY)
        assert result.focus == tomorrow

    def test_empty_input(self):
        result = categorize([], MONDAY)
        assert result.focus is None
        assert all(count == 0 for count in result.counts.values())
        assert result.items == []

    def test_naive_now_is_rejected(self):
        with pytest.raises(ValueError):
            categorize([], datetime(2026, 10, 19, 9, 0))

    def test_items_property_follows_bucket_order(self):
        upcoming = _item("upcoming", MONDAY + timedelta(days=40))
        today = _item("today", MONDAY.replace(hour=12))
        result = categorize([upcoming, today], MONDAY)
        assert result.items == [today, upcoming]


class TestRelativeLabel:
    def test_overdue(self):
        assert relative_label(MONDAY - timedelta(minutes=1), MONDAY) == "Overdue"

    def test_within_the_hour(self):
        assert relative_label(MONDAY + timedelta(minutes=30), MONDAY) == "In < 1 hr"

    def test_later_today_shows_clock_time(self):
        assert relative_label(MONDAY.replace(hour=15, minute=30), MONDAY) == "3:30 PM"
        assert relative_label(MONDAY.replace(hour=11, minute=5), MONDAY) == "11:05 AM"

    def test_early_tomorrow(self):
        assert relative_label(MONDAY + timedelta(hours=23), MONDAY) == "Tomorrow"

    def test_further_out_shows_month_and_day(self):
        assert relative_label(datetime(2026, 10, 23, 9, tzinfo=UTC), MONDAY) == "Oct 23"

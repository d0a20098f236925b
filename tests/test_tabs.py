"""Tests for the visible-bucket controller."""

from __future__ import annotations

import pytest

from daypulse.categorize import Bucket
from daypulse.tabs import TabController

pytestmark = pytest.mark.unit


def _counts(**overrides: int) -> dict[Bucket, int]:
    counts = {bucket: 0 for bucket in Bucket}
    counts.update({Bucket(name): value for name, value in overrides.items()})
    return counts


class TestAutoSwitch:
    def test_switches_to_this_week_when_today_and_tomorrow_are_empty(self):
        tabs = TabController()
        assert tabs.evaluate(_counts(this_week=2), calendar_active=True) is Bucket.this_week
        assert tabs.active is Bucket.this_week
        assert tabs.auto_switched

    def test_fires_at_most_once_per_session(self):
        tabs = TabController()
        tabs.evaluate(_counts(this_week=2), calendar_active=True)
        tabs.select(Bucket.today)
        for _ in range(3):
            assert tabs.evaluate(_counts(this_week=2), calendar_active=True) is None
        assert tabs.active is Bucket.today

    def test_fresh_controller_can_switch_again(self):
        first = TabController()
        first.evaluate(_counts(this_week=1), calendar_active=True)
        second = TabController()
        assert not second.auto_switched
        assert second.evaluate(_counts(this_week=1), calendar_active=True) is Bucket.this_week

    @pytest.mark.parametrize(
        ("counts", "calendar_active", "loading"),
        [
            (_counts(today=1, this_week=2), True, False),
            (_counts(tomorrow=1, this_week=2), True, False),
            (_counts(next_week=3), True, False),
            (_counts(this_week=2), False, False),
            (_counts(this_week=2), True, True),
        ],
    )
    def test_no_switch_when_condition_does_not_hold(self, counts, calendar_active, loading):
        tabs = TabController()
        assert tabs.evaluate(counts, calendar_active=calendar_active, loading=loading) is None
        assert tabs.active is Bucket.today
        assert not tabs.auto_switched


class TestNavigation:
    def test_select_accepts_strings(self):
        tabs = TabController()
        assert tabs.select("upcoming") is Bucket.upcoming

    def test_select_rejects_unknown_bucket(self):
        with pytest.raises(ValueError):
            TabController().select("someday")

    def test_next_and_previous_stop_at_the_ends(self):
        tabs = TabController()
        assert tabs.previous() is Bucket.today
        for expected in (Bucket.tomorrow, Bucket.this_week, Bucket.next_week, Bucket.upcoming):
            assert tabs.next() is expected
        assert tabs.next() is Bucket.upcoming
        assert tabs.previous() is Bucket.next_week

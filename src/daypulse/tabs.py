"""Visible-bucket policy for one alerts session."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from daypulse.categorize import BUCKET_ORDER, Bucket

logger = logging.getLogger(__name__)


class TabController:
    """Tracks the visible bucket and the one-time auto-switch.

    One instance belongs to one session; a fresh session starts with
    ``auto_switched`` false again.
    """

    def __init__(self, initial: Bucket = Bucket.today) -> None:
        self.active: Bucket = initial
        self.auto_switched = False

    def select(self, bucket: Bucket | str) -> Bucket:
        """Manual bucket choice."""
        self.active = Bucket(bucket)
        return self.active

    def evaluate(
        self,
        counts: Mapping[Bucket, int],
        *,
        calendar_active: bool,
        loading: bool = False,
    ) -> Bucket | None:
        """Apply the auto-switch rule after a recomputation.

        Switches to ``this_week`` when today and tomorrow are empty, this week
        is not, and the calendar integration has produced data. Fires at most
        once per session. Returns the new bucket when a switch happened.
        """
        if loading or self.auto_switched or not calendar_active:
            return None
        if counts.get(Bucket.today, 0) or counts.get(Bucket.tomorrow, 0):
            return None
        if not counts.get(Bucket.this_week, 0):
            return None

        self.active = Bucket.this_week
        self.auto_switched = True
        logger.debug("Auto-switched visible bucket to %s", self.active)
        return self.active

    def next(self) -> Bucket:
        index = BUCKET_ORDER.index(self.active)
        if index < len(BUCKET_ORDER) - 1:
            self.active = BUCKET_ORDER[index + 1]
        return self.active

    def previous(self) -> Bucket:
        index = BUCKET_ORDER.index(self.active)
        if index > 0:
            self.active = BUCKET_ORDER[index - 1]
        return self.active

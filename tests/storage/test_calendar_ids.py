"""Tests for the locally stored, encrypted calendar id list."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from daypulse.storage.calendar_ids import CalendarIdStore, parse_calendar_input

pytestmark = pytest.mark.unit


class TestParseCalendarInput:
    def test_bare_id(self):
        assert parse_calendar_input("  team@example.com ") == "team@example.com"

    def test_embed_url(self):
        url = (
            "https://calendar.google.com/calendar/embed?"
            "src=abc123%40group.calendar.google.com&ctz=Europe%2FBerlin"
        )
        assert parse_calendar_input(url) == "abc123@group.calendar.google.com"

    def test_blank(self):
        assert parse_calendar_input("   ") is None


@pytest.fixture
def path(tmp_path: Path) -> Path:
    return tmp_path / "nested" / "calendar_ids.json"


class TestCalendarIdStore:
    async def test_missing_file_loads_empty(self, path, cipher):
        assert await CalendarIdStore(path, cipher).load() == []

    async def test_add_persists_encrypted(self, path, cipher):
        store = CalendarIdStore(path, cipher)
        assert await store.add("team@example.com")

        blob = json.loads(path.read_text())
        assert set(blob) == {"iv", "data"}
        assert await CalendarIdStore(path, cipher).load() == ["team@example.com"]

    async def test_duplicates_and_blanks_are_ignored(self, path, cipher):
        store = CalendarIdStore(path, cipher)
        await store.add("a@example.com")
        assert await store.add("a@example.com") is False
        embed = "https://calendar.google.com/calendar/embed?src=a%40example.com"
        assert await store.add(embed) is False
        assert await store.add("") is False
        assert store.ids == ["a@example.com"]

    async def test_remove(self, path, cipher):
        store = CalendarIdStore(path, cipher)
        await store.add("a@example.com")
        await store.add("b@example.com")

        assert await store.remove("a@example.com")
        assert await store.remove("a@example.com") is False
        assert await CalendarIdStore(path, cipher).load() == ["b@example.com"]

    async def test_listeners_see_every_change(self, path, cipher):
        store = CalendarIdStore(path, cipher)
        seen: list[list[str]] = []
        remove_listener = store.add_listener(seen.append)

        await store.add("a@example.com")
        await store.add("b@example.com")
        await store.remove("a@example.com")
        remove_listener()
        await store.add("c@example.com")

        assert seen == [["a@example.com"], ["a@example.com", "b@example.com"], ["b@example.com"]]

    async def test_unreadable_file_loads_empty(self, path, cipher):
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert await CalendarIdStore(path, cipher).load() == []

        path.write_text(json.dumps({"iv": "x"}))
        assert await CalendarIdStore(path, cipher).load() == []

    async def test_failed_write_keeps_previous_file(self, path, cipher, monkeypatch):
        store = CalendarIdStore(path, cipher)
        await store.add("a@example.com")

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("daypulse.storage.calendar_ids.os.replace", fail_replace)
        with pytest.raises(OSError, match="disk full"):
            await store.add("b@example.com")

        assert store.ids == ["a@example.com"]
        assert await CalendarIdStore(path, cipher).load() == ["a@example.com"]
        assert sorted(p.name for p in path.parent.iterdir()) == ["calendar_ids.json"]

    async def test_save_leaves_no_temp_file(self, path, cipher):
        store = CalendarIdStore(path, cipher)
        await store.add("a@example.com")
        await store.add("b@example.com")
        assert sorted(p.name for p in path.parent.iterdir()) == ["calendar_ids.json"]

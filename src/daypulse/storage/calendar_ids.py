"""Subscribed Google Calendar identifiers, stored in a local file.

The list lives on the client rather than in the document store. It is written
through the session cipher and covered by the same encryption as every other
piece of user data.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from pathlib import Path
from urllib.parse import unquote

from daypulse.crypto import Cipher, decrypt_or_none

logger = logging.getLogger(__name__)

_EMBED_SRC_PATTERN = re.compile(r"src=([^&]+)")

CalendarIdsListener = Callable[[list[str]], None]


def _atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* in one step; a failed write leaves the previous file intact."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content)
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def parse_calendar_input(raw: str) -> str | None:
    """Extract a calendar id from user input.

    Accepts a bare id or a Google Calendar embed URL carrying ``src=<id>``.
    Returns ``None`` for blank input.
    """
    value = raw.strip()
    if not value:
        return None
    if "src=" in value:
        match = _EMBED_SRC_PATTERN.search(value)
        if match:
            value = unquote(match.group(1)).strip()
    return value or None


class CalendarIdStore:
    """Ordered, de-duplicated list of extra calendars to sync."""

    def __init__(self, path: Path, cipher: Cipher) -> None:
        self._path = Path(path).expanduser()
        self._cipher = cipher
        self._ids: list[str] = []
        self._listeners: list[CalendarIdsListener] = []

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def add_listener(self, listener: CalendarIdsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def load(self) -> list[str]:
        """Read the list from disk. A missing or unreadable file yields ``[]``."""
        if not self._path.exists():
            self._ids = []
            return []
        try:
            blob = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read calendar id list %s: %s", self._path, exc)
            self._ids = []
            return []

        payload = await decrypt_or_none(
            self._cipher,
            blob if isinstance(blob, dict) else None,
            context=str(self._path),
        )
        raw_ids = payload.get("calendarIds") if payload else None
        if not isinstance(raw_ids, list):
            self._ids = []
            return []
        self._ids = list(dict.fromkeys(str(i) for i in raw_ids if isinstance(i, str) and i))
        return self.ids

    async def add(self, raw: str) -> bool:
        """Add a calendar by id or embed URL. Returns ``True`` when the list changed."""
        calendar_id = parse_calendar_input(raw)
        if calendar_id is None or calendar_id in self._ids:
            return False
        await self._save([*self._ids, calendar_id])
        return True

    async def remove(self, calendar_id: str) -> bool:
        if calendar_id not in self._ids:
            return False
        await self._save([i for i in self._ids if i != calendar_id])
        return True

    async def _save(self, ids: list[str]) -> None:
        encrypted = await self._cipher.encrypt({"calendarIds": ids})
        _atomic_write_text(self._path, json.dumps(encrypted))
        self._ids = ids
        logger.info("Calendar id list updated (%d calendars)", len(ids))
        for listener in list(self._listeners):
            try:
                listener(self.ids)
            except Exception:
                logger.exception("Calendar id listener failed")

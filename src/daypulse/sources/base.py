"""Source adapter contract."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from daypulse.crypto import Cipher
from daypulse.models import AlertItem, SourceKind

UpdateCallback = Callable[[SourceKind, list[AlertItem]], None]
Unsubscribe = Callable[[], None]


class SourceAdapter(Protocol):
    """Live, decrypted feed of reminder-bearing records for one collection kind.

    ``subscribe`` must push the full current snapshot for the kind on every
    change (not a delta) and return a callable that stops the feed.
    """

    @property
    def kind(self) -> SourceKind: ...

    def subscribe(self, user_id: str, cipher: Cipher, on_update: UpdateCallback) -> Unsubscribe: ...

"""Advisory, in-memory tracking of who is editing which cell."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .models import Identity

DEFAULT_TTL_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class EditPresenceEntry:
    key: str
    overlay_id: str
    user: str
    session_id: str
    started_at: float


class EditPresenceTracker:
    """Best-effort record of open edits; entries expire after ``ttl`` seconds.

    Expiry is evaluated whenever entries are read, so no timer is needed.
    """

    def __init__(
        self,
        identity: Identity,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.identity = identity
        self.ttl = max(float(ttl), 0.0)
        self._clock = clock
        self._entries: dict[tuple[str, str], EditPresenceEntry] = {}

    def track_start(self, key: str, overlay_id: str, identity: Identity | None = None) -> EditPresenceEntry:
        who = identity or self.identity
        entry = EditPresenceEntry(
            key=key,
            overlay_id=overlay_id,
            user=who.user,
            session_id=who.session_id,
            started_at=self._clock(),
        )
        self._entries[(key, overlay_id)] = entry
        return entry

    def track_end(self, key: str, overlay_id: str) -> None:
        self._entries.pop((key, overlay_id), None)

    def editors_for(self, key: str) -> list[EditPresenceEntry]:
        self.prune()
        return [entry for (entry_key, _), entry in self._entries.items() if entry_key == key]

    def is_edited_by_others(self, key: str, self_user: str | None = None, self_session: str | None = None) -> bool:
        user = self.identity.user if self_user is None else self_user
        session = self.identity.session_id if self_session is None else self_session
        return any(entry.user != user or entry.session_id != session for entry in self.editors_for(key))

    def others_editing(self, key: str) -> list[EditPresenceEntry]:
        return [
            entry
            for entry in self.editors_for(key)
            if entry.user != self.identity.user or entry.session_id != self.identity.session_id
        ]

    def prune(self) -> int:
        now = self._clock()
        expired = [slot for slot, entry in self._entries.items() if now - entry.started_at >= self.ttl]
        for slot in expired:
            del self._entries[slot]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self.prune()
        return len(self._entries)

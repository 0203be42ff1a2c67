"""
Short-window suppression of repeated inbound events.

Upstream frequently redelivers the same chat / gift / social message in
bursts (reconnects, websocket upgrade overlap). Each event is reduced to a
deterministic signature over its STABLE fields; a signature seen within
the window is reported as a duplicate.

Invariants:
- Volatile fields (arrival timestamps, counters we add) never enter the hash
- Expired entries are purged before every lookup
- The store never exceeds max_entries; oldest entries are evicted first
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Mapping

from clock import Clock
from observability.logger import log_event
from policy import DEDUP_MAX_ENTRIES, DEDUP_WINDOW_MS


# Stable payload fields per event type (normalized payload names)
_USER_FIELDS: tuple[str, ...] = ("user_id", "username")

STABLE_FIELDS: dict[str, tuple[str, ...]] = {
    "chat": _USER_FIELDS + ("comment",),
    "gift": _USER_FIELDS + ("gift_id", "gift_name", "repeat_count", "streak_end"),
    "follow": _USER_FIELDS,
    "share": _USER_FIELDS,
    "like": _USER_FIELDS + ("like_count", "total_likes"),
    "roomUser": ("viewer_count",),
}


@dataclass(frozen=True)
class DedupEntry:
    hash: str
    first_seen_at_ms: int


def event_signature(event_type: str, payload: Mapping[str, Any]) -> str:
    """
    Deterministic hash over (event_type, stable payload subset).

    An upstream message id, when present, identifies the event on its own.
    """
    components: list[str] = [event_type]

    msg_id = payload.get("msg_id")
    if msg_id:
        components.append(f"msg_id={msg_id}")
    else:
        for name in STABLE_FIELDS.get(event_type, _USER_FIELDS):
            value = payload.get(name)
            if value is not None and value != "":
                components.append(f"{name}={value}")

    return hashlib.sha1("|".join(components).encode("utf-8")).hexdigest()


class EventDeduplicator:
    """Owns its entry store; insertion order == first-seen order."""

    def __init__(
        self,
        *,
        clock: Clock,
        window_ms: int = DEDUP_WINDOW_MS,
        max_entries: int = DEDUP_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._clock = clock
        self._window_ms = window_ms
        self._max_entries = max_entries
        self._entries: OrderedDict[str, DedupEntry] = OrderedDict()
        self.suppressed = 0
        self.evicted = 0

    def is_duplicate(self, event_type: str, payload: Mapping[str, Any]) -> bool:
        now = self._clock.now_ms()
        self._purge(now)

        digest = event_signature(event_type, payload)
        if digest in self._entries:
            self.suppressed += 1
            log_event({
                "event_type": "DUPLICATE_EVENT_SUPPRESSED",
                "stream_event": event_type,
                "hash": digest[:12],
            })
            return True

        self._entries[digest] = DedupEntry(hash=digest, first_seen_at_ms=now)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self.evicted += 1
        return False

    def sweep(self) -> int:
        """Purge expired entries. Returns the number removed."""
        before = len(self._entries)
        self._purge(self._clock.now_ms())
        return before - len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_entries": self._max_entries,
            "window_s": self._window_ms / 1000,
            "suppressed": self.suppressed,
            "evicted": self.evicted,
        }

    def _purge(self, now: int) -> None:
        # Oldest first: stop at the first entry still inside the window
        while self._entries:
            oldest = next(iter(self._entries.values()))
            if now - oldest.first_seen_at_ms < self._window_ms:
                break
            self._entries.popitem(last=False)

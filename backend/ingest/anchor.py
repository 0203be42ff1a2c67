"""
Stream start anchor.

Derives the best-known wall-clock time at which the broadcast began, so
elapsed duration reflects the stream rather than when we connected.

Source precedence (most authoritative first):
    SESSION_METADATA > EARLIEST_EVENT > CONNECT_FALLBACK

Rules:
- A SESSION_METADATA anchor is never replaced by an event observation
- An EARLIEST_EVENT anchor is upgraded when metadata later yields a value
- Unset anchor means "elapsed unknown" (None), never 0
- The anchor is persisted per target so a reconnect to the same user
  restores it; reset() is explicit (manual disconnect, target change)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping

from clock import Clock
from observability.logger import log_event
from policy import (
    ANCHOR_CANDIDATE_FIELDS,
    ANCHOR_FUTURE_TOLERANCE_MS,
    ANCHOR_NESTED_CONTAINERS,
    ANCHOR_PERSIST_KEY,
    ANCHOR_SANITY_FLOOR_MS,
    ANCHOR_SECONDS_THRESHOLD,
)
from resolution.session import normalize_handle
from storage.persistence import PersistencePort


class AnchorSource(str, Enum):
    SESSION_METADATA = "session_metadata"
    EARLIEST_EVENT = "earliest_event"
    CONNECT_FALLBACK = "connect_fallback"


_RANK: dict[AnchorSource, int] = {
    AnchorSource.SESSION_METADATA: 3,
    AnchorSource.EARLIEST_EVENT: 2,
    AnchorSource.CONNECT_FALLBACK: 1,
}


@dataclass(frozen=True)
class StreamAnchor:
    start_time_ms: int
    source: AnchorSource
    persisted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time_ms": self.start_time_ms,
            "source": self.source.value,
            "persisted": self.persisted,
        }


def to_epoch_ms(value: Any) -> int | None:
    """
    Normalize a raw timestamp to epoch milliseconds.

    Accepts int/float/numeric-string, in seconds or milliseconds.
    Returns None for anything non-numeric, non-finite or non-positive.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value <= 0:
        return None
    if value < ANCHOR_SECONDS_THRESHOLD:
        return int(value * 1000)
    return int(value)


def extract_start_time(metadata: Mapping[str, Any] | None, *, now_ms: int) -> int | None:
    """
    First plausible start time from metadata, trying candidate fields in
    declared order at top level, then inside each nested container.
    """
    if not metadata:
        return None

    scopes: list[Mapping[str, Any]] = [metadata]
    for name in ANCHOR_NESTED_CONTAINERS:
        nested = metadata.get(name)
        if isinstance(nested, Mapping):
            scopes.append(nested)

    for scope in scopes:
        for name in ANCHOR_CANDIDATE_FIELDS:
            candidate = to_epoch_ms(scope.get(name))
            if candidate is not None and is_plausible(candidate, now_ms=now_ms):
                return candidate
    return None


def is_plausible(ts_ms: int, *, now_ms: int) -> bool:
    return ANCHOR_SANITY_FLOOR_MS <= ts_ms <= now_ms + ANCHOR_FUTURE_TOLERANCE_MS


class StreamClockAnchor:
    """
    Owned by ConnectionManager. One instance tracks one target at a time.
    """

    def __init__(self, *, clock: Clock, store: PersistencePort | None = None) -> None:
        self._clock = clock
        self._store = store
        self._anchor: StreamAnchor | None = None
        self._target: str | None = None
        self._earliest_event_ms: int | None = None

    # ------------------------------------------------------------------
    # Target binding
    # ------------------------------------------------------------------

    def bind(self, user_handle: str) -> StreamAnchor | None:
        """
        Attach to a target. Restores the persisted anchor when it belongs
        to the same target; a different target starts clean.
        """
        target = normalize_handle(user_handle)
        if self._target == target:
            return self._anchor

        self._anchor = None
        self._earliest_event_ms = None
        self._target = target

        restored = self._load(target)
        if restored is not None:
            self._anchor = restored
            log_event({
                "event_type": "STREAM_ANCHOR_RESTORED",
                "target": target,
                "source": restored.source.value,
                "start_time_ms": restored.start_time_ms,
            })
        return self._anchor

    @property
    def target(self) -> str | None:
        return self._target

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, session_metadata: Mapping[str, Any] | None) -> StreamAnchor | None:
        """
        Offer session metadata. Sets or upgrades the anchor when a
        plausible start field is present; otherwise falls back to the
        earliest event seen so far.
        """
        now = self._clock.now_ms()
        start = extract_start_time(session_metadata, now_ms=now)
        if start is not None:
            self._offer(StreamAnchor(start, AnchorSource.SESSION_METADATA))
        elif self._earliest_event_ms is not None:
            self._offer(StreamAnchor(self._earliest_event_ms, AnchorSource.EARLIEST_EVENT))
        return self._anchor

    def observe_event(self, event_timestamp_ms: Any) -> None:
        ts = to_epoch_ms(event_timestamp_ms)
        if ts is None or not is_plausible(ts, now_ms=self._clock.now_ms()):
            return
        if self._earliest_event_ms is None or ts < self._earliest_event_ms:
            self._earliest_event_ms = ts
        self._offer(StreamAnchor(self._earliest_event_ms, AnchorSource.EARLIEST_EVENT))

    def mark_connect_fallback(self) -> StreamAnchor | None:
        """Use the connect time when the host insists on a non-null duration."""
        self._offer(StreamAnchor(self._clock.now_ms(), AnchorSource.CONNECT_FALLBACK))
        return self._anchor

    def get_anchor(self) -> StreamAnchor | None:
        return self._anchor

    def elapsed_ms(self) -> int | None:
        if self._anchor is None:
            return None
        return max(0, self._clock.now_ms() - self._anchor.start_time_ms)

    def reset(self) -> None:
        """Forget the anchor and its persisted copy."""
        if self._store is not None:
            self._store.save(ANCHOR_PERSIST_KEY, None)
        if self._anchor is not None:
            log_event({
                "event_type": "STREAM_ANCHOR_RESET",
                "target": self._target,
            })
        self._anchor = None
        self._earliest_event_ms = None
        self._target = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _offer(self, candidate: StreamAnchor) -> None:
        current = self._anchor
        if current is not None:
            if _RANK[candidate.source] < _RANK[current.source]:
                return
            if candidate.source is current.source:
                if candidate.source is AnchorSource.SESSION_METADATA:
                    # First metadata value wins within a session
                    return
                if candidate.start_time_ms >= current.start_time_ms:
                    return

        anchor = replace(candidate, persisted=self._save(candidate))
        self._anchor = anchor
        log_event({
            "event_type": "STREAM_ANCHOR_SET",
            "target": self._target,
            "source": anchor.source.value,
            "start_time_ms": anchor.start_time_ms,
            "replaced_source": current.source.value if current else None,
        })

    def _save(self, anchor: StreamAnchor) -> bool:
        if self._store is None or self._target is None:
            return False
        self._store.save(ANCHOR_PERSIST_KEY, {
            "target": self._target,
            "start_time_ms": anchor.start_time_ms,
            "source": anchor.source.value,
        })
        return True

    def _load(self, target: str) -> StreamAnchor | None:
        if self._store is None:
            return None
        raw = self._store.load(ANCHOR_PERSIST_KEY)
        if not isinstance(raw, dict) or raw.get("target") != target:
            return None
        try:
            return StreamAnchor(
                start_time_ms=int(raw["start_time_ms"]),
                source=AnchorSource(raw["source"]),
                persisted=True,
            )
        except (KeyError, TypeError, ValueError, OverflowError):
            return None

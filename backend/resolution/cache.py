"""
Time-bounded cache of resolved sessions keyed by user handle.

- Entries expire SESSION_CACHE_TTL_MS after resolved_at
- get() on an expired entry removes it and returns None
- invalidate(None) clears everything
- Optionally mirrored to a PersistencePort so a restart can reuse
  still-valid resolutions
"""

from __future__ import annotations

from typing import Any

from clock import Clock
from observability.logger import log_event
from policy import SESSION_CACHE_PERSIST_KEY, SESSION_CACHE_TTL_MS
from resolution.session import ResolvedSession, normalize_handle
from storage.persistence import PersistencePort


class SessionCache:
    """Owned by RoomResolver; no other component mutates it."""

    def __init__(
        self,
        *,
        clock: Clock,
        ttl_ms: int = SESSION_CACHE_TTL_MS,
        store: PersistencePort | None = None,
    ) -> None:
        self._clock = clock
        self._ttl_ms = ttl_ms
        self._store = store
        self._entries: dict[str, ResolvedSession] = {}
        self.hits = 0
        self.misses = 0
        self._restore()

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def expiry_for(self, resolved_at_ms: int) -> int:
        return resolved_at_ms + self._ttl_ms

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, user_handle: str) -> ResolvedSession | None:
        key = normalize_handle(user_handle)
        session = self._entries.get(key)
        if session is None:
            self.misses += 1
            return None

        if self._expired(session):
            del self._entries[key]
            self._persist()
            self.misses += 1
            return None

        self.hits += 1
        return session

    def put(self, user_handle: str, session: ResolvedSession) -> None:
        self._entries[normalize_handle(user_handle)] = session
        self._persist()

    def invalidate(self, user_handle: str | None = None) -> None:
        if user_handle is None:
            self._entries.clear()
        else:
            self._entries.pop(normalize_handle(user_handle), None)
        self._persist()
        log_event({
            "event_type": "SESSION_CACHE_INVALIDATED",
            "target": user_handle,
        })

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        expired = [k for k, s in self._entries.items() if self._expired(s)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._persist()
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        now = self._clock.now_ms()
        return {
            "size": len(self._entries),
            "ttl_s": self._ttl_ms // 1000,
            "hits": self.hits,
            "misses": self.misses,
            "entries": [
                {
                    "target": key,
                    "identifier": s.identifier,
                    "resolved_via": s.resolved_via,
                    "age_s": (now - s.resolved_at_ms) // 1000,
                    "expires_in_s": max(0, (s.resolved_at_ms + self._ttl_ms - now) // 1000),
                }
                for key, s in self._entries.items()
            ],
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _expired(self, session: ResolvedSession) -> bool:
        return self._clock.now_ms() - session.resolved_at_ms >= self._ttl_ms

    def _persist(self) -> None:
        if self._store is None:
            return
        self._store.save(
            SESSION_CACHE_PERSIST_KEY,
            {key: s.to_dict() for key, s in self._entries.items()},
        )

    def _restore(self) -> None:
        if self._store is None:
            return
        raw = self._store.load(SESSION_CACHE_PERSIST_KEY)
        if not isinstance(raw, dict):
            return
        for key, data in raw.items():
            try:
                session = ResolvedSession.from_dict(data)
            except (KeyError, TypeError, ValueError):
                continue
            if not self._expired(session):
                self._entries[key] = session

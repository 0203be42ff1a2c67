"""
Background expiry sweeps.

Periodically drops expired SessionCache and EventDeduplicator entries on
its own task, decoupled from the connect path. Holds no locks: each sweep
is a synchronous pass between awaits.
"""

from __future__ import annotations

import asyncio

from ingest.dedup import EventDeduplicator
from observability.logger import log_event
from policy import SWEEP_INTERVAL_S
from resolution.cache import SessionCache


class Housekeeper:
    def __init__(
        self,
        *,
        cache: SessionCache,
        deduplicator: EventDeduplicator,
        interval_s: float = SWEEP_INTERVAL_S,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._cache = cache
        self._dedup = deduplicator
        self._interval_s = interval_s
        self._task: asyncio.Task[None] | None = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> dict[str, int]:
        removed = {
            "cache": self._cache.sweep(),
            "dedup": self._dedup.sweep(),
        }
        self.sweeps += 1
        if removed["cache"] or removed["dedup"]:
            log_event({
                "event_type": "HOUSEKEEPING_SWEEP",
                "cache_removed": removed["cache"],
                "dedup_removed": removed["dedup"],
            })
        return removed

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                self.sweep_once()
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "HOUSEKEEPING_ERROR",
                    "exception": type(e).__name__,
                    "message": str(e),
                })

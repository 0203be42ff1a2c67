"""
Clock port.

Every time-dependent component (cache, deduplicator, anchor, manager) reads
time and sleeps through this port so tests can drive time explicitly.

- now_ms(): wall-clock epoch milliseconds
- sleep(): awaitable delay in seconds
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now_ms(self) -> int: ...
    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real wall clock backed by time.time_ns() and asyncio.sleep()."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

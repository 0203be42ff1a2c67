"""
Cancellation token for the connect lifecycle.

Responsibilities:
- Thread one cancellation signal through every awaited operation of a
  connect attempt (strategy calls, backoff sleeps, transport handshake)
- Apply the per-call timeout to each awaited operation
- Abort in-flight work immediately when disconnect() is requested

Non-responsibilities:
- NO retry logic
- NO state machine decisions
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from clock import Clock

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised inside a lifecycle task when its token is cancelled."""


class CancellationToken:
    """
    One token per connect lifecycle.

    Lifecycle:
    1. Manager creates a token on connect()
    2. Every await goes through token.run() / token.sleep()
    3. disconnect() calls token.cancel(): pending awaits raise
       OperationCancelled and the wrapped work is cancelled

    A cancelled token stays cancelled; a new connect() gets a new token.
    """

    def __init__(self, *, reason: str | None = None) -> None:
        self._event = asyncio.Event()
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Idempotent: the first reason wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")

    async def run(self, awaitable: Awaitable[T], *, timeout_s: float | None = None) -> T:
        """
        Await `awaitable` unless the token is cancelled first.

        Raises:
            OperationCancelled if cancel() happens before completion
            asyncio.TimeoutError if timeout_s elapses first
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self._reason or "cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)

        if waiter in done or self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")
        raise asyncio.TimeoutError(f"operation timed out after {timeout_s}s")

    async def sleep(self, clock: Clock, seconds: float) -> None:
        """Cancellable sleep on the injected clock."""
        await self.run(clock.sleep(seconds))

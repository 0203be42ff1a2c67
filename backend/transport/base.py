"""
Transport port.

The transport library supplies connect / disconnect / message primitives;
the connection manager only sees this interface.

Design goals:
- Async-first
- Clear lifecycle (connect -> messages -> disconnect)
- Exactly one on_disconnect callback per connection, and none after a
  manual disconnect()
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, runtime_checkable

from resolution.session import ResolvedSession


MessageCallback = Callable[[str, Mapping[str, Any]], Awaitable[None]]
"""(event_name, data) for every raw upstream message, in arrival order."""

DisconnectCallback = Callable[[Optional[BaseException]], Awaitable[None]]
"""Called once when the connection drops unexpectedly. None = clean close."""


class TransportError(Exception):
    """
    Transport-level failure.

    The message carries the upstream code / reason so the error classifier
    can match on it (e.g. "closed with code 4401 (INVALID_AUTH)").
    """

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


@runtime_checkable
class TransportClient(Protocol):
    async def connect(
        self,
        session: ResolvedSession,
        *,
        user_handle: str,
        credentials: Mapping[str, str],
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> Mapping[str, Any]:
        """
        Perform the handshake. credentials holds per-provider keys from
        the connect options (e.g. {"euler": "..."}).

        Returns room metadata reported by upstream on connect (may be
        empty). Raises on failure; the caller applies the timeout.
        """
        ...

    async def disconnect(self) -> None:
        """Close the connection. Idempotent. Suppresses on_disconnect."""
        ...

"""
Authoritative connection state enumeration and transition table.

Rules:
- This module defines the lifecycle states and which moves between them
  are legal. It holds no behavior beyond the lookup.
- Transitions are performed exclusively by ConnectionManager.
"""

from __future__ import annotations

from enum import Enum


class ConnectionState(str, Enum):
    """
    Lifecycle of a single managed stream session.

    BLOCKED is terminal until an explicit new connect() call.
    DISCONNECTED is terminal for the current attempt.
    """

    IDLE = "IDLE"
    RESOLVING = "RESOLVING"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    BLOCKED = "BLOCKED"
    DISCONNECTED = "DISCONNECTED"


class InvalidTransition(RuntimeError):
    """Raised when a state change is not in the transition table."""

    def __init__(self, current: ConnectionState, target: ConnectionState) -> None:
        super().__init__(f"illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


_S = ConnectionState

# Any state may go to DISCONNECTED (explicit disconnect); listed explicitly anyway.
ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    _S.IDLE: frozenset({_S.RESOLVING, _S.DISCONNECTED}),
    _S.RESOLVING: frozenset({_S.CONNECTING, _S.BLOCKED, _S.DISCONNECTED}),
    _S.CONNECTING: frozenset({_S.CONNECTED, _S.RECONNECTING, _S.BLOCKED, _S.DISCONNECTED}),
    _S.CONNECTED: frozenset({_S.RECONNECTING, _S.BLOCKED, _S.DISCONNECTED}),
    _S.RECONNECTING: frozenset({_S.CONNECTING, _S.BLOCKED, _S.DISCONNECTED}),
    _S.BLOCKED: frozenset({_S.RESOLVING, _S.DISCONNECTED}),
    _S.DISCONNECTED: frozenset({_S.RESOLVING}),
}


def is_allowed(current: ConnectionState, target: ConnectionState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# States in which a lifecycle task may be running
ACTIVE_STATES: frozenset[ConnectionState] = frozenset({
    _S.RESOLVING,
    _S.CONNECTING,
    _S.CONNECTED,
    _S.RECONNECTING,
})

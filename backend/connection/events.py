"""
Outbound event definitions.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- Consumers subscribe once to a single EventSink; they never see
  transport internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from connection.classifier import ErrorClassification
from connection.states import ConnectionState
from ingest.anchor import StreamAnchor


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """Canonical outbound event types."""

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BLOCKED = "blocked"
    RECONNECTING = "reconnecting"
    STATE_CHANGED = "state_changed"

    # ------------------------------------------------------------------
    # Normalized domain events
    # ------------------------------------------------------------------
    CHAT = "chat"
    GIFT = "gift"
    FOLLOW = "follow"
    SHARE = "share"
    LIKE = "like"
    ROOM_USER = "roomUser"


DOMAIN_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.CHAT,
    EventType.GIFT,
    EventType.FOLLOW,
    EventType.SHARE,
    EventType.LIKE,
    EventType.ROOM_USER,
})


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class OutboundEvent:
    """
    Base outbound event.

    All events specify:
    - event_type: discriminant
    - ts_ms: wall-clock time at emission (from the manager's clock)
    - target: user handle of the managed session
    """

    event_type: EventType
    ts_ms: int
    target: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type.value,
            "ts_ms": self.ts_ms,
            "target": self.target,
        }


# =============================================================================
# Lifecycle Events
# =============================================================================

@dataclass(frozen=True)
class Connected(OutboundEvent):
    session_id: str
    start_anchor: StreamAnchor | None

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "session_id": self.session_id,
            "start_anchor": self.start_anchor.to_dict() if self.start_anchor else None,
        }


@dataclass(frozen=True)
class Disconnected(OutboundEvent):
    reason: str
    classification: ErrorClassification | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "reason": self.reason,
            "classification": (
                self.classification.to_dict() if self.classification else None
            ),
        }


@dataclass(frozen=True)
class Blocked(OutboundEvent):
    classification: ErrorClassification

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "classification": self.classification.to_dict()}


@dataclass(frozen=True)
class Reconnecting(OutboundEvent):
    attempt: int
    delay_ms: int
    classification: ErrorClassification | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "attempt": self.attempt,
            "delay_ms": self.delay_ms,
            "classification": (
                self.classification.to_dict() if self.classification else None
            ),
        }


@dataclass(frozen=True)
class StateChanged(OutboundEvent):
    """Advisory; emitted after every transition."""
    previous: ConnectionState
    current: ConnectionState
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "previous": self.previous.value,
            "current": self.current.value,
            "reason": self.reason,
        }


# =============================================================================
# Domain Events
# =============================================================================

@dataclass(frozen=True)
class StreamEvent(OutboundEvent):
    """
    Normalized chat / gift / follow / share / like / roomUser event.

    elapsed_ms is relative to the stream anchor; None means the stream
    start is not known yet (never coerced to 0).
    """
    payload: Mapping[str, Any] = field(default_factory=dict)
    elapsed_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "payload": dict(self.payload),
            "elapsed_ms": self.elapsed_ms,
        }


EventSink = Callable[[OutboundEvent], Awaitable[None]]

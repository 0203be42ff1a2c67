"""
Resolved session value object.

Immutable once created; a new resolution supersedes it rather than
mutating it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


def normalize_handle(user_handle: str) -> str:
    """Canonical cache / persistence key for a user handle."""
    return user_handle.strip().lstrip("@").lower()


@dataclass(frozen=True)
class ResolvedSession:
    """
    A room identifier obtained for a user handle.

    room_info carries any room metadata the winning strategy fetched along
    the way (e.g. stream start fields); it may be empty.
    """
    identifier: str
    resolved_via: str
    resolved_at_ms: int
    expires_at_ms: int
    room_info: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Read-only view so holders cannot mutate shared metadata
        object.__setattr__(self, "room_info", MappingProxyType(dict(self.room_info)))

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "resolved_via": self.resolved_via,
            "resolved_at_ms": self.resolved_at_ms,
            "expires_at_ms": self.expires_at_ms,
            "room_info": dict(self.room_info),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ResolvedSession:
        return ResolvedSession(
            identifier=str(data["identifier"]),
            resolved_via=str(data["resolved_via"]),
            resolved_at_ms=int(data["resolved_at_ms"]),
            expires_at_ms=int(data["expires_at_ms"]),
            room_info=data.get("room_info") or {},
        )

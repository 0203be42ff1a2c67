"""
Raw platform message -> normalized payload.

Responsibilities:
- Map upstream message names to outbound EventType values
- Extract user data and per-type fields under stable snake_case names
- Apply gift streak semantics (streakable gifts count only on streak end)
- Detect the upstream "stream ended" control message

Non-responsibilities:
- NO deduplication (see ingest.dedup)
- NO time anchoring (see ingest.anchor)
- NO emission
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from connection.events import EventType
from ingest.anchor import to_epoch_ms
from policy import COINS_PER_DIAMOND, GIFT_TYPE_STREAKABLE


# =============================================================================
# Upstream message names
# =============================================================================

_EVENT_NAMES: dict[str, EventType] = {
    "chat": EventType.CHAT,
    "WebcastChatMessage": EventType.CHAT,
    "gift": EventType.GIFT,
    "WebcastGiftMessage": EventType.GIFT,
    "follow": EventType.FOLLOW,
    "share": EventType.SHARE,
    "like": EventType.LIKE,
    "WebcastLikeMessage": EventType.LIKE,
    "roomUser": EventType.ROOM_USER,
    "WebcastRoomUserSeqMessage": EventType.ROOM_USER,
}

# Social messages carry follow and share under one name
_SOCIAL_NAMES: frozenset[str] = frozenset({"social", "WebcastSocialMessage"})
_SOCIAL_ACTION_FOLLOW = 1

_STREAM_END_NAMES: frozenset[str] = frozenset({"streamEnd", "WebcastControlMessage"})

# ControlMessage action values meaning the broadcast is over
_STREAM_END_ACTIONS: frozenset[int] = frozenset({3, 4})


@dataclass(frozen=True)
class NormalizedEvent:
    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    # Upstream creation time in epoch ms, if the message carried one
    upstream_ts_ms: int | None = None


@dataclass(frozen=True)
class StreamEnded:
    """Upstream reported the broadcast is over."""
    action: int | None = None


# =============================================================================
# Field helpers
# =============================================================================

def _first(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def extract_user(data: Mapping[str, Any]) -> dict[str, Any]:
    """
    User fields, whether nested under `user` or flattened on the message.
    """
    user = data.get("user")
    source: Mapping[str, Any] = user if isinstance(user, Mapping) else data

    username = _first(source, "uniqueId", "unique_id", "username")
    user_id = _first(source, "userId", "user_id", "id")

    picture = _first(source, "profilePictureUrl", "profile_picture_url")
    if picture is None:
        avatar = source.get("profilePicture") or source.get("avatarThumb")
        if isinstance(avatar, Mapping):
            urls = avatar.get("urls") or avatar.get("url_list") or []
            picture = urls[0] if isinstance(urls, (list, tuple)) and urls else None

    return {
        "user_id": str(user_id) if user_id is not None else None,
        "username": username,
        "nickname": _first(source, "nickname", "nickName") or username,
        "profile_picture_url": picture,
    }


def _upstream_ts(data: Mapping[str, Any]) -> int | None:
    common = data.get("common")
    if isinstance(common, Mapping):
        ts = to_epoch_ms(_first(common, "createTime", "create_time"))
        if ts is not None:
            return ts
    return to_epoch_ms(_first(data, "createTime", "create_time", "timestamp"))


# =============================================================================
# Per-type payloads
# =============================================================================

def _chat(data: Mapping[str, Any]) -> dict[str, Any]:
    return {"comment": _first(data, "comment", "content") or ""}


def _gift(data: Mapping[str, Any]) -> dict[str, Any] | None:
    gift = data.get("gift") if isinstance(data.get("gift"), Mapping) else {}
    details = data.get("giftDetails") if isinstance(data.get("giftDetails"), Mapping) else {}

    gift_type = _as_int(_first(data, "giftType") or _first(details, "giftType") or 0)
    streak_end = bool(_first(data, "repeatEnd", "repeat_end"))
    if gift_type == GIFT_TYPE_STREAKABLE and not streak_end:
        # Streak still running; the final message carries the total
        return None

    repeat_count = max(1, _as_int(_first(data, "repeatCount", "repeat_count"), 1))
    diamonds = _as_int(
        _first(data, "diamondCount")
        or _first(details, "diamondCount")
        or _first(gift, "diamond_count", "diamondCount")
    )
    return {
        "gift_id": _first(data, "giftId", "gift_id") or _first(gift, "id"),
        "gift_name": _first(data, "giftName") or _first(details, "giftName") or _first(gift, "name"),
        "repeat_count": repeat_count,
        "diamond_count": diamonds,
        "coins": diamonds * COINS_PER_DIAMOND * repeat_count,
        "streak_end": streak_end or gift_type != GIFT_TYPE_STREAKABLE,
    }


def _like(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "like_count": _as_int(_first(data, "likeCount", "count", "like_count"), 1),
        "total_likes": _as_int(_first(data, "totalLikeCount", "totalLikes", "total", "total_likes")),
    }


def _room_user(data: Mapping[str, Any]) -> dict[str, Any]:
    return {"viewer_count": _as_int(_first(data, "viewerCount", "viewer_count", "total"))}


def _social_type(data: Mapping[str, Any]) -> EventType | None:
    label = str(_first(data, "displayType", "label") or "").lower()
    if "follow" in label or _as_int(data.get("action"), -1) == _SOCIAL_ACTION_FOLLOW:
        return EventType.FOLLOW
    if "share" in label:
        return EventType.SHARE
    return None


# =============================================================================
# Public API
# =============================================================================

def normalize(event_name: str, data: Mapping[str, Any] | None) -> NormalizedEvent | StreamEnded | None:
    """
    Translate one raw message.

    Returns:
        NormalizedEvent for a domain event
        StreamEnded when upstream reports the end of the broadcast
        None for messages we do not forward (unknown names, running streaks)
    """
    data = data or {}

    if event_name in _STREAM_END_NAMES:
        action = data.get("action")
        if event_name == "streamEnd" or _as_int(action, -1) in _STREAM_END_ACTIONS:
            return StreamEnded(action=_as_int(action) if action is not None else None)
        return None

    if event_name in _SOCIAL_NAMES:
        event_type = _social_type(data)
    else:
        event_type = _EVENT_NAMES.get(event_name)
    if event_type is None:
        return None

    if event_type is EventType.CHAT:
        specific: dict[str, Any] | None = _chat(data)
    elif event_type is EventType.GIFT:
        specific = _gift(data)
    elif event_type is EventType.LIKE:
        specific = _like(data)
    elif event_type is EventType.ROOM_USER:
        specific = _room_user(data)
    else:
        specific = {}

    if specific is None:
        return None

    payload: dict[str, Any] = {}
    if event_type is not EventType.ROOM_USER:
        payload.update(extract_user(data))
    payload.update(specific)

    msg_id = _first(data, "msgId", "msg_id")
    if msg_id is None and isinstance(data.get("common"), Mapping):
        msg_id = _first(data["common"], "msgId", "msg_id")
    if msg_id is not None:
        payload["msg_id"] = str(msg_id)

    return NormalizedEvent(event_type=event_type, payload=payload, upstream_ts_ms=_upstream_ts(data))

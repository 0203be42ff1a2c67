# pylint: disable=missing-module-docstring,missing-function-docstring

from connection.events import EventType
from ingest.normalize import NormalizedEvent, StreamEnded, extract_user, normalize


USER = {
    "userId": 42,
    "uniqueId": "alice",
    "nickname": "Alice",
    "profilePictureUrl": "https://cdn.example/alice.jpg",
}


def _norm(name: str, data: dict) -> NormalizedEvent:
    result = normalize(name, data)
    assert isinstance(result, NormalizedEvent)
    return result


def test_chat_payload():
    event = _norm("chat", {**USER, "comment": "hi", "msgId": 991})
    assert event.event_type is EventType.CHAT
    assert event.payload == {
        "user_id": "42",
        "username": "alice",
        "nickname": "Alice",
        "profile_picture_url": "https://cdn.example/alice.jpg",
        "comment": "hi",
        "msg_id": "991",
    }


def test_nested_user_and_avatar_urls():
    user = extract_user({"user": {"id": 7, "uniqueId": "bob", "avatarThumb": {"urls": ["u1", "u2"]}}})
    assert user["user_id"] == "7"
    assert user["nickname"] == "bob"
    assert user["profile_picture_url"] == "u1"


def test_avatar_urls_must_be_a_list():
    user = extract_user({"uniqueId": "bob", "profilePicture": {"urls": {"small": "u1"}}})
    assert user["profile_picture_url"] is None


def test_webcast_names_map_to_same_types():
    assert _norm("WebcastChatMessage", {**USER, "content": "yo"}).payload["comment"] == "yo"
    assert _norm("WebcastLikeMessage", USER).event_type is EventType.LIKE


def test_running_gift_streak_is_not_forwarded():
    assert normalize("gift", {**USER, "giftType": 1, "repeatEnd": False, "repeatCount": 3}) is None


def test_finished_gift_streak_counts_coins():
    event = _norm("gift", {
        **USER,
        "giftId": 5655,
        "giftName": "Rose",
        "giftType": 1,
        "repeatEnd": True,
        "repeatCount": 5,
        "diamondCount": 1,
    })
    assert event.payload["repeat_count"] == 5
    assert event.payload["coins"] == 10
    assert event.payload["streak_end"] is True
    assert event.payload["gift_name"] == "Rose"


def test_non_streakable_gift_forwarded_immediately():
    event = _norm("gift", {**USER, "giftType": 2, "giftDetails": {"diamondCount": 100, "giftName": "Lion"}})
    assert event.payload["repeat_count"] == 1
    assert event.payload["coins"] == 200
    assert event.payload["streak_end"] is True


def test_like_defaults():
    event = _norm("like", {**USER, "totalLikeCount": 120})
    assert event.payload["like_count"] == 1
    assert event.payload["total_likes"] == 120


def test_non_finite_counts_fall_back_to_defaults():
    event = _norm("like", {**USER, "likeCount": float("inf"), "totalLikeCount": float("nan")})
    assert event.payload["like_count"] == 1
    assert event.payload["total_likes"] == 0


def test_room_user_has_no_user_fields():
    event = _norm("roomUser", {"viewerCount": 321})
    assert event.payload == {"viewer_count": 321}


def test_social_follow_and_share():
    assert _norm("social", {**USER, "displayType": "pm_mt_msg_viewer_follow"}).event_type is EventType.FOLLOW
    assert _norm("WebcastSocialMessage", {**USER, "action": 1}).event_type is EventType.FOLLOW
    assert _norm("social", {**USER, "displayType": "pm_main_share"}).event_type is EventType.SHARE
    assert normalize("social", {**USER, "displayType": "something_else"}) is None


def test_stream_end_detection():
    assert normalize("streamEnd", {}) == StreamEnded(action=None)
    assert normalize("WebcastControlMessage", {"action": 3}) == StreamEnded(action=3)
    assert normalize("WebcastControlMessage", {"action": 1}) is None


def test_upstream_timestamp_from_common():
    event = _norm("chat", {**USER, "comment": "x", "common": {"createTime": "1699999990", "msgId": "m9"}})
    assert event.upstream_ts_ms == 1_699_999_990_000
    assert event.payload["msg_id"] == "m9"


def test_unknown_message_ignored():
    assert normalize("WebcastMemberMessage", USER) is None
    assert normalize("chat", None) is not None

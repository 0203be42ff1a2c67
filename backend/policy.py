"""
POLICY-AS-CONSTANTS
-------------------
Single source of truth for all behavioral constants of the connection layer.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Retry / Backoff
# =============================================================================

RETRY_BASE_DELAY_MS: Final[int] = 1_000
RETRY_MAX_DELAY_MS: Final[int] = 30_000
RETRY_MAX_ATTEMPTS: Final[int] = 5
RETRY_JITTER_RATIO: Final[float] = 0.1

# =============================================================================
# Error Classification
# =============================================================================

BLOCKED_SUGGESTED_WAIT_MS: Final[int] = 5 * 60 * 1000
RATE_LIMIT_DEFAULT_WAIT_MS: Final[int] = 60_000
UNKNOWN_ERROR_DEFAULT_WAIT_MS: Final[int] = 10_000

# =============================================================================
# Session Resolution
# =============================================================================

SESSION_CACHE_TTL_MS: Final[int] = 5 * 60 * 1000
RESOLUTION_TIMEOUT_S: Final[float] = 15.0

# Declared priority order: most specific / authoritative first.
STRATEGY_HTML: Final[str] = "html"
STRATEGY_LIVE_API: Final[str] = "live_api"
STRATEGY_WEB_API: Final[str] = "web_api"
STRATEGY_EULER: Final[str] = "euler"

STRATEGY_ORDER: Final[Tuple[str, ...]] = (
    STRATEGY_HTML,
    STRATEGY_LIVE_API,
    STRATEGY_WEB_API,
    STRATEGY_EULER,
)

# =============================================================================
# Transport / Connection Lifecycle
# =============================================================================

TRANSPORT_CONNECT_TIMEOUT_S: Final[float] = 60.0
MAX_AUTO_RECONNECTS: Final[int] = 5
RECONNECT_STABILITY_WINDOW_MS: Final[int] = 5 * 60 * 1000

# Most recent connection attempts kept for diagnostics (newest first)
CONNECTION_ATTEMPT_HISTORY: Final[int] = 10

# =============================================================================
# Event Deduplication
# =============================================================================

DEDUP_WINDOW_MS: Final[int] = 60_000
DEDUP_MAX_ENTRIES: Final[int] = 1_000

# =============================================================================
# Stream Anchor
# =============================================================================

# 2020-01-01T00:00:00Z; anything earlier is not a plausible stream start.
ANCHOR_SANITY_FLOOR_MS: Final[int] = 1_577_836_800_000

# Values below this are interpreted as seconds, not milliseconds.
ANCHOR_SECONDS_THRESHOLD: Final[int] = 100_000_000_000

# Tolerated skew between upstream clock and local clock.
ANCHOR_FUTURE_TOLERANCE_MS: Final[int] = 60_000

ANCHOR_CANDIDATE_FIELDS: Final[Tuple[str, ...]] = (
    "start_time",
    "startTime",
    "stream_start_time",
    "streamStartTime",
    "create_time",
    "createTime",
)

ANCHOR_NESTED_CONTAINERS: Final[Tuple[str, ...]] = ("room", "liveRoom", "data")

ANCHOR_PERSIST_KEY: Final[str] = "stream_anchor"
SESSION_CACHE_PERSIST_KEY: Final[str] = "session_cache"

# =============================================================================
# Housekeeping
# =============================================================================

SWEEP_INTERVAL_S: Final[float] = 30.0

# =============================================================================
# Normalization
# =============================================================================

# giftType 1 = streakable; only counted when the streak ends
GIFT_TYPE_STREAKABLE: Final[int] = 1
COINS_PER_DIAMOND: Final[int] = 2

# =============================================================================
# HTTP Resolution Strategies
# =============================================================================

HTML_FETCH_TIMEOUT_S: Final[float] = 15.0
API_FETCH_TIMEOUT_S: Final[float] = 10.0
EULER_FETCH_TIMEOUT_S: Final[float] = 12.0

PLATFORM_BASE_URL: Final[str] = "https://www.tiktok.com"
EULER_ROOM_ID_URL: Final[str] = "https://tiktok.eulerstream.com/live/room_id"

# liveRoom.status value meaning the user is offline
ROOM_STATUS_OFFLINE: Final[int] = 4

# =============================================================================
# WebSocket Transport
# =============================================================================

EULER_WS_URL: Final[str] = "wss://ws.eulerstream.com"

# =============================================================================
# Host Surface
# =============================================================================

# Per-subscriber outbound backlog; oldest events are dropped beyond this
BROADCAST_QUEUE_MAX: Final[int] = 500

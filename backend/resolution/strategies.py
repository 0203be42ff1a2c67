"""
HTTP resolution strategies.

Each strategy is an async callable (user_handle, options) -> identifier
that raises on failure. Errors are raised with the upstream status or a
descriptive message so the error classifier can categorize them; no
strategy decides about retries itself.

Declared order (most specific first):
    html      -> live page scrape (SIGI_STATE)
    live_api  -> first-party live detail endpoint
    web_api   -> first-party user detail endpoint
    euler     -> third-party fallback, requires an API key
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Mapping, Sequence

import httpx

from policy import (
    API_FETCH_TIMEOUT_S,
    EULER_FETCH_TIMEOUT_S,
    EULER_ROOM_ID_URL,
    HTML_FETCH_TIMEOUT_S,
    PLATFORM_BASE_URL,
    ROOM_STATUS_OFFLINE,
    STRATEGY_EULER,
    STRATEGY_HTML,
    STRATEGY_LIVE_API,
    STRATEGY_WEB_API,
)
from resolution.resolver import ResolveOptions, Strategy, StrategyResult


_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_SIGI_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r'<script id="SIGI_STATE" type="application/json">(.*?)</script>', re.DOTALL),
    re.compile(r"window\['SIGI_STATE'\]\s*=\s*({.*?});", re.DOTALL),
    re.compile(r"__SIGI_STATE__\s*=\s*({.*?});", re.DOTALL),
)


def browser_headers(referer: str | None = None) -> dict[str, str]:
    headers = {
        "User-Agent": _USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "DNT": "1",
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
        "Cache-Control": "max-age=0",
    }
    if referer:
        headers["Referer"] = referer
        headers["Sec-Fetch-Site"] = "same-origin"
    return headers


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def _first_path(data: Any, paths: Sequence[Sequence[str]]) -> Any:
    for path in paths:
        value = _dig(data, *path)
        if value:
            return value
    return None


def _check_status(response: httpx.Response) -> None:
    # 4xx other than the ones below still carry a parseable body upstream
    if response.status_code in (401, 403, 429) or response.status_code >= 500:
        response.raise_for_status()


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except json.JSONDecodeError as e:
        raise ValueError(f"unexpected response: body is not JSON ({e})") from e


class HttpStrategies:
    """
    Concrete strategies sharing one httpx.AsyncClient.

    The client is injectable; tests pass one backed by httpx.MockTransport.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # html
    # ------------------------------------------------------------------

    async def html(self, user_handle: str, options: ResolveOptions) -> StrategyResult:
        response = await self._client.get(
            f"{PLATFORM_BASE_URL}/@{user_handle}/live",
            headers=browser_headers(),
            timeout=HTML_FETCH_TIMEOUT_S,
        )
        _check_status(response)

        state = None
        for pattern in _SIGI_PATTERNS:
            match = pattern.search(response.text)
            if not match:
                continue
            try:
                state = json.loads(match.group(1))
                break
            except json.JSONDecodeError:
                continue

        if state is None:
            raise ValueError(
                "Failed to extract SIGI_STATE from HTML - pattern mismatch or blocked by platform"
            )

        room_id = _first_path(state, (
            ("LiveRoom", "liveRoomUserInfo", "user", "roomId"),
            ("LiveRoom", "liveRoomUserInfo", "liveRoom", "roomId"),
            ("UserModule", "users", user_handle, "roomId"),
            ("UserPage", "userInfo", "user", "roomId"),
        ))
        if not room_id:
            raise ValueError("Failed to extract room id from page state - structure changed")

        live_room = _dig(state, "LiveRoom", "liveRoomUserInfo", "liveRoom")
        return StrategyResult(
            identifier=str(room_id),
            room_info={"room": dict(live_room)} if isinstance(live_room, Mapping) else {},
        )

    # ------------------------------------------------------------------
    # live_api
    # ------------------------------------------------------------------

    async def live_api(self, user_handle: str, options: ResolveOptions) -> StrategyResult:
        response = await self._client.get(
            f"{PLATFORM_BASE_URL}/api/live/detail/",
            params={"uniqueId": user_handle},
            headers=browser_headers(PLATFORM_BASE_URL),
            timeout=API_FETCH_TIMEOUT_S,
        )
        _check_status(response)
        body = _json(response)

        room_id = _first_path(body, (
            ("data", "user", "roomId"),
            ("LiveRoomInfo", "roomId"),
            ("data", "liveRoom", "roomId"),
        ))
        if not room_id:
            status = _dig(body, "data", "liveRoom", "status") or _dig(body, "LiveRoomInfo", "status")
            if status == ROOM_STATUS_OFFLINE:
                raise RuntimeError(f"User is not live (status: {status})")
            raise ValueError("Failed to extract room id from live API response")

        room = _dig(body, "data", "liveRoom") or _dig(body, "LiveRoomInfo")
        return StrategyResult(
            identifier=str(room_id),
            room_info={"room": dict(room)} if isinstance(room, Mapping) else {},
        )

    # ------------------------------------------------------------------
    # web_api
    # ------------------------------------------------------------------

    async def web_api(self, user_handle: str, options: ResolveOptions) -> str:
        response = await self._client.get(
            f"{PLATFORM_BASE_URL}/api/user/detail/",
            params={"uniqueId": user_handle},
            headers=browser_headers(PLATFORM_BASE_URL),
            timeout=API_FETCH_TIMEOUT_S,
        )
        _check_status(response)

        room_id = _dig(_json(response), "userInfo", "user", "roomId")
        if not room_id:
            raise ValueError("Failed to extract room id from web API response")
        return str(room_id)

    # ------------------------------------------------------------------
    # euler
    # ------------------------------------------------------------------

    async def euler(self, user_handle: str, options: ResolveOptions) -> str:
        api_key = options.credentials.get(STRATEGY_EULER)
        if not api_key:
            raise RuntimeError("Euler API key not configured")

        response = await self._client.get(
            EULER_ROOM_ID_URL,
            params={"unique_id": user_handle},
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=EULER_FETCH_TIMEOUT_S,
        )
        # Status-specific messages; 403 here is a key permission problem,
        # not anti-bot blocking
        if response.status_code == 401:
            raise RuntimeError("Euler API key is invalid or expired (401)")
        if response.status_code == 403:
            raise RuntimeError("Euler API key lacks permission (403)")
        if response.status_code == 429:
            raise RuntimeError("Euler API rate limit reached (429)")
        if response.status_code >= 500:
            response.raise_for_status()

        body = _json(response)
        if _dig(body, "code") != 200:
            raise RuntimeError(f"Euler API error: {_dig(body, 'message') or 'unknown error'}")

        room_id = _dig(body, "room_id")
        if not room_id:
            raise ValueError("Failed to extract room id from Euler response")
        return str(room_id)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def as_strategies(self) -> list[Strategy]:
        """All strategies in declared priority order."""
        table: dict[str, Callable[..., Any]] = {
            STRATEGY_HTML: self.html,
            STRATEGY_LIVE_API: self.live_api,
            STRATEGY_WEB_API: self.web_api,
            STRATEGY_EULER: self.euler,
        }
        return [Strategy(name=name, fn=fn) for name, fn in table.items()]

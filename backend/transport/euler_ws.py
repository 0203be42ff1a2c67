"""
Euler Stream WebSocket transport.

Connection model:
- One WebSocket per connect(); no internal reconnects (the connection
  manager owns reconnect policy)
- Frames are JSON; a frame carries either one message
  {"type": ..., "data": {...}} or a batch {"messages": [...]}
- Messages are forwarded to on_message in arrival order from a single
  receiver task
- An unexpected close is reported exactly once through on_disconnect as a
  TransportError whose text carries the close code and its name, so the
  error classifier can map INVALID_AUTH / NOT_LIVE correctly

Close codes:
    1000  normal closure
    4400  INVALID_OPTIONS
    4401  INVALID_AUTH
    4404  NOT_LIVE
"""

from __future__ import annotations

import asyncio
import json
import urllib.parse
from typing import Any, Mapping

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed

from observability.logger import log_event
from policy import EULER_WS_URL, STRATEGY_EULER
from resolution.session import ResolvedSession
from transport.base import DisconnectCallback, MessageCallback, TransportError


CLOSE_CODE_NAMES: dict[int, str] = {
    1000: "NORMAL",
    4400: "INVALID_OPTIONS",
    4401: "INVALID_AUTH",
    4404: "NOT_LIVE",
}

# Upstream-side closures that still need an error classification
_CLOSE_REASONS: dict[int, str] = {
    4400: "invalid connection options",
    4401: "invalid api key",
    4404: "user is not live",
}


def close_error(code: int | None, reason: str = "") -> TransportError:
    name = CLOSE_CODE_NAMES.get(code or 0, "UNKNOWN")
    hint = _CLOSE_REASONS.get(code or 0, "connection closed")
    text = f"WebSocket closed with code {code} ({name}): {hint}"
    if reason:
        text = f"{text} - {reason}"
    return TransportError(text, code=code)


class EulerWebSocketTransport:
    """TransportClient implementation over websockets."""

    def __init__(self, *, api_key: str | None, base_url: str = EULER_WS_URL) -> None:
        self._api_key = api_key
        self._base_url = base_url

        self._ws: ClientConnection | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._closing = False

    def build_url(self, user_handle: str, api_key: str | None = None) -> str:
        params = {"uniqueId": user_handle}
        key = api_key or self._api_key
        if key:
            params["apiKey"] = key
        return f"{self._base_url}?{urllib.parse.urlencode(params)}"

    # -------------------------------------------------------------------------
    # TransportClient
    # -------------------------------------------------------------------------

    async def connect(
        self,
        session: ResolvedSession,
        *,
        user_handle: str,
        credentials: Mapping[str, str],
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> Mapping[str, Any]:
        api_key = credentials.get(STRATEGY_EULER) or self._api_key
        if not api_key:
            raise TransportError("Euler API key not configured")

        await self.disconnect()
        self._closing = False

        self._ws = await ws_connect(
            self.build_url(user_handle, api_key),
            max_size=2**22,
        )
        log_event({
            "event_type": "TRANSPORT_CONNECTED",
            "target": user_handle,
            "room_id": session.identifier,
        })

        self._recv_task = asyncio.create_task(
            self._recv_loop(self._ws, on_message, on_disconnect)
        )
        return {"room_id": session.identifier}

    async def disconnect(self) -> None:
        self._closing = True

        ws = self._ws
        self._ws = None

        task = self._recv_task
        self._recv_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if ws is not None:
            try:
                await ws.close()
            except (OSError, ConnectionClosed):
                pass

    # -------------------------------------------------------------------------
    # Receiver
    # -------------------------------------------------------------------------

    async def _recv_loop(
        self,
        ws: ClientConnection,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        error: BaseException | None = None
        try:
            async for raw in ws:
                for name, data in _decode_frame(raw):
                    await on_message(name, data)
            # Iterator ended: server closed with 1000
            close = ws.close_code
            if close not in (None, 1000):
                error = close_error(close, ws.close_reason or "")
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else None
            reason = e.rcvd.reason if e.rcvd is not None else ""
            error = close_error(code, reason)
        except Exception as e:  # pylint: disable=broad-exception-caught
            error = e

        if self._closing:
            return
        self._ws = None
        log_event({
            "event_type": "TRANSPORT_DISCONNECTED",
            "error": repr(error) if error else None,
        })
        await on_disconnect(error)


def _decode_frame(raw: Any) -> list[tuple[str, dict[str, Any]]]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as e:
        log_event({
            "event_type": "TRANSPORT_FRAME_UNPARSEABLE",
            "error": str(e),
        })
        return []

    if not isinstance(frame, dict):
        return []

    items = frame.get("messages")
    if not isinstance(items, list):
        items = [frame]

    out: list[tuple[str, dict[str, Any]]] = []
    for item in items:
        if not isinstance(item, dict) or "type" not in item:
            continue
        data = item.get("data")
        out.append((str(item["type"]), data if isinstance(data, dict) else {}))
    return out

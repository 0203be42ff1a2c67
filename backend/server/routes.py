"""
Route registration for the live connector API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Translate requests into ConnectionManager calls
- Stream outbound events to WebSocket subscribers
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from connection.manager import ConnectRejected
from observability.logger import log_event
from server.broadcaster import Subscription


class ConnectRequest(BaseModel):
    """Request body for POST /connect."""

    username: str = Field(min_length=1, description="Handle of the live user")
    use_cache: bool = True
    euler_api_key: Optional[str] = Field(
        default=None, description="Overrides the configured Euler key for this connect"
    )
    anchor_connect_fallback: Optional[bool] = Field(
        default=None, description="Report elapsed time from connect when no stream start is known"
    )


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.post("/connect")
    async def connect(body: ConnectRequest) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        services = app.state.services
        manager = services.manager

        options = services.config.connect_options(use_cache=body.use_cache)
        if body.euler_api_key:
            options = replace(options, euler_api_key=body.euler_api_key)
        if body.anchor_connect_fallback is not None:
            options = replace(options, anchor_connect_fallback=body.anchor_connect_fallback)

        try:
            state = await manager.connect(body.username, options)
        except ConnectRejected as e:
            raise HTTPException(status_code=409, detail=e.classification.to_dict()) from e
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        last = manager.last_classification
        return {
            "state": state.value,
            "target": manager.target,
            "classification": last.to_dict() if last else None,
        }

    @app.post("/disconnect")
    async def disconnect() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        manager = app.state.services.manager
        await manager.disconnect(reason="manual")
        return {"state": manager.get_state().value}

    @app.get("/state")
    async def state() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        manager = app.state.services.manager
        return {
            "state": manager.get_state().value,
            "target": manager.target,
            "reconnect_attempts": manager.reconnect_attempts,
        }

    @app.get("/diagnostics")
    async def diagnostics() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        services = app.state.services
        return {
            **services.manager.get_diagnostics(),
            "subscribers": services.broadcaster.subscriber_count,
            "events_published": services.broadcaster.published,
            "housekeeping_sweeps": services.housekeeper.sweeps,
        }

    @app.websocket("/events")
    async def events(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        broadcaster = app.state.services.broadcaster
        sub = broadcaster.subscribe()
        forwarder = asyncio.create_task(_forward_events(ws, sub))
        try:
            while True:
                msg = await ws.receive()
                # Subscribers only listen; inbound frames are ignored
                if msg["type"] == "websocket.disconnect":
                    break

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
            broadcaster.unsubscribe(sub)


async def _forward_events(ws: WebSocket, sub: Subscription) -> None:
    """Drain one subscription into its WebSocket, in emission order."""
    try:
        while True:
            message = await sub.queue.get()
            await ws.send_json(message)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        log_event({
            "event_type": "WS_SEND_FAILED",
            "exception": type(exc).__name__,
            "message": str(exc),
            "dropped": sub.dropped,
        })

"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Build the connection layer ONCE per process (store, cache, resolver,
  anchor, deduplicator, transport, manager) and hang it on app.state
- Start / stop background housekeeping with the app lifespan
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clock import Clock, SystemClock
from config import AppConfig
from connection.housekeeping import Housekeeper
from connection.manager import ConnectionManager
from connection.retry import RetryScheduler
from ingest.anchor import StreamClockAnchor
from ingest.dedup import EventDeduplicator
from observability.logger import log_event
from resolution.cache import SessionCache
from resolution.resolver import RoomResolver, Strategy
from resolution.strategies import HttpStrategies
from server.broadcaster import EventBroadcaster
from server.routes import register_routes
from storage.persistence import InMemoryStore, JsonFileStore, PersistencePort
from transport.base import TransportClient
from transport.euler_ws import EulerWebSocketTransport


@dataclass
class Services:
    """Process-wide connection layer, owned by the app."""
    config: AppConfig
    manager: ConnectionManager
    broadcaster: EventBroadcaster
    housekeeper: Housekeeper
    http: HttpStrategies | None


def build_services(
    config: AppConfig,
    *,
    clock: Clock | None = None,
    strategies: Sequence[Strategy] | None = None,
    transport: TransportClient | None = None,
    store: PersistencePort | None = None,
) -> Services:
    """
    Wire the connection layer. Any collaborator can be overridden (tests
    pass fakes); defaults are the real HTTP strategies and WebSocket
    transport.
    """
    clock = clock or SystemClock()
    if store is None:
        store = JsonFileStore(config.state_file) if config.state_file else InMemoryStore()

    http: HttpStrategies | None = None
    if strategies is None:
        http = HttpStrategies()
        strategies = http.as_strategies()

    cache = SessionCache(clock=clock, store=store)
    dedup = EventDeduplicator(clock=clock)
    broadcaster = EventBroadcaster()

    manager = ConnectionManager(
        resolver=RoomResolver(
            strategies,
            cache=cache,
            clock=clock,
            scheduler=RetryScheduler(),
        ),
        transport=transport or EulerWebSocketTransport(api_key=config.euler_api_key),
        sink=broadcaster.publish,
        clock=clock,
        anchor=StreamClockAnchor(clock=clock, store=store),
        deduplicator=dedup,
    )

    return Services(
        config=config,
        manager=manager,
        broadcaster=broadcaster,
        housekeeper=Housekeeper(
            cache=cache,
            deduplicator=dedup,
            interval_s=config.sweep_interval_s,
        ),
        http=http,
    )


def create_app(
    config: AppConfig | None = None,
    *,
    services: Services | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with injected services
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log_event({"event_type": "APP_STARTUP", "env": config.env})
        services.housekeeper.start()
        try:
            yield
        finally:
            await services.housekeeper.stop()
            await services.manager.disconnect(reason="shutdown")
            if services.http is not None:
                await services.http.aclose()
            log_event({"event_type": "APP_SHUTDOWN"})

    app = FastAPI(title="Live Connector API", lifespan=lifespan)

    app.state.config = config
    app.state.services = services

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app

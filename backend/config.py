"""
Application configuration.

Responsibilities:
- Read environment variables
- Provide a typed, immutable config object
- Build per-connect options for the connection manager

Non-responsibilities:
- No connection logic
- No behavioral constants (see policy.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from connection.manager import ConnectOptions
from policy import (
    MAX_AUTO_RECONNECTS,
    RESOLUTION_TIMEOUT_S,
    STRATEGY_EULER,
    STRATEGY_ORDER,
    SWEEP_INTERVAL_S,
    TRANSPORT_CONNECT_TIMEOUT_S,
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_strategies() -> tuple[str, ...]:
    raw = os.environ.get("ENABLED_STRATEGIES")
    if not raw:
        return STRATEGY_ORDER
    wanted = {name.strip() for name in raw.split(",") if name.strip()}
    # Declared priority order is preserved regardless of env ordering
    return tuple(name for name in STRATEGY_ORDER if name in wanted)


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup and passed to the server layer.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str
    host: str
    port: int

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    euler_api_key: str | None

    # ------------------------------------------------------------------
    # Timeouts / budgets
    # ------------------------------------------------------------------

    resolution_timeout_s: float
    transport_connect_timeout_s: float
    max_auto_reconnects: int

    # ------------------------------------------------------------------
    # Feature toggles
    # ------------------------------------------------------------------

    enable_euler_fallback: bool
    enabled_strategies: tuple[str, ...]
    anchor_connect_fallback: bool

    # ------------------------------------------------------------------
    # Persistence / housekeeping
    # ------------------------------------------------------------------

    state_file: str | None
    sweep_interval_s: float

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable is malformed.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            host=os.environ.get("HOST", "127.0.0.1"),
            port=int(os.environ.get("PORT", "8000")),

            euler_api_key=os.environ.get("EULER_API_KEY") or os.environ.get("SIGN_API_KEY"),

            resolution_timeout_s=float(
                os.environ.get("RESOLUTION_TIMEOUT_S", RESOLUTION_TIMEOUT_S)
            ),
            transport_connect_timeout_s=float(
                os.environ.get("TRANSPORT_CONNECT_TIMEOUT_S", TRANSPORT_CONNECT_TIMEOUT_S)
            ),
            max_auto_reconnects=int(
                os.environ.get("MAX_AUTO_RECONNECTS", MAX_AUTO_RECONNECTS)
            ),

            enable_euler_fallback=_env_bool("ENABLE_EULER_FALLBACK", False),
            enabled_strategies=_env_strategies(),
            anchor_connect_fallback=_env_bool("ANCHOR_CONNECT_FALLBACK", False),

            state_file=os.environ.get("STATE_FILE") or None,
            sweep_interval_s=float(os.environ.get("SWEEP_INTERVAL_S", SWEEP_INTERVAL_S)),
        )

    def connect_options(self, *, use_cache: bool = True) -> ConnectOptions:
        """Build the read-only options handed to ConnectionManager.connect()."""
        strategies = self.enabled_strategies
        if not self.enable_euler_fallback:
            strategies = tuple(s for s in strategies if s != STRATEGY_EULER)

        return ConnectOptions(
            use_cache=use_cache,
            euler_api_key=self.euler_api_key,
            enabled_strategies=strategies,
            resolution_timeout_s=self.resolution_timeout_s,
            transport_connect_timeout_s=self.transport_connect_timeout_s,
            max_auto_reconnects=self.max_auto_reconnects,
            anchor_connect_fallback=self.anchor_connect_fallback,
        )

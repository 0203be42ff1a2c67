"""
Timing helpers for the connection layer.

Responsibilities:
- Measure durations of resolution attempts and transport handshakes
  using monotonic time
- Emit one METRIC_TIMER log event per measurement
- Record outcome (ok / error type) of the timed block

Durations use monotonic time; ts_ms stays wall-clock for log correlation.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


@contextmanager
def timed(
    name: str,
    *,
    target: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Context manager measuring the duration of a block.

    Guarantees:
    - Metric is emitted exactly once, even if the block raises
    - Exceptions are never suppressed

    The yielded dict may be filled by the caller with extra details
    (e.g. strategy name) before the block exits.

    Usage:
        with timed("resolution_attempt", target=handle) as extra:
            extra["strategy"] = "html"
            await fetch()
    """
    extra: dict[str, Any] = dict(details or {})
    start_ns = time.monotonic_ns()
    outcome = "ok"
    try:
        yield extra
    except BaseException as exc:
        outcome = type(exc).__name__
        raise
    finally:
        log_event({
            "ts_ms": int(time.time() * 1000),
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": (time.monotonic_ns() - start_ns) // 1_000_000,
            "target": target,
            "outcome": outcome,
            "details": extra,
        })

"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Never raises
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

# Field names whose values are masked before serialization
_SECRET_KEYS = frozenset({"api_key", "euler_api_key", "authorization", "session_id_cookie"})


def _mask(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}...{value[-2:]}"
    return "***"


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies an event dict with at least "event_type".
    This function:
    - Adds ts_ms if missing
    - Masks credential-looking fields
    - Serializes to JSON, writes exactly one line, flushes
    - Never raises
    """
    payload: dict[str, Any] = dict(event)
    payload.setdefault("ts_ms", time.time_ns() // 1_000_000)
    for key in _SECRET_KEYS.intersection(payload):
        if payload[key] is not None:
            payload[key] = _mask(payload[key])

    try:
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the connection layer
        fallback: dict[str, Any] = {
            "ts_ms": payload.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(payload),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)

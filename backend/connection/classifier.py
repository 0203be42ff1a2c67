"""
Upstream error classification.

Purpose:
- Map a raw, vendor-specific failure (exception, message, status code,
  structured error dict) to a stable ErrorClassification
- Attach a retry policy hint and an actionable user message
- Keep the known vendor signatures as data (SignatureRule table) so new
  upstream error texts can be added without touching control flow

This module contains NO timers, NO async, NO side effects.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

import httpx

from policy import (
    BLOCKED_SUGGESTED_WAIT_MS,
    RATE_LIMIT_DEFAULT_WAIT_MS,
    UNKNOWN_ERROR_DEFAULT_WAIT_MS,
)


# =============================================================================
# Taxonomy
# =============================================================================

class ErrorKind(str, Enum):
    """
    Stable error taxonomy.

    BLOCKED:
        Anti-bot / geo / Cloudflare blocking. Immediate retry makes the
        block worse, so never auto-retried.

    INVALID_CREDENTIAL:
        API key rejected or missing permission. Requires reconfiguration.

    TIMEOUT:
        Transport-level abort or timeout. Caller applies backoff.

    PARSE_FAILURE:
        Expected data fields missing (HTML / JSON structure changed).

    RESOLUTION_FAILURE:
        No room identifier could be obtained (all strategies exhausted,
        or the user is not live).

    RATE_LIMITED:
        Upstream throttling (429) or overloaded gateway (504).

    NETWORK_FAILURE:
        DNS, connection refused / reset.

    UNKNOWN:
        Nothing matched. Retried with a conservative wait.
    """

    BLOCKED = "blocked"
    INVALID_CREDENTIAL = "invalid_credential"
    TIMEOUT = "timeout"
    PARSE_FAILURE = "parse_failure"
    RESOLUTION_FAILURE = "resolution_failure"
    RATE_LIMITED = "rate_limited"
    NETWORK_FAILURE = "network_failure"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    """
    Immutable result of interpreting a raw error.

    detail carries the raw error text for logs; it is never shown to users.
    """
    kind: ErrorKind
    retryable: bool
    suggested_wait_ms: int | None
    user_message: str
    remediation: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "suggested_wait_ms": self.suggested_wait_ms,
            "user_message": self.user_message,
            "remediation": self.remediation,
        }


# =============================================================================
# Signature table
# =============================================================================

@dataclass(frozen=True)
class SignatureRule:
    """
    One row of the signature table.

    A rule matches if ANY of its signatures match:
    - isinstance(raw, exception_types)
    - the structured status code is in status_codes
    - a substring (case-insensitive) occurs in the error text
    """
    kind: ErrorKind
    substrings: tuple[str, ...] = ()
    status_codes: frozenset[int] = field(default_factory=frozenset)
    exception_types: tuple[type[BaseException], ...] = ()

    def matches(self, raw: Any, text: str, status: int | None) -> bool:
        if self.exception_types and isinstance(raw, self.exception_types):
            return True
        if status is not None and status in self.status_codes:
            return True
        return any(s in text for s in self.substrings)


# Priority order matters: first match wins. Do not reorder.
DEFAULT_RULES: tuple[SignatureRule, ...] = (
    # 1. Transport-level abort / timeout (structured signals only)
    SignatureRule(
        kind=ErrorKind.TIMEOUT,
        exception_types=(TimeoutError, asyncio.TimeoutError, httpx.TimeoutException),
    ),
    # 2. Anti-bot blocking
    SignatureRule(
        kind=ErrorKind.BLOCKED,
        substrings=(
            "sigi_state",
            "blocked by",
            "access forbidden",
            "cloudflare",
            "captcha",
            "verify you are human",
            "anti-bot",
        ),
        status_codes=frozenset({403}),
    ),
    # 3. Credentials
    SignatureRule(
        kind=ErrorKind.INVALID_CREDENTIAL,
        substrings=(
            "(401)",
            "4401",
            "invalid_auth",
            "invalid api key",
            "key is invalid",
            "lack of permission",
            "lacks permission",
            "api key not configured",
            "unauthorized",
        ),
        status_codes=frozenset({401}),
    ),
    # 4. Rate limiting / overloaded gateways
    SignatureRule(
        kind=ErrorKind.RATE_LIMITED,
        substrings=(
            "(429)",
            "(504)",
            "rate limit",
            "too many requests",
            "gateway timeout",
            "sign server",
        ),
        status_codes=frozenset({429, 504}),
    ),
    # 4b. User offline: nothing to resolve until they go live
    SignatureRule(
        kind=ErrorKind.RESOLUTION_FAILURE,
        substrings=("not live", "live_not_found", "4404", "user is offline"),
    ),
    # Free-text timeouts rank below explicit blocking / auth / throttling text
    SignatureRule(
        kind=ErrorKind.TIMEOUT,
        substrings=("timeout", "timed out", "econnaborted", "etimedout"),
    ),
    # 5. Structural / parse failures
    SignatureRule(
        kind=ErrorKind.PARSE_FAILURE,
        substrings=(
            "failed to extract",
            "pattern mismatch",
            "structure changed",
            "unexpected response",
            "missing field",
        ),
        exception_types=(json.JSONDecodeError, KeyError),
    ),
    # 6. Generic network
    SignatureRule(
        kind=ErrorKind.NETWORK_FAILURE,
        substrings=(
            "econnrefused",
            "enotfound",
            "econnreset",
            "connection refused",
            "connection reset",
            "name resolution",
            "getaddrinfo",
            "network",
            "connection closed",
        ),
        exception_types=(ConnectionError, OSError, httpx.TransportError),
    ),
)


# =============================================================================
# Messages
# =============================================================================

_MESSAGES: dict[ErrorKind, tuple[str, str]] = {
    ErrorKind.BLOCKED: (
        "The platform is blocking access (anti-bot protection).",
        "Do not retry immediately. Wait at least 5 minutes, then reconnect; "
        "switching network or configuring an API key helps.",
    ),
    ErrorKind.INVALID_CREDENTIAL: (
        "The API credential was rejected.",
        "Obtain a new API key, update the settings and reconnect.",
    ),
    ErrorKind.TIMEOUT: (
        "The connection attempt timed out.",
        "Check your internet connection and firewall settings.",
    ),
    ErrorKind.PARSE_FAILURE: (
        "The platform returned data in an unexpected format.",
        "Retry shortly; if it persists, the resolution strategy needs an update.",
    ),
    ErrorKind.RESOLUTION_FAILURE: (
        "No live session was found for this user.",
        "Check the username and make sure the user is currently live.",
    ),
    ErrorKind.RATE_LIMITED: (
        "The upstream service is rate limiting requests.",
        "Wait {wait_s} seconds before reconnecting.",
    ),
    ErrorKind.NETWORK_FAILURE: (
        "Cannot reach the platform servers.",
        "Check your internet connection and DNS settings.",
    ),
    ErrorKind.UNKNOWN: (
        "Unexpected connection error.",
        "Retry in {wait_s} seconds; check the logs if it keeps happening.",
    ),
}

_NOT_RETRYABLE = frozenset({
    ErrorKind.BLOCKED,
    ErrorKind.INVALID_CREDENTIAL,
    ErrorKind.RESOLUTION_FAILURE,
})

_RETRY_AFTER_RE = re.compile(r"retry[- ]after[^0-9]{0,3}(\d+)", re.IGNORECASE)


# =============================================================================
# Extraction helpers
# =============================================================================

def _error_text(raw: Any) -> str:
    if isinstance(raw, BaseException):
        return f"{type(raw).__name__}: {raw}"
    if isinstance(raw, Mapping):
        parts = [str(raw.get(k, "")) for k in ("message", "error", "reason", "code")]
        return " ".join(p for p in parts if p)
    if raw is None:
        return ""
    return str(raw)


def _status_code(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, httpx.HTTPStatusError):
        return raw.response.status_code
    if isinstance(raw, Mapping):
        value = raw.get("status", raw.get("status_code"))
        return value if isinstance(value, int) else None
    for attr in ("status_code", "status"):
        value = getattr(raw, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _retry_after_ms(raw: Any, text: str) -> int | None:
    seconds: Any = None
    if isinstance(raw, Mapping):
        seconds = raw.get("retry_after")
    elif isinstance(raw, httpx.HTTPStatusError):
        seconds = raw.response.headers.get("Retry-After")
    else:
        seconds = getattr(raw, "retry_after", None)

    if seconds is None:
        match = _RETRY_AFTER_RE.search(text)
        seconds = match.group(1) if match else None

    try:
        value = float(seconds) if seconds is not None else None
    except (TypeError, ValueError):
        return None
    if value is None or value < 0:
        return None
    return int(value * 1000)


def _build(kind: ErrorKind, *, wait_ms: int | None, detail: str) -> ErrorClassification:
    user_message, remediation = _MESSAGES[kind]
    wait_s = (wait_ms or 0) // 1000
    return ErrorClassification(
        kind=kind,
        retryable=kind not in _NOT_RETRYABLE,
        suggested_wait_ms=wait_ms,
        user_message=user_message,
        remediation=remediation.format(wait_s=wait_s),
        detail=detail,
    )


# =============================================================================
# Public API
# =============================================================================

def classify(
    raw_error: Any,
    rules: Iterable[SignatureRule] = DEFAULT_RULES,
) -> ErrorClassification:
    """
    Classify a raw failure. Deterministic and side-effect free.

    raw_error may be an exception, a message string, an HTTP-like status
    code, or a mapping with message/status/retry_after keys.
    """
    if isinstance(raw_error, ErrorClassification):
        return raw_error

    detail = _error_text(raw_error)
    text = detail.lower()
    status = _status_code(raw_error)

    kind = ErrorKind.UNKNOWN
    for rule in rules:
        if rule.matches(raw_error, text, status):
            kind = rule.kind
            break

    wait_ms: int | None = None
    if kind is ErrorKind.BLOCKED:
        wait_ms = max(BLOCKED_SUGGESTED_WAIT_MS, _retry_after_ms(raw_error, text) or 0)
    elif kind is ErrorKind.RATE_LIMITED:
        wait_ms = _retry_after_ms(raw_error, text) or RATE_LIMIT_DEFAULT_WAIT_MS
    elif kind is ErrorKind.UNKNOWN:
        wait_ms = UNKNOWN_ERROR_DEFAULT_WAIT_MS

    return _build(kind, wait_ms=wait_ms, detail=detail)


class ErrorClassifier:
    """Injectable wrapper around classify() with an extensible rule table."""

    def __init__(self, rules: Iterable[SignatureRule] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)

    def with_rules(self, *extra: SignatureRule, prepend: bool = False) -> ErrorClassifier:
        """Return a classifier with additional rules (appended unless prepend)."""
        rules = extra + self._rules if prepend else self._rules + extra
        return ErrorClassifier(rules)

    def classify(self, raw_error: Any) -> ErrorClassification:
        return classify(raw_error, self._rules)


def aggregate_resolution_failure(
    failures: Mapping[str, ErrorClassification],
) -> ErrorClassification:
    """
    Fold the last classification per strategy into one RESOLUTION_FAILURE.

    - retryable only if at least one strategy's last error was retryable
    - suggested wait is the longest wait any strategy asked for
    - the message of the most severe non-retryable cause wins, so the user
      sees "blocked" or "credential rejected" rather than a generic text
    """
    if not failures:
        return _build(ErrorKind.RESOLUTION_FAILURE, wait_ms=None, detail="no strategies available")

    retryable = any(c.retryable for c in failures.values())
    waits = [c.suggested_wait_ms for c in failures.values() if c.suggested_wait_ms is not None]
    detail = "; ".join(f"{name}: {c.kind.value} ({c.detail})" for name, c in failures.items())

    cause = dominant_cause(failures)
    user_message, remediation = _MESSAGES[ErrorKind.RESOLUTION_FAILURE]
    if cause is not None and cause.kind is not ErrorKind.RESOLUTION_FAILURE:
        user_message = f"Could not resolve the live session: {cause.user_message}"
        remediation = cause.remediation

    return ErrorClassification(
        kind=ErrorKind.RESOLUTION_FAILURE,
        retryable=retryable,
        suggested_wait_ms=max(waits) if waits else None,
        user_message=user_message,
        remediation=remediation,
        detail=detail,
    )


# Severity used to pick the dominant cause of an aggregated failure
_SEVERITY: tuple[ErrorKind, ...] = (
    ErrorKind.BLOCKED,
    ErrorKind.INVALID_CREDENTIAL,
    ErrorKind.RESOLUTION_FAILURE,
    ErrorKind.RATE_LIMITED,
    ErrorKind.PARSE_FAILURE,
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK_FAILURE,
    ErrorKind.UNKNOWN,
)


def dominant_cause(
    failures: Mapping[str, ErrorClassification],
) -> ErrorClassification | None:
    """Return the most severe classification among per-strategy failures."""
    if not failures:
        return None
    return min(failures.values(), key=lambda c: _SEVERITY.index(c.kind))

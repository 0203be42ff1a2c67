"""
Retry policy helpers.

Purpose:
- Centralize backoff math and attempt budgets
- Allow the manager and resolver to make deterministic retry decisions

This module contains NO timers, NO async, NO side effects.
Attempt counters are owned by the caller; per-strategy and per-reconnect
counters are independent.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from connection.classifier import ErrorClassification
from policy import (
    RETRY_BASE_DELAY_MS,
    RETRY_JITTER_RATIO,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
)


# =============================================================================
# Scheduler
# =============================================================================

@dataclass(frozen=True)
class RetryScheduler:
    """
    Exponential backoff with symmetric jitter.

    delay = min(max_delay_ms, base_delay_ms * 2**attempt)
    delay += uniform(-jitter_ratio * delay, +jitter_ratio * delay)
    clamped to [0, max_delay_ms]

    rand is injectable so tests can pin the jitter; it must return a
    float in [0.0, 1.0).
    """
    base_delay_ms: int = RETRY_BASE_DELAY_MS
    max_delay_ms: int = RETRY_MAX_DELAY_MS
    max_attempts: int = RETRY_MAX_ATTEMPTS
    jitter_ratio: float = RETRY_JITTER_RATIO
    rand: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def base_delay(self, attempt: int) -> int:
        """Backoff before jitter is applied."""
        exponent = max(0, attempt)
        # Cap the exponent so huge attempt numbers cannot overflow into floats
        if exponent > 62:
            return self.max_delay_ms
        return min(self.max_delay_ms, self.base_delay_ms * (2 ** exponent))

    def next_delay(self, attempt: int) -> int:
        """Delay in milliseconds to wait after attempt number `attempt` failed."""
        delay = self.base_delay(attempt)
        # Integer spread keeps the result inside [0.9 * delay, 1.1 * delay]
        spread = int(delay * self.jitter_ratio)
        offset = int((self.rand() * 2.0 - 1.0) * spread)
        return min(self.max_delay_ms, max(0, delay + offset))

    def should_retry(self, attempt: int, classification: ErrorClassification) -> bool:
        """
        False once the attempt budget is used up, or when the failure is
        not retryable (e.g. blocked, credential rejected).
        """
        if attempt >= self.max_attempts:
            return False
        return classification.retryable

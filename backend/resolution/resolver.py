"""
Room identifier resolution.

Responsibilities:
- Serve live cache entries without touching the network
- Try injected strategies in declared priority order
- Retry each strategy within the scheduler budget, aborting a strategy on
  the first non-retryable failure
- Cache and return the first success
- Aggregate per-strategy failures into one RESOLUTION_FAILURE

Non-responsibilities:
- NO connection state (see connection.manager)
- NO HTTP details (see resolution.strategies)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence, Union

from clock import Clock
from connection.cancellation import CancellationToken, OperationCancelled
from connection.classifier import (
    ErrorClassification,
    ErrorClassifier,
    aggregate_resolution_failure,
)
from connection.retry import RetryScheduler
from observability.logger import log_event
from observability.metrics import timed
from policy import RESOLUTION_TIMEOUT_S, STRATEGY_ORDER
from resolution.cache import SessionCache
from resolution.session import ResolvedSession


@dataclass(frozen=True)
class ResolveOptions:
    use_cache: bool = True
    enabled_strategies: tuple[str, ...] = STRATEGY_ORDER
    resolution_timeout_s: float = RESOLUTION_TIMEOUT_S
    # Per-strategy credentials, e.g. {"euler": "<api key>"}
    credentials: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StrategyResult:
    identifier: str
    room_info: Mapping[str, Any] = field(default_factory=dict)


StrategyFn = Callable[[str, ResolveOptions], Awaitable[Union[str, StrategyResult]]]


@dataclass(frozen=True)
class Strategy:
    """A named resolution method. fn raises on failure."""
    name: str
    fn: StrategyFn


class ResolutionFailed(Exception):
    """All strategies exhausted (or none enabled)."""

    def __init__(
        self,
        classification: ErrorClassification,
        failures: Mapping[str, ErrorClassification],
    ) -> None:
        super().__init__(classification.user_message)
        self.classification = classification
        self.failures = dict(failures)


class RoomResolver:
    """Owns its SessionCache."""

    def __init__(
        self,
        strategies: Sequence[Strategy],
        *,
        cache: SessionCache,
        clock: Clock,
        scheduler: RetryScheduler | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._strategies = tuple(strategies)
        self._cache = cache
        self._clock = clock
        self._scheduler = scheduler or RetryScheduler()
        self._classifier = classifier or ErrorClassifier()
        self.strategy_calls = 0

    @property
    def cache(self) -> SessionCache:
        return self._cache

    @property
    def strategy_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._strategies)

    async def resolve(
        self,
        user_handle: str,
        options: ResolveOptions | None = None,
        token: CancellationToken | None = None,
    ) -> ResolvedSession:
        """
        Raises:
            ResolutionFailed when every enabled strategy is exhausted
            OperationCancelled when the token is cancelled
        """
        options = options or ResolveOptions()
        token = token or CancellationToken()

        if options.use_cache:
            cached = self._cache.get(user_handle)
            if cached is not None:
                log_event({
                    "event_type": "RESOLUTION_CACHE_HIT",
                    "target": user_handle,
                    "identifier": cached.identifier,
                    "resolved_via": cached.resolved_via,
                })
                return cached

        enabled = [s for s in self._strategies if s.name in options.enabled_strategies]
        failures: dict[str, ErrorClassification] = {}

        for index, strategy in enumerate(enabled):
            token.raise_if_cancelled()
            outcome = await self._run_strategy(strategy, user_handle, options, token)
            if isinstance(outcome, ErrorClassification):
                failures[strategy.name] = outcome
                continue

            now = self._clock.now_ms()
            session = ResolvedSession(
                identifier=outcome.identifier,
                resolved_via=strategy.name,
                resolved_at_ms=now,
                expires_at_ms=self._cache.expiry_for(now),
                room_info=outcome.room_info,
            )
            self._cache.put(user_handle, session)

            if index > 0:
                log_event({
                    "event_type": "RESOLUTION_FALLBACK_USED",
                    "target": user_handle,
                    "strategy": strategy.name,
                    "failed_strategies": list(failures),
                })
            log_event({
                "event_type": "RESOLUTION_SUCCEEDED",
                "target": user_handle,
                "identifier": session.identifier,
                "strategy": strategy.name,
            })
            return session

        classification = aggregate_resolution_failure(failures)
        log_event({
            "event_type": "RESOLUTION_FAILED",
            "target": user_handle,
            "retryable": classification.retryable,
            "failures": {name: c.kind.value for name, c in failures.items()},
        })
        raise ResolutionFailed(classification, failures)

    async def _run_strategy(
        self,
        strategy: Strategy,
        user_handle: str,
        options: ResolveOptions,
        token: CancellationToken,
    ) -> StrategyResult | ErrorClassification:
        """
        Linear retry loop for one strategy.

        Returns the result on success, else the last classification.
        """
        attempt = 0
        while True:
            self.strategy_calls += 1
            try:
                with timed(
                    "resolution_attempt",
                    target=user_handle,
                    details={"strategy": strategy.name, "attempt": attempt},
                ):
                    raw = await token.run(
                        strategy.fn(user_handle, options),
                        timeout_s=options.resolution_timeout_s,
                    )
                return _as_result(raw)
            except OperationCancelled:
                raise
            except Exception as e:
                classification = self._classifier.classify(e)

            log_event({
                "event_type": "RESOLUTION_ATTEMPT_FAILED",
                "target": user_handle,
                "strategy": strategy.name,
                "attempt": attempt,
                "kind": classification.kind.value,
                "retryable": classification.retryable,
                "error": classification.detail,
            })

            attempt += 1
            if not self._scheduler.should_retry(attempt, classification):
                return classification

            delay_ms = self._scheduler.next_delay(attempt - 1)
            await token.sleep(self._clock, delay_ms / 1000)


def _as_result(raw: Union[str, StrategyResult]) -> StrategyResult:
    if isinstance(raw, StrategyResult):
        result = raw
    else:
        result = StrategyResult(identifier=str(raw))
    if not result.identifier:
        raise ValueError("failed to extract room id: strategy returned an empty identifier")
    return result

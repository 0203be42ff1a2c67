"""
Connection manager: single-writer state machine for one live session.

Responsibilities:
- Own ConnectionState and every transition (via _transition only)
- Drive resolve -> transport connect -> connected
- Run the reconnect loop on unexpected disconnects and retryable
  connect failures, within the auto-reconnect budget
- Route inbound messages: normalize -> dedup -> anchor -> emit
- Surface classified failures as blocked / disconnected events
- Thread one CancellationToken through every await of a lifecycle

Non-responsibilities:
- NO HTTP details (resolution strategies)
- NO wire protocol (transport)
- NO consumer logic (whatever subscribes to the sink)

State machine:

    IDLE -> RESOLVING -> CONNECTING -> CONNECTED
                 |            ^  |          |
                 v            |  v          v
              BLOCKED     RECONNECTING <----+
                              |
                              v
                        DISCONNECTED

    Any state -> DISCONNECTED on disconnect().
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Mapping

from clock import Clock
from connection.cancellation import CancellationToken, OperationCancelled
from connection.classifier import (
    ErrorClassification,
    ErrorClassifier,
    ErrorKind,
    dominant_cause,
)
from connection.events import (
    Blocked,
    Connected,
    Disconnected,
    EventSink,
    EventType,
    OutboundEvent,
    Reconnecting,
    StateChanged,
    StreamEvent,
)
from connection.retry import RetryScheduler
from connection.states import (
    ACTIVE_STATES,
    ConnectionState,
    InvalidTransition,
    is_allowed,
)
from ingest.anchor import StreamClockAnchor
from ingest.dedup import EventDeduplicator
from ingest.normalize import StreamEnded, normalize
from observability.logger import log_event
from observability.metrics import timed
from policy import (
    CONNECTION_ATTEMPT_HISTORY,
    MAX_AUTO_RECONNECTS,
    RECONNECT_STABILITY_WINDOW_MS,
    RESOLUTION_TIMEOUT_S,
    STRATEGY_EULER,
    STRATEGY_ORDER,
    TRANSPORT_CONNECT_TIMEOUT_S,
)
from resolution.resolver import ResolutionFailed, ResolveOptions, RoomResolver
from resolution.session import ResolvedSession, normalize_handle
from transport.base import TransportClient, TransportError


# Kinds that park the manager in BLOCKED instead of DISCONNECTED
_BLOCKING_KINDS = frozenset({ErrorKind.BLOCKED, ErrorKind.INVALID_CREDENTIAL})


@dataclass(frozen=True)
class ConnectOptions:
    """Read-only settings supplied by the host at connect() time."""
    use_cache: bool = True
    euler_api_key: str | None = None
    enabled_strategies: tuple[str, ...] = STRATEGY_ORDER
    resolution_timeout_s: float = RESOLUTION_TIMEOUT_S
    transport_connect_timeout_s: float = TRANSPORT_CONNECT_TIMEOUT_S
    max_auto_reconnects: int = MAX_AUTO_RECONNECTS
    # Anchor at connect time when neither metadata nor events yield a start
    anchor_connect_fallback: bool = False

    @property
    def credentials(self) -> dict[str, str]:
        return {STRATEGY_EULER: self.euler_api_key} if self.euler_api_key else {}

    def resolve_options(self, *, use_cache: bool | None = None) -> ResolveOptions:
        return ResolveOptions(
            use_cache=self.use_cache if use_cache is None else use_cache,
            enabled_strategies=self.enabled_strategies,
            resolution_timeout_s=self.resolution_timeout_s,
            credentials=self.credentials,
        )


@dataclass(frozen=True)
class ConnectionAttempt:
    """One handshake outcome, kept in the bounded diagnostics history."""
    ts_ms: int
    target: str | None
    success: bool
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts_ms": self.ts_ms,
            "target": self.target,
            "success": self.success,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
        }


class ConnectRejected(Exception):
    """connect() refused: the last failure needs new credentials first."""

    def __init__(self, classification: ErrorClassification) -> None:
        super().__init__(classification.remediation)
        self.classification = classification


class ConnectionManager:
    """
    One instance per logical session. The host owns its lifetime.

    All collaborators are injected; nothing here is process-global.
    """

    def __init__(
        self,
        *,
        resolver: RoomResolver,
        transport: TransportClient,
        sink: EventSink,
        clock: Clock,
        anchor: StreamClockAnchor,
        deduplicator: EventDeduplicator,
        scheduler: RetryScheduler | None = None,
        classifier: ErrorClassifier | None = None,
        stability_window_ms: int = RECONNECT_STABILITY_WINDOW_MS,
    ) -> None:
        self._resolver = resolver
        self._transport = transport
        self._sink = sink
        self._clock = clock
        self._anchor = anchor
        self._dedup = deduplicator
        self._scheduler = scheduler or RetryScheduler()
        self._classifier = classifier or ErrorClassifier()
        self._stability_window_ms = stability_window_ms

        self._state = ConnectionState.IDLE
        self._target: str | None = None
        self._options = ConnectOptions()
        self._session: ResolvedSession | None = None

        self._token: CancellationToken | None = None
        self._task: asyncio.Task[None] | None = None

        self._reconnect_attempts = 0
        self._total_reconnects = 0
        self._connected_since_ms: int | None = None
        self._last_classification: ErrorClassification | None = None
        self._rejected_credentials: str | None = None
        self._events_emitted = 0
        self._attempts: deque[ConnectionAttempt] = deque(maxlen=CONNECTION_ATTEMPT_HISTORY)

    # -------------------------------------------------------------------------
    # Inbound API
    # -------------------------------------------------------------------------

    async def connect(
        self,
        user_handle: str,
        options: ConnectOptions | None = None,
    ) -> ConnectionState:
        """
        Start a lifecycle for user_handle and wait until it settles
        (CONNECTED, BLOCKED, DISCONNECTED) or is cancelled.

        Raises:
            ConnectRejected if the previous failure was a rejected credential
            and the options carry the same credential
            ValueError for an empty handle
        """
        options = options or ConnectOptions()
        target = normalize_handle(user_handle)
        if not target:
            raise ValueError("user_handle must not be empty")

        last = self._last_classification
        if (
            self._state is ConnectionState.BLOCKED
            and last is not None
            and last.kind is ErrorKind.INVALID_CREDENTIAL
            and options.euler_api_key == self._rejected_credentials
        ):
            log_event({
                "event_type": "CONNECT_REJECTED",
                "target": target,
                "kind": last.kind.value,
            })
            raise ConnectRejected(last)

        if self._state in ACTIVE_STATES:
            # Same target: the stream keeps its anchor and dedup window
            await self._teardown("superseded", reset_anchor=self._target != target)

        if self._anchor.target is not None and self._anchor.target != target:
            self._anchor.reset()
            self._dedup.clear()
        self._anchor.bind(target)

        self._target = target
        self._options = options
        self._session = None
        self._reconnect_attempts = 0
        self._connected_since_ms = None
        self._last_classification = None

        token = CancellationToken()
        self._token = token

        log_event({
            "event_type": "CONNECT_REQUESTED",
            "target": target,
            "use_cache": options.use_cache,
            "strategies": list(options.enabled_strategies),
        })
        await self._transition(ConnectionState.RESOLVING, reason="connect")

        self._task = asyncio.create_task(self._lifecycle(token))
        await self.join()
        return self._state

    async def disconnect(self, reason: str = "manual") -> None:
        """
        Abort any in-flight work and go to DISCONNECTED.

        The stream anchor is reset here (and on target change), never on
        automatic reconnects.
        """
        await self._teardown(reason, reset_anchor=True)

    async def _teardown(self, reason: str, *, reset_anchor: bool) -> None:
        if self._token is not None:
            self._token.cancel(reason)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

        await self._transport.disconnect()

        self._connected_since_ms = None
        self._session = None
        if reset_anchor:
            self._anchor.reset()
            self._dedup.clear()

        if self._state is ConnectionState.DISCONNECTED:
            return
        await self._transition(ConnectionState.DISCONNECTED, reason=reason)
        await self._emit(Disconnected(
            event_type=EventType.DISCONNECTED,
            ts_ms=self._clock.now_ms(),
            target=self._target,
            reason=reason,
        ))

    def get_state(self) -> ConnectionState:
        return self._state

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def reconnect_attempts(self) -> int:
        self._refresh_stability()
        return self._reconnect_attempts

    @property
    def last_classification(self) -> ErrorClassification | None:
        return self._last_classification

    def get_diagnostics(self) -> dict[str, Any]:
        self._refresh_stability()
        anchor = self._anchor.get_anchor()
        return {
            "state": self._state.value,
            "target": self._target,
            "session": self._session.to_dict() if self._session else None,
            "reconnect_attempts": self._reconnect_attempts,
            "max_auto_reconnects": self._options.max_auto_reconnects,
            "total_reconnects": self._total_reconnects,
            "connected_since_ms": self._connected_since_ms,
            "last_classification": (
                self._last_classification.to_dict() if self._last_classification else None
            ),
            "anchor": anchor.to_dict() if anchor else None,
            "elapsed_ms": self._anchor.elapsed_ms(),
            "events_emitted": self._events_emitted,
            "strategy_calls": self._resolver.strategy_calls,
            "cache": self._resolver.cache.stats(),
            "dedup": self._dedup.stats(),
            "connection_attempts": [a.to_dict() for a in self._attempts],
        }

    async def join(self) -> None:
        """Wait until no lifecycle task is running (follows reconnect hand-offs)."""
        while True:
            task = self._task
            if task is None or task.done() or task is asyncio.current_task():
                return
            await asyncio.gather(task, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _lifecycle(self, token: CancellationToken) -> None:
        try:
            try:
                session = await self._resolver.resolve(
                    self._target or "",
                    self._options.resolve_options(),
                    token,
                )
            except ResolutionFailed as e:
                await self._fail(e.classification, failures=e.failures, reason="resolution_failed")
                return

            await self._transition(ConnectionState.CONNECTING, reason="resolved")
            try:
                await self._open_transport(session, token)
            except OperationCancelled:
                raise
            except Exception as e:  # pylint: disable=broad-exception-caught
                await self._reconnect_loop(token, self._classify(e))
        except OperationCancelled:
            log_event({
                "event_type": "LIFECYCLE_CANCELLED",
                "target": self._target,
                "reason": token.reason,
            })

    async def _open_transport(self, session: ResolvedSession, token: CancellationToken) -> None:
        """
        Handshake under the connect timeout, then CONNECTING -> CONNECTED.
        """
        with timed(
            "transport_connect",
            target=self._target,
            details={"room_id": session.identifier},
        ):
            metadata = await token.run(
                self._transport.connect(
                    session,
                    user_handle=self._target or "",
                    credentials=self._options.credentials,
                    on_message=self._on_message,
                    on_disconnect=self._on_transport_disconnect,
                ),
                timeout_s=self._options.transport_connect_timeout_s,
            )

        token.raise_if_cancelled()
        room_info: dict[str, Any] = dict(session.room_info)
        room_info.update(metadata or {})

        self._session = session
        self._anchor.observe(room_info)
        if self._options.anchor_connect_fallback and self._anchor.get_anchor() is None:
            self._anchor.mark_connect_fallback()
        self._connected_since_ms = self._clock.now_ms()
        self._record_attempt(success=True)

        await self._transition(ConnectionState.CONNECTED, reason="handshake")
        await self._emit(Connected(
            event_type=EventType.CONNECTED,
            ts_ms=self._clock.now_ms(),
            target=self._target,
            session_id=session.identifier,
            start_anchor=self._anchor.get_anchor(),
        ))

    async def _reconnect_loop(
        self,
        token: CancellationToken,
        classification: ErrorClassification,
        failures: Mapping[str, ErrorClassification] | None = None,
    ) -> None:
        """
        Linear loop: check budget -> RECONNECTING -> sleep -> CONNECTING ->
        re-resolve (cache first) -> handshake. Ends CONNECTED or terminal.
        """
        while True:
            token.raise_if_cancelled()
            self._last_classification = classification

            budget = self._options.max_auto_reconnects
            if not classification.retryable:
                await self._fail(classification, failures=failures, reason="non_retryable")
                return
            if self._reconnect_attempts >= budget:
                await self._fail(classification, failures=failures, reason="reconnect_budget_exhausted")
                return

            delay_ms = max(
                self._scheduler.next_delay(self._reconnect_attempts),
                classification.suggested_wait_ms or 0,
            )
            self._reconnect_attempts += 1
            self._total_reconnects += 1

            await self._transition(ConnectionState.RECONNECTING, reason=classification.kind.value)
            await self._emit(Reconnecting(
                event_type=EventType.RECONNECTING,
                ts_ms=self._clock.now_ms(),
                target=self._target,
                attempt=self._reconnect_attempts,
                delay_ms=delay_ms,
                classification=classification,
            ))
            log_event({
                "event_type": "RECONNECT_SCHEDULED",
                "target": self._target,
                "attempt": self._reconnect_attempts,
                "max_attempts": budget,
                "delay_ms": delay_ms,
                "kind": classification.kind.value,
            })

            await token.sleep(self._clock, delay_ms / 1000)
            await self._transition(ConnectionState.CONNECTING, reason="retry")

            failures = None
            try:
                session = await self._resolver.resolve(
                    self._target or "",
                    self._options.resolve_options(use_cache=True),
                    token,
                )
                await self._open_transport(session, token)
                return
            except OperationCancelled:
                raise
            except ResolutionFailed as e:
                classification = e.classification
                failures = e.failures
            except Exception as e:  # pylint: disable=broad-exception-caught
                classification = self._classify(e)

    async def _fail(
        self,
        classification: ErrorClassification,
        *,
        failures: Mapping[str, ErrorClassification] | None,
        reason: str,
    ) -> None:
        """
        Terminal outcome of a lifecycle.

        Anti-bot blocks and rejected credentials park the manager in BLOCKED;
        everything else ends in DISCONNECTED.
        """
        cause = classification
        if failures:
            dominant = dominant_cause(failures)
            if dominant is not None and not classification.retryable:
                cause = replace(dominant, detail=classification.detail)

        self._last_classification = cause
        self._connected_since_ms = None
        self._record_attempt(success=False, classification=cause)
        log_event({
            "event_type": "LIFECYCLE_FAILED",
            "target": self._target,
            "reason": reason,
            "kind": cause.kind.value,
            "retryable": cause.retryable,
            "remediation": cause.remediation,
        })

        if cause.kind in _BLOCKING_KINDS and not cause.retryable:
            self._rejected_credentials = self._options.euler_api_key
            await self._transition(ConnectionState.BLOCKED, reason=cause.kind.value)
            await self._emit(Blocked(
                event_type=EventType.BLOCKED,
                ts_ms=self._clock.now_ms(),
                target=self._target,
                classification=cause,
            ))
            return

        await self._transition(ConnectionState.DISCONNECTED, reason=reason)
        await self._emit(Disconnected(
            event_type=EventType.DISCONNECTED,
            ts_ms=self._clock.now_ms(),
            target=self._target,
            reason=reason,
            classification=cause,
        ))

    # -------------------------------------------------------------------------
    # Transport callbacks
    # -------------------------------------------------------------------------

    async def _on_transport_disconnect(self, error: BaseException | None) -> None:
        token = self._token
        if self._state is not ConnectionState.CONNECTED or token is None or token.cancelled:
            return

        self._refresh_stability()
        classification = self._classify(
            error if error is not None else TransportError("connection closed by upstream")
        )
        self._connected_since_ms = None
        log_event({
            "event_type": "TRANSPORT_LOST",
            "target": self._target,
            "kind": classification.kind.value,
            "retryable": classification.retryable,
            "reconnect_attempts": self._reconnect_attempts,
        })
        self._task = asyncio.create_task(self._run_reconnect(token, classification))

    async def _run_reconnect(self, token: CancellationToken, classification: ErrorClassification) -> None:
        try:
            await self._reconnect_loop(token, classification)
        except OperationCancelled:
            log_event({
                "event_type": "LIFECYCLE_CANCELLED",
                "target": self._target,
                "reason": token.reason,
            })

    async def _on_message(self, event_name: str, data: Mapping[str, Any]) -> None:
        """
        Inbound raw message, in transport order.
        """
        if self._state is not ConnectionState.CONNECTED:
            return

        self._refresh_stability()
        try:
            result = normalize(event_name, data)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "MESSAGE_NORMALIZE_FAILED",
                "target": self._target,
                "stream_event": event_name,
                "error": repr(e),
            })
            return
        if result is None:
            return

        if isinstance(result, StreamEnded):
            await self._end_stream()
            return

        if self._dedup.is_duplicate(result.event_type.value, result.payload):
            return

        now = self._clock.now_ms()
        self._anchor.observe_event(
            result.upstream_ts_ms if result.upstream_ts_ms is not None else now
        )
        await self._emit(StreamEvent(
            event_type=result.event_type,
            ts_ms=now,
            target=self._target,
            payload=result.payload,
            elapsed_ms=self._anchor.elapsed_ms(),
        ))

    async def _end_stream(self) -> None:
        log_event({
            "event_type": "STREAM_ENDED",
            "target": self._target,
            "elapsed_ms": self._anchor.elapsed_ms(),
        })
        await self.disconnect(reason="stream_ended")

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _classify(self, error: BaseException) -> ErrorClassification:
        classification = self._classifier.classify(error)
        self._last_classification = classification
        return classification

    def _record_attempt(
        self,
        *,
        success: bool,
        classification: ErrorClassification | None = None,
    ) -> None:
        self._attempts.appendleft(ConnectionAttempt(
            ts_ms=self._clock.now_ms(),
            target=self._target,
            success=success,
            error_kind=classification.kind if classification else None,
            error_message=classification.user_message if classification else None,
        ))

    def _refresh_stability(self) -> None:
        """
        Reset the reconnect budget once the connection has stayed up for
        the stability window. Evaluated lazily on reads and callbacks.
        """
        since = self._connected_since_ms
        if (
            self._state is not ConnectionState.CONNECTED
            or since is None
            or self._reconnect_attempts == 0
        ):
            return
        if self._clock.now_ms() - since >= self._stability_window_ms:
            log_event({
                "event_type": "RECONNECT_BUDGET_RESET",
                "target": self._target,
                "previous_attempts": self._reconnect_attempts,
            })
            self._reconnect_attempts = 0

    async def _transition(self, target: ConnectionState, *, reason: str | None = None) -> None:
        """Single write path for state."""
        current = self._state
        if not is_allowed(current, target):
            raise InvalidTransition(current, target)

        self._state = target
        log_event({
            "event_type": "STATE_TRANSITION",
            "target": self._target,
            "from": current.value,
            "to": target.value,
            "reason": reason,
        })
        await self._emit(StateChanged(
            event_type=EventType.STATE_CHANGED,
            ts_ms=self._clock.now_ms(),
            target=self._target,
            previous=current,
            current=target,
            reason=reason,
        ))

    async def _emit(self, event: OutboundEvent) -> None:
        """Consumer failures are logged and never break the state machine."""
        self._events_emitted += 1
        try:
            await self._sink(event)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "EVENT_SINK_ERROR",
                "target": self._target,
                "stream_event": event.event_type.value,
                "error": repr(e),
            })

# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest
from fakes import T0_MS, FakeClock, FakeTransport, Harness, ScriptedStrategy, room

from connection.classifier import ErrorKind
from connection.events import Blocked, Connected, Disconnected, Reconnecting, StreamEvent
from connection.manager import ConnectOptions, ConnectRejected
from connection.states import ConnectionState
from ingest.anchor import AnchorSource
from ingest.normalize import normalize
from policy import (
    CONNECTION_ATTEMPT_HISTORY,
    RATE_LIMIT_DEFAULT_WAIT_MS,
    RECONNECT_STABILITY_WINDOW_MS,
)
from transport.base import TransportError


START_MS = T0_MS - 3_600_000
STRATEGY_NAMES = ("html", "live_api", "web_api", "euler")


def _always(outcome, names=STRATEGY_NAMES):
    return [ScriptedStrategy(name, [outcome]) for name in names]


def _connected_harness(**kwargs) -> Harness:
    kwargs.setdefault("transport", FakeTransport(metadata={"room": {"start_time": START_MS // 1000}}))
    return Harness([ScriptedStrategy("html", [room("7300")])], **kwargs)


# ---------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------

def test_fallback_strategy_connects_and_caches():
    h = Harness([
        ScriptedStrategy("html", [ConnectionRefusedError("connect ECONNREFUSED")]),
        ScriptedStrategy("live_api", [ConnectionRefusedError("connect ECONNREFUSED")]),
        ScriptedStrategy("web_api", [room("7300")]),
        ScriptedStrategy("euler", ["unused"]),
    ])

    state = asyncio.run(h.manager.connect("alice"))

    assert state is ConnectionState.CONNECTED
    assert [s.calls for s in h.strategies] == [5, 5, 1, 0]
    assert h.cache.get("alice") is not None
    assert h.manager.reconnect_attempts == 0
    assert h.sink.states() == ["RESOLVING", "CONNECTING", "CONNECTED"]

    [connected] = h.sink.of_type("connected")
    assert isinstance(connected, Connected)
    assert connected.session_id == "7300"


def test_connect_passes_credentials_to_transport():
    h = _connected_harness()
    asyncio.run(h.manager.connect("alice", ConnectOptions(euler_api_key="k1")))
    assert h.transport.credentials == [{"euler": "k1"}]


def test_metadata_anchor_is_set_on_connect():
    h = _connected_harness()
    asyncio.run(h.manager.connect("alice"))

    [connected] = h.sink.of_type("connected")
    assert isinstance(connected, Connected)
    assert connected.start_anchor is not None
    assert connected.start_anchor.start_time_ms == START_MS
    assert h.manager.get_diagnostics()["elapsed_ms"] == 3_600_000


def test_non_finite_metadata_start_still_connects():
    h = _connected_harness(transport=FakeTransport(metadata={"start_time": "nan"}))

    assert asyncio.run(h.manager.connect("alice")) is ConnectionState.CONNECTED
    assert h.anchor.get_anchor() is None
    assert h.manager.get_diagnostics()["elapsed_ms"] is None


def test_connect_fallback_anchor_when_requested():
    h = _connected_harness(transport=FakeTransport())

    async def scenario():
        await h.manager.connect("alice", ConnectOptions(anchor_connect_fallback=True))
        fallback = h.anchor.get_anchor()
        h.clock.advance(1_000)
        await h.transport.deliver("chat", {**CHAT, "common": {"createTime": (T0_MS - 5_000) // 1000}})
        return fallback

    fallback = asyncio.run(scenario())
    assert fallback is not None
    assert fallback.source is AnchorSource.CONNECT_FALLBACK
    assert fallback.start_time_ms == T0_MS

    upgraded = h.anchor.get_anchor()
    assert upgraded is not None
    assert upgraded.source is AnchorSource.EARLIEST_EVENT
    assert h.manager.get_diagnostics()["elapsed_ms"] == 6_000


def test_connect_without_fallback_leaves_anchor_unset():
    h = _connected_harness(transport=FakeTransport())
    asyncio.run(h.manager.connect("alice"))
    assert h.anchor.get_anchor() is None


def test_empty_handle_rejected():
    h = _connected_harness()
    with pytest.raises(ValueError):
        asyncio.run(h.manager.connect(" @ "))
    assert h.manager.get_state() is ConnectionState.IDLE


# ---------------------------------------------------------------------
# Terminal failures
# ---------------------------------------------------------------------

def test_all_strategies_blocked_parks_in_blocked_without_retry():
    h = Harness(_always(RuntimeError("Request blocked by platform anti-bot protection")))

    state = asyncio.run(h.manager.connect("alice"))

    assert state is ConnectionState.BLOCKED
    assert [s.calls for s in h.strategies] == [1, 1, 1, 1]
    assert not h.sink.of_type("reconnecting")
    assert h.transport.connect_calls == []

    [blocked] = h.sink.of_type("blocked")
    assert isinstance(blocked, Blocked)
    assert blocked.classification.kind is ErrorKind.BLOCKED
    assert blocked.classification.retryable is False
    assert "html" in (blocked.classification.detail or "")


def test_blocked_allows_new_connect():
    h = Harness([ScriptedStrategy("html", [RuntimeError("blocked by platform"), room("7300")])])

    async def scenario():
        first = await h.manager.connect("alice")
        second = await h.manager.connect("alice")
        return first, second

    assert asyncio.run(scenario()) == (ConnectionState.BLOCKED, ConnectionState.CONNECTED)


def test_connection_attempts_recorded_newest_first():
    h = Harness([ScriptedStrategy("html", [RuntimeError("blocked by platform"), room("7300")])])

    async def scenario():
        await h.manager.connect("alice")
        await h.manager.connect("alice")

    asyncio.run(scenario())
    attempts = h.manager.get_diagnostics()["connection_attempts"]
    assert [a["success"] for a in attempts] == [True, False]
    assert attempts[0]["error_kind"] is None
    assert attempts[1]["error_kind"] == "blocked"
    assert attempts[1]["target"] == "alice"
    assert attempts[1]["error_message"]


def test_connection_attempt_history_is_bounded():
    h = Harness([ScriptedStrategy("html", [RuntimeError("blocked by platform")])])

    async def scenario():
        for _ in range(CONNECTION_ATTEMPT_HISTORY + 2):
            await h.manager.connect("alice")

    asyncio.run(scenario())
    attempts = h.manager.get_diagnostics()["connection_attempts"]
    assert len(attempts) == CONNECTION_ATTEMPT_HISTORY
    assert not any(a["success"] for a in attempts)


def test_offline_user_ends_disconnected():
    h = Harness(_always(RuntimeError("User is not live (status: 4)")))

    assert asyncio.run(h.manager.connect("alice")) is ConnectionState.DISCONNECTED
    [event] = h.sink.of_type("disconnected")
    assert isinstance(event, Disconnected)
    assert event.classification is not None
    assert event.classification.kind is ErrorKind.RESOLUTION_FAILURE


def test_rejected_credential_requires_new_key():
    h = Harness([
        ScriptedStrategy("euler", [RuntimeError("Euler API key is invalid (401)"), room("7300")]),
    ])

    async def scenario():
        first = await h.manager.connect("alice", ConnectOptions(euler_api_key="old"))
        with pytest.raises(ConnectRejected) as info:
            await h.manager.connect("alice", ConnectOptions(euler_api_key="old"))
        second = await h.manager.connect("alice", ConnectOptions(euler_api_key="new"))
        return first, info.value, second

    first, rejected, second = asyncio.run(scenario())
    assert first is ConnectionState.BLOCKED
    assert rejected.classification.kind is ErrorKind.INVALID_CREDENTIAL
    assert second is ConnectionState.CONNECTED
    assert h.strategies[0].calls == 2


# ---------------------------------------------------------------------
# Reconnect
# ---------------------------------------------------------------------

def test_rate_limited_drop_reconnects_and_keeps_anchor():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.drop(TransportError("rate limit exceeded (429)"))
        await h.manager.join()

    asyncio.run(scenario())

    assert h.manager.get_state() is ConnectionState.CONNECTED
    assert h.manager.reconnect_attempts == 1
    assert h.sink.states()[-3:] == ["RECONNECTING", "CONNECTING", "CONNECTED"]
    assert h.clock.sleeps == [RATE_LIMIT_DEFAULT_WAIT_MS / 1000]

    [reconnecting] = h.sink.of_type("reconnecting")
    assert isinstance(reconnecting, Reconnecting)
    assert reconnecting.attempt == 1
    assert reconnecting.delay_ms == RATE_LIMIT_DEFAULT_WAIT_MS

    # cached session reused, anchor still anchored to the stream start
    assert h.strategies[0].calls == 1
    anchor = h.anchor.get_anchor()
    assert anchor is not None and anchor.start_time_ms == START_MS


def test_clean_upstream_close_is_retryable():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.drop(None)
        await h.manager.join()

    asyncio.run(scenario())
    assert h.manager.get_state() is ConnectionState.CONNECTED
    assert len(h.transport.connect_calls) == 2


def test_credential_loss_while_connected_goes_blocked():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.drop(TransportError("WebSocket closed with code 4401 (INVALID_AUTH)", code=4401))
        await h.manager.join()

    asyncio.run(scenario())
    assert h.manager.get_state() is ConnectionState.BLOCKED
    assert not h.sink.of_type("reconnecting")


def test_transport_connect_failure_is_retried():
    h = _connected_harness(transport=FakeTransport(failures=[ConnectionRefusedError("refused")]))

    assert asyncio.run(h.manager.connect("alice")) is ConnectionState.CONNECTED
    assert h.sink.states() == [
        "RESOLVING", "CONNECTING", "RECONNECTING", "CONNECTING", "CONNECTED",
    ]
    assert h.clock.sleeps == [1.0]
    assert h.manager.reconnect_attempts == 1


def test_reconnect_budget_exhausted_ends_disconnected():
    failures = [ConnectionRefusedError("refused")] * 6
    h = _connected_harness(transport=FakeTransport(failures=failures))

    assert asyncio.run(h.manager.connect("alice")) is ConnectionState.DISCONNECTED
    assert len(h.transport.connect_calls) == 6
    assert len(h.sink.of_type("reconnecting")) == 5

    [event] = h.sink.of_type("disconnected")
    assert isinstance(event, Disconnected)
    assert event.reason == "reconnect_budget_exhausted"


def test_reconnect_counter_resets_after_stability_window():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.drop(ConnectionResetError("connection reset"))
        await h.manager.join()

    asyncio.run(scenario())
    assert h.manager.reconnect_attempts == 1

    h.clock.advance(RECONNECT_STABILITY_WINDOW_MS - 1)
    assert h.manager.reconnect_attempts == 1
    h.clock.advance(1)
    assert h.manager.reconnect_attempts == 0
    assert h.manager.get_diagnostics()["total_reconnects"] == 1


# ---------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------

def test_disconnect_during_resolving_aborts_promptly():
    class Hanging(ScriptedStrategy):
        def __init__(self) -> None:
            super().__init__("html", ["never"])
            self.entered = False

        async def __call__(self, user_handle, options):
            self.calls += 1
            self.entered = True
            await asyncio.Event().wait()
            return "never"

    hanging = Hanging()
    h = Harness([hanging, ScriptedStrategy("live_api", [room("7300")])])

    async def scenario():
        task = asyncio.create_task(h.manager.connect("alice"))
        while not hanging.entered:
            await asyncio.sleep(0)
        await h.manager.disconnect()
        return await task

    assert asyncio.run(scenario()) is ConnectionState.DISCONNECTED
    assert h.strategies[1].calls == 0
    assert h.transport.connect_calls == []
    assert h.sink.states() == ["RESOLVING", "DISCONNECTED"]


class StalledClock(FakeClock):
    """Backoff sleeps never finish on their own."""

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.Event().wait()


def test_disconnect_during_backoff_stops_reconnect():
    clock = StalledClock()
    h = _connected_harness(
        clock=clock,
        transport=FakeTransport(failures=[ConnectionRefusedError("refused")]),
    )

    async def scenario():
        task = asyncio.create_task(h.manager.connect("alice"))
        while not clock.sleeps:
            await asyncio.sleep(0)
        await h.manager.disconnect()
        return await task

    assert asyncio.run(scenario()) is ConnectionState.DISCONNECTED
    assert len(h.transport.connect_calls) == 1
    assert h.sink.states()[-2:] == ["RECONNECTING", "DISCONNECTED"]


def test_disconnect_then_other_user_starts_without_anchor():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.manager.disconnect()
        h.transport.metadata = {}
        await h.manager.connect("bob")

    asyncio.run(scenario())
    assert h.manager.target == "bob"
    assert h.anchor.get_anchor() is None
    assert h.manager.get_diagnostics()["elapsed_ms"] is None


def test_connect_while_connected_supersedes_previous():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        h.transport.metadata = {}
        await h.manager.connect("alice")

    asyncio.run(scenario())
    assert h.manager.get_state() is ConnectionState.CONNECTED
    assert h.transport.disconnect_calls == 1
    assert [e.reason for e in h.sink.of_type("disconnected")] == ["superseded"]

    anchor = h.anchor.get_anchor()
    assert anchor is not None
    assert anchor.source is AnchorSource.SESSION_METADATA
    assert anchor.start_time_ms == START_MS


def test_superseding_with_other_user_resets_anchor():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        h.transport.metadata = {}
        await h.manager.connect("bob")

    asyncio.run(scenario())
    assert h.manager.target == "bob"
    assert h.anchor.get_anchor() is None


# ---------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------

CHAT = {"userId": 1, "uniqueId": "viewer", "comment": "hello"}


def test_duplicate_messages_emitted_once_with_elapsed():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.deliver("chat", CHAT)
        h.clock.advance(500)
        await h.transport.deliver("chat", CHAT)

    asyncio.run(scenario())
    [event] = h.sink.of_type("chat")
    assert isinstance(event, StreamEvent)
    assert event.payload["comment"] == "hello"
    assert event.elapsed_ms == 3_600_000


def test_first_event_anchors_when_metadata_missing():
    h = _connected_harness(transport=FakeTransport())

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.deliver("chat", {**CHAT, "common": {"createTime": (T0_MS - 5_000) // 1000}})

    asyncio.run(scenario())
    [event] = h.sink.of_type("chat")
    assert isinstance(event, StreamEvent)
    assert event.elapsed_ms == 5_000


def test_non_finite_like_count_is_emitted_with_default():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.deliver("like", {**CHAT, "likeCount": float("inf")})

    asyncio.run(scenario())
    assert h.manager.get_state() is ConnectionState.CONNECTED
    [event] = h.sink.of_type("like")
    assert isinstance(event, StreamEvent)
    assert event.payload["like_count"] == 1


def test_unnormalizable_message_is_dropped(monkeypatch):
    logged = []
    monkeypatch.setattr("connection.manager.log_event", logged.append)

    def fragile_normalize(event_name, data):
        if data.get("broken"):
            raise KeyError("broken")
        return normalize(event_name, data)

    monkeypatch.setattr("connection.manager.normalize", fragile_normalize)
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.deliver("chat", {**CHAT, "broken": True})
        await h.transport.deliver("chat", CHAT)

    asyncio.run(scenario())
    assert h.manager.get_state() is ConnectionState.CONNECTED
    assert len(h.sink.of_type("chat")) == 1
    [failure] = [e for e in logged if e["event_type"] == "MESSAGE_NORMALIZE_FAILED"]
    assert failure["stream_event"] == "chat"


def test_stream_end_disconnects_and_resets_anchor():
    h = _connected_harness()

    async def scenario():
        await h.manager.connect("alice")
        await h.transport.deliver("streamEnd", {})

    asyncio.run(scenario())
    assert h.manager.get_state() is ConnectionState.DISCONNECTED
    assert [e.reason for e in h.sink.of_type("disconnected")] == ["stream_ended"]
    assert h.anchor.get_anchor() is None


def test_sink_failure_does_not_break_state_machine():
    h = _connected_harness()

    async def failing_sink(event):
        raise RuntimeError("consumer crashed")

    h.manager._sink = failing_sink  # pylint: disable=protected-access
    assert asyncio.run(h.manager.connect("alice")) is ConnectionState.CONNECTED

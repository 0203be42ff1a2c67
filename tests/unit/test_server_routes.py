# pylint: disable=missing-module-docstring,missing-function-docstring

from typing import Iterator

import pytest
from fakes import FakeClock, FakeTransport, ScriptedStrategy, room
from fastapi.testclient import TestClient

from config import AppConfig
from policy import STRATEGY_ORDER
from server.app import Services, build_services, create_app
from storage.persistence import InMemoryStore


def _config(**overrides) -> AppConfig:
    values = dict(
        env="test",
        log_level="INFO",
        host="127.0.0.1",
        port=8000,
        euler_api_key=None,
        resolution_timeout_s=1.0,
        transport_connect_timeout_s=1.0,
        max_auto_reconnects=5,
        enable_euler_fallback=False,
        enabled_strategies=STRATEGY_ORDER,
        anchor_connect_fallback=False,
        state_file=None,
        sweep_interval_s=30.0,
    )
    values.update(overrides)
    return AppConfig(**values)


def _services(outcome, config: AppConfig | None = None) -> Services:
    config = config or _config()
    return build_services(
        config,
        clock=FakeClock(),
        strategies=[ScriptedStrategy("html", [outcome]).as_strategy()],
        transport=FakeTransport(),
        store=InMemoryStore(),
    )


@pytest.fixture
def client() -> Iterator[TestClient]:
    config = _config()
    app = create_app(config, services=_services(room("7300"), config))
    with TestClient(app) as c:
        yield c


def test_health(client: TestClient):
    assert client.get("/health").json() == {"status": "ok"}


def test_connect_then_state_and_disconnect(client: TestClient):
    response = client.post("/connect", json={"username": "@Alice"})
    assert response.status_code == 200
    assert response.json() == {"state": "CONNECTED", "target": "alice", "classification": None}

    state = client.get("/state").json()
    assert state == {"state": "CONNECTED", "target": "alice", "reconnect_attempts": 0}

    assert client.post("/disconnect").json() == {"state": "DISCONNECTED"}


def test_connect_fallback_override_reports_elapsed(client: TestClient):
    client.post("/connect", json={"username": "alice", "anchor_connect_fallback": True})
    data = client.get("/diagnostics").json()

    assert data["anchor"]["source"] == "connect_fallback"
    assert data["elapsed_ms"] == 0
    assert data["connection_attempts"][0]["success"] is True


def test_connect_validates_username(client: TestClient):
    assert client.post("/connect", json={"username": ""}).status_code == 422
    assert client.post("/connect", json={"username": "@"}).status_code == 400


def test_blocked_connect_reports_classification():
    config = _config()
    services = _services(RuntimeError("blocked by platform"), config)
    with TestClient(create_app(config, services=services)) as c:
        body = c.post("/connect", json={"username": "alice"}).json()

    assert body["state"] == "BLOCKED"
    assert body["classification"]["kind"] == "blocked"
    assert body["classification"]["retryable"] is False


def test_rejected_credential_returns_409():
    config = _config(enable_euler_fallback=True)
    services = _services(RuntimeError("Euler API key is invalid (401)"), config)
    with TestClient(create_app(config, services=services)) as c:
        first = c.post("/connect", json={"username": "alice", "euler_api_key": "old"})
        second = c.post("/connect", json={"username": "alice", "euler_api_key": "old"})

    assert first.json()["state"] == "BLOCKED"
    assert second.status_code == 409
    assert second.json()["detail"]["kind"] == "invalid_credential"


def test_diagnostics_include_host_counters(client: TestClient):
    client.post("/connect", json={"username": "alice"})
    data = client.get("/diagnostics").json()

    assert data["state"] == "CONNECTED"
    assert data["cache"]["size"] == 1
    assert data["subscribers"] == 0
    assert data["events_published"] >= 4
    assert data["elapsed_ms"] is None


def test_events_websocket_streams_lifecycle(client: TestClient):
    with client.websocket_connect("/events") as ws:
        client.post("/connect", json={"username": "alice"})
        first = ws.receive_json()
        assert first["type"] == "state_changed"
        assert first["current"] == "RESOLVING"

        types = [ws.receive_json()["type"] for _ in range(3)]
        assert types == ["state_changed", "state_changed", "connected"]


def test_connect_options_drop_euler_unless_enabled():
    assert "euler" not in _config().connect_options().enabled_strategies
    assert "euler" in _config(enable_euler_fallback=True).connect_options().enabled_strategies


def test_load_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENABLED_STRATEGIES", "euler, html")
    monkeypatch.setenv("EULER_API_KEY", "k")
    monkeypatch.setenv("MAX_AUTO_RECONNECTS", "3")
    monkeypatch.setenv("ANCHOR_CONNECT_FALLBACK", "true")
    config = AppConfig.load_from_env()

    assert config.enabled_strategies == ("html", "euler")
    assert config.euler_api_key == "k"
    assert config.connect_options().max_auto_reconnects == 3
    assert config.connect_options().anchor_connect_fallback is True

# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEngine, fast_config
from config import AppConfig
from server.app import build_upstream_engine, create_app


def make_client(engine: FakeEngine) -> TestClient:
    config = AppConfig(delivery=fast_config(), log_level="DEBUG")
    return TestClient(create_app(config=config, engine=engine))


def test_health():
    with make_client(FakeEngine()) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_status_reports_registry_and_delivery():
    with make_client(FakeEngine()) as client:
        body = client.get("/status").json()
    assert body["active_conversations"] == 0
    assert body["lane_count"] == 4
    assert body["delivery"]["idle_timeout_ms"] == 30


def test_websocket_session_roundtrip():
    engine = FakeEngine()
    with make_client(engine) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "ping"}))
            assert ws.receive_json()["event"] == "pong"

            ws.send_text(json.dumps({"event": "start-conversation", "data": {}}))
            started = ws.receive_json()
            assert started["event"] == "session-status"
            cid = started["data"]["sessionId"]

            ws.send_text(json.dumps({"event": "text-input", "data": {"text": "hi"}}))
            ws.send_text(json.dumps({"event": "get-session-info"}))
            info = ws.receive_json()
            assert info["event"] == "session-info"
            assert info["data"]["turnCount"] == 1

            ws.send_text("garbage")
            assert ws.receive_json()["data"]["code"] == "malformed-message"

        assert engine.texts == [(cid, "hi")]

    assert cid in engine.closed
    assert engine.shut_down


def test_missing_api_key_rejected():
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        create_app(config=AppConfig(openai_api_key=None))


def test_unknown_provider_rejected():
    config = AppConfig(upstream_provider="acme", openai_api_key="sk-test")
    with pytest.raises(RuntimeError, match="UPSTREAM_PROVIDER"):
        create_app(config=config)


def test_openai_engine_built_with_key():
    config = AppConfig(openai_api_key="sk-test")
    app = create_app(config=config)
    engine = build_upstream_engine(config, app.state.relay)
    assert type(engine).__name__ == "OpenAIRealtimeEngine"


# ---------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------

def test_live_and_ready_checks():
    config = AppConfig(delivery=fast_config(), log_level="DEBUG")
    app = create_app(config=config, engine=FakeEngine())

    # Lifespan not started yet
    cold = TestClient(app)
    assert cold.get("/health/live").json()["status"] == "alive"
    response = cold.get("/health/ready")
    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"

    with TestClient(app) as client:
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"


def test_detailed_health():
    with make_client(FakeEngine()) as client:
        body = client.get("/health/detailed").json()

    assert body["status"] == "healthy"
    assert body["upstream"]["provider"] == "openai"
    assert body["upstream"]["configured"] is True
    assert body["sessions"]["active_conversations"] == 0
    assert body["server"]["uptime_s"] >= 0
    assert body["delivery"]["idle_timeout_ms"] == 30


# ---------------------------------------------------------------------
# Session directory
# ---------------------------------------------------------------------

def start_session(ws) -> str:
    ws.send_text(json.dumps({"event": "start-conversation", "data": {}}))
    return ws.receive_json()["data"]["sessionId"]


def test_session_directory_and_export():
    engine = FakeEngine()
    with make_client(engine) as client:
        with client.websocket_connect("/ws") as ws:
            cid = start_session(ws)
            ws.send_text(json.dumps({"event": "text-input", "data": {"text": "hi"}}))
            ws.send_text(json.dumps({"event": "get-session-info"}))
            assert ws.receive_json()["event"] == "session-info"

            listing = client.get("/sessions").json()
            assert listing["count"] == 1
            assert listing["sessions"][0]["sessionId"] == cid

            session = client.get(f"/sessions/{cid}").json()["session"]
            assert session["turnCount"] == 1
            assert session["queuedResponses"] == 0

            exported = client.get(f"/sessions/{cid}/export").json()["data"]
            assert exported["sessionId"] == cid
            assert exported["messageCount"] == 1
            assert [(h["role"], h["content"]) for h in exported["conversationHistory"]] == [
                ("user", "hi"),
            ]
            assert "messagesPerMinute" in exported["statistics"]

            stats = client.get("/sessions/stats/summary").json()["statistics"]
            assert stats["active_conversations"] == 1
            assert stats["total_turns"] == 1


def test_unknown_session_is_404():
    with make_client(FakeEngine()) as client:
        assert client.get("/sessions/conv_missing").status_code == 404
        assert client.get("/sessions/conv_missing/export").status_code == 404
        assert client.delete("/sessions/conv_missing").status_code == 404


def test_delete_session_ends_conversation():
    engine = FakeEngine()
    with make_client(engine) as client:
        with client.websocket_connect("/ws") as ws:
            cid = start_session(ws)

            response = client.delete(f"/sessions/{cid}")
            assert response.status_code == 200
            assert response.json() == {"sessionId": cid, "ended": True}

            assert engine.closed == [cid]
            assert client.get(f"/sessions/{cid}").status_code == 404
            assert client.get("/sessions").json()["count"] == 0

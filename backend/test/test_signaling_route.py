"""시그널링 WebSocket / REST 엔드포인트 테스트 (FastAPI TestClient)."""
import pytest
from fastapi import FastAPI, WebSocketDisconnect
from fastapi.testclient import TestClient

import routes.deps
import routes.signaling
from meshcall.signaling import RelayConfig, SignalingRelay
from routes import health_router, signaling_router, init_relay


@pytest.fixture
def relay():
    relay = SignalingRelay()
    init_relay(relay)
    yield relay
    init_relay(None)


@pytest.fixture
def client(relay):
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(signaling_router)
    with TestClient(app) as client:
        yield client


def require_password(monkeypatch, password: str = "secret"):
    config = RelayConfig(ACCESS_PASSWORD=password)
    monkeypatch.setattr(routes.signaling, "relay_config", config)
    monkeypatch.setattr(routes.deps, "relay_config", config)


def open_session(ws) -> str:
    first = ws.receive_json()
    assert first["type"] == "session-id"
    return first["data"]["sessionId"]


def join(ws, room_id: str) -> list:
    ws.send_json({"type": "join-room", "data": {"roomId": room_id}})
    reply = ws.receive_json()
    assert reply["type"] == "all-users"
    return reply["data"]["sessionIds"]


def test_session_id_on_connect(client):
    with client.websocket_connect("/ws") as ws:
        session_id = open_session(ws)

    assert len(session_id) == 36


def test_two_sessions_join_and_relay_offer(client):
    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        a = open_session(ws_a)
        b = open_session(ws_b)

        assert join(ws_a, "R1") == []
        assert join(ws_b, "R1") == [a]

        ws_b.send_json({"type": "offer", "data": {"target": a, "sdp": {"type": "offer", "sdp": "v=0"}}})
        offer = ws_a.receive_json()

    assert offer == {"type": "offer", "data": {"callerId": b, "sdp": {"type": "offer", "sdp": "v=0"}}}


def test_disconnect_broadcasts_peer_left(client):
    with client.websocket_connect("/ws") as ws_a:
        open_session(ws_a)
        join(ws_a, "R1")

        with client.websocket_connect("/ws") as ws_b:
            b = open_session(ws_b)
            join(ws_b, "R1")

        notice = ws_a.receive_json()

    assert notice == {"type": "peer-left", "data": {"sessionId": b}}


def test_malformed_json_is_skipped(client):
    with client.websocket_connect("/ws") as ws:
        open_session(ws)
        ws.send_text("{not json")

        assert join(ws, "R1") == []


def test_invalid_envelope_gets_error(client):
    with client.websocket_connect("/ws") as ws:
        open_session(ws)
        ws.send_json({"type": "join-room", "data": {}})

        reply = ws.receive_json()

    assert reply["type"] == "error"


def test_disallowed_origin_is_rejected(client, monkeypatch):
    monkeypatch.setattr(routes.signaling, "relay_config", RelayConfig(ALLOWED_ORIGINS=("http://good.example",)))

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws", headers={"origin": "http://evil.example"}):
            pass
    assert exc.value.code == 4003

    with client.websocket_connect("/ws", headers={"origin": "http://good.example"}) as ws:
        open_session(ws)


def test_token_required_when_password_set(client, monkeypatch):
    require_password(monkeypatch)

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=wrong"):
            pass
    assert exc.value.code == 4001

    with client.websocket_connect("/ws?token=secret") as ws:
        open_session(ws)


def test_not_initialized_relay_closes(client, relay):
    init_relay(None)

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1011


def test_health_counts(client):
    with client.websocket_connect("/ws") as ws:
        open_session(ws)
        join(ws, "R1")

        body = client.get("/api/health").json()

    assert body == {"status": "ok", "sessions": 1, "rooms": 1}


def test_room_list_requires_bearer_when_password_set(client, monkeypatch):
    require_password(monkeypatch)

    assert client.get("/api/rooms").status_code == 401
    assert client.get("/api/rooms", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.get("/api/rooms", headers={"Authorization": "Bearer secret"})
    assert response.status_code == 200
    assert response.json() == {"rooms": []}


@pytest.mark.parametrize("header", ["secret", "Basic secret", "Bearer"])
def test_room_list_rejects_malformed_authorization(client, monkeypatch, header):
    require_password(monkeypatch)

    response = client.get("/api/rooms", headers={"Authorization": header})

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_room_list(client):
    with client.websocket_connect("/ws") as ws:
        session_id = open_session(ws)
        join(ws, "R1")

        rooms = client.get("/api/rooms").json()["rooms"]

    assert rooms == [{"room_id": "R1", "member_count": 1, "members": [session_id]}]

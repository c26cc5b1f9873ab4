import pytest
from fastapi.testclient import TestClient

from app import app


@pytest.fixture
def client():
    # 컨텍스트 매니저로 열어야 모든 WebSocket 세션이 같은 이벤트 루프를 공유함
    with TestClient(app) as client:
        yield client


def _register(ws, name):
    registered = ws.receive_json()
    assert registered["type"] == "registered"
    socket_id = registered["data"]["socketId"]
    ws.send_json({"type": "register", "data": {"userId": name, "socketId": socket_id}})
    return socket_id


def test_root_and_health(client):
    assert client.get("/").json() == {"status": "ok", "service": "Peercall Signaling Relay"}
    assert client.get("/api/health").json() == {"status": "ok", "users": 0, "connections": 0}


def test_ice_servers(client):
    servers = client.get("/api/ice-servers").json()

    assert {"urls": "stun:stun.l.google.com:19302"} in servers
    assert all(server["urls"].startswith("stun:") for server in servers)


def test_presence_lifecycle(client):
    with client.websocket_connect("/ws") as ws_a:
        alice = _register(ws_a, "alice")
        assert ws_a.receive_json() == {
            "type": "active-users",
            "data": [{"userId": "alice", "socketId": alice}],
        }

        with client.websocket_connect("/ws") as ws_b:
            bob = _register(ws_b, "bob")
            users = [
                {"userId": "alice", "socketId": alice},
                {"userId": "bob", "socketId": bob},
            ]
            assert ws_a.receive_json() == {"type": "active-users", "data": users}
            assert ws_b.receive_json() == {"type": "active-users", "data": users}

            health = client.get("/api/health").json()
            assert health["users"] == 2 and health["connections"] == 2

        assert ws_a.receive_json() == {"type": "user-disconnected", "data": {"socketId": bob}}
        assert ws_a.receive_json() == {
            "type": "active-users",
            "data": [{"userId": "alice", "socketId": alice}],
        }


def test_negotiation_messages_routed_with_sender(client):
    offer = {"sdp": "v=0\r\n", "type": "offer"}
    answer = {"sdp": "v=0\r\n", "type": "answer"}
    candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        alice = ws_a.receive_json()["data"]["socketId"]
        bob = ws_b.receive_json()["data"]["socketId"]

        ws_a.send_json({"type": "call-user", "data": {"to": bob, "offer": offer}})
        assert ws_b.receive_json() == {"type": "call-received", "data": {"from": alice, "offer": offer}}

        ws_b.send_json({"type": "call-accepted", "data": {"to": alice, "answer": answer}})
        assert ws_a.receive_json() == {"type": "call-accepted", "data": {"from": bob, "answer": answer}}

        ws_b.send_json({"type": "ice-candidate", "data": {"to": alice, "candidate": candidate}})
        assert ws_a.receive_json() == {
            "type": "ice-candidate",
            "data": {"from": bob, "candidate": candidate},
        }

        ws_a.send_json({"type": "end-call", "data": {"to": bob}})
        assert ws_b.receive_json() == {"type": "end-call", "data": {"from": alice}}

        ws_b.send_json({"type": "call-failed", "data": {"to": alice, "error": "boom"}})
        assert ws_a.receive_json() == {"type": "call-failed", "data": {"from": bob, "error": "boom"}}

        ws_b.send_json({"type": "renegotiation-needed", "data": {"to": alice}})
        assert ws_a.receive_json() == {"type": "renegotiation-needed", "data": {"from": bob}}


def test_call_to_missing_user_fails(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        ws.send_text("not json")
        ws.send_json({"type": "call-user", "data": {"offer": {"sdp": "v=0", "type": "offer"}}})
        ws.send_json({"type": "call-user", "data": {"to": "ghost", "offer": {"sdp": "v=0", "type": "offer"}}})

        assert ws.receive_json() == {
            "type": "call-failed",
            "data": {"from": "ghost", "error": "User not available"},
        }


def test_invalid_register_ignored(client):
    with client.websocket_connect("/ws") as ws:
        socket_id = ws.receive_json()["data"]["socketId"]

        ws.send_json({"type": "register", "data": {"socketId": socket_id}})
        ws.send_json({"type": "register", "data": {"userId": "carol", "socketId": socket_id}})

        assert ws.receive_json() == {
            "type": "active-users",
            "data": [{"userId": "carol", "socketId": socket_id}],
        }

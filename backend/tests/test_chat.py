"""End-to-end tests for the relay WebSocket endpoint.

The handshake authenticates with a bearer JWT; after ``connected`` the
client joins its rooms and exchanges tagged JSON frames.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.config import set_config
from app.main import app
from app.store.service import RelayStore
from conftest import USERS, make_token


def receive_until(ws, event_type):
    """Read frames until one of the given type arrives."""
    while True:
        event = ws.receive_json()
        if event["type"] == event_type:
            return event


def open_session(client, identity_id):
    ws = client.websocket_connect(f"/ws?token={make_token(identity_id)}")
    return ws


@pytest.fixture
def relay(test_config):
    """Run the app against an in-memory store seeded with test users."""
    RelayStore.reset_instance()
    set_config(test_config)
    with TestClient(app) as client:
        store = RelayStore.get_instance()
        for identity_id, name in USERS.items():
            store.create_identity(identity_id, name)
        yield client, store
    set_config(None)


def test_health(api_client):
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestHandshake:
    """Tests for handshake authentication."""

    def test_missing_token_rejected(self, relay):
        client, _ = relay
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 1008

    def test_wrong_secret_rejected(self, relay):
        client, _ = relay
        token = make_token("alice", secret="someone-else")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws?token={token}"):
                pass
        assert exc_info.value.code == 1008

    def test_expired_token_rejected(self, relay):
        client, _ = relay
        token = make_token("alice", expires_in=-60)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws?token={token}"):
                pass
        assert exc_info.value.code == 1008

    def test_unknown_identity_rejected(self, relay):
        client, store = relay
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws?token={make_token('mallory')}"):
                pass
        assert exc_info.value.code == 1008
        assert store.identity_exists("mallory") is False

    def test_bearer_header_accepted(self, relay):
        client, _ = relay
        headers = {"Authorization": f"Bearer {make_token('alice')}"}
        with client.websocket_connect("/ws", headers=headers) as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"
            assert connected["user"]["id"] == "alice"


class TestRelayRoundTrip:
    """Tests for the full message and receipt flow over real sockets."""

    def test_message_and_read_receipt(self, relay):
        client, store = relay
        conversation = store.create_conversation(["alice", "bob"])

        with open_session(client, "alice") as ws_alice, open_session(client, "bob") as ws_bob:
            connected = receive_until(ws_alice, "connected")
            assert connected["conversationIds"] == [conversation.id]
            receive_until(ws_bob, "connected")

            ws_alice.send_json({"type": "joinRooms", "conversationIds": []})
            receive_until(ws_alice, "ack")
            ws_bob.send_json({"type": "joinRooms", "conversationIds": [], "requestId": "j1"})
            ack = receive_until(ws_bob, "ack")
            assert ack["requestId"] == "j1"
            assert ack["conversationIds"] == [conversation.id]

            ws_alice.send_json({
                "type": "sendMessage",
                "conversationId": conversation.id,
                "text": "hi",
                "requestId": "m1",
            })

            received = receive_until(ws_bob, "message")["message"]
            assert received["text"] == "hi"
            assert received["senderId"] == "alice"
            update = receive_until(ws_bob, "conversationUpdated")
            assert update["unread"] == {"alice": 0, "bob": 1}

            ack = receive_until(ws_alice, "ack")
            assert ack["requestId"] == "m1"
            assert ack["messageId"] == received["id"]

            ws_bob.send_json({
                "type": "markRead",
                "conversationId": conversation.id,
                "messageId": received["id"],
            })
            read = receive_until(ws_alice, "messageRead")
            assert read["messageId"] == received["id"]
            assert read["userId"] == "bob"

        assert store.get_unread(conversation.id, "bob") == 0
        assert [r.userId for r in store.get_message(received["id"]).readBy] == ["bob"]

    def test_invalid_json_keeps_connection_open(self, relay):
        client, store = relay
        conversation = store.create_conversation(["alice", "bob"])

        with open_session(client, "alice") as ws:
            receive_until(ws, "connected")
            ws.send_text("{not json")
            error = receive_until(ws, "error")
            assert error["code"] == "invalid_request"

            ws.send_json({"type": "joinRoom", "conversationId": conversation.id, "requestId": "ok"})
            assert receive_until(ws, "ack")["requestId"] == "ok"

    def test_binary_frame_keeps_connection_open(self, relay):
        client, store = relay
        conversation = store.create_conversation(["alice", "bob"])

        with open_session(client, "alice") as ws:
            receive_until(ws, "connected")
            ws.send_bytes(b'{"type": "joinRoom"}')
            error = receive_until(ws, "error")
            assert error["code"] == "invalid_request"

            ws.send_json({"type": "joinRoom", "conversationId": conversation.id, "requestId": "ok"})
            assert receive_until(ws, "ack")["requestId"] == "ok"

    def test_presence_events(self, relay):
        client, store = relay

        with open_session(client, "alice") as ws_alice:
            receive_until(ws_alice, "connected")
            with open_session(client, "bob") as ws_bob:
                receive_until(ws_bob, "connected")
                online = receive_until(ws_alice, "userOnline")
                assert online["userId"] == "bob"

            offline = receive_until(ws_alice, "userOffline")
            assert offline["userId"] == "bob"
            assert offline["lastSeen"] is not None

        assert store.get_identity("bob").isOnline is False

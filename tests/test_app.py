"""
End-to-end tests for the FastAPI app.

Tests cover:
- Health and metrics routes
- The /ws relay endpoint (authenticate, send, store-and-forward, signaling)
- Malformed frames
- Startup restore from the remote backup store
"""

import functools

import pytest
from fastapi.testclient import TestClient

from chatrelay import main as main_module
from chatrelay.backup import RemoteBackupStore
from chatrelay.config import settings
from chatrelay.main import app
from chatrelay.storage import SessionLocal, count_messages

from conftest import FakeSupabase, backup_row


@pytest.fixture(scope="function")
def client():
    """Create test client; the lifespan creates tables and wires the relay."""
    with TestClient(app) as test_client:
        yield test_client


def receive(ws, expected_event):
    frame = ws.receive_json()
    assert frame["event"] == expected_event, frame
    return frame["data"]


def login(ws, user_id):
    ws.send_json({"event": "authenticate", "data": {"userId": user_id}})
    receive(ws, "authenticated")
    return receive(ws, "all_messages")


class TestHealth:
    """Test health and metrics routes."""

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "x-request-id" in response.headers

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_exposed(self, client):
        client.get("/health/live")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "relay_events_total" in response.text

    def test_backup_disabled_without_credentials(self, client):
        assert client.app.state.synchronizer is None


class TestRelaySocket:
    """Test the /ws relay endpoint."""

    def test_authenticate_returns_ack_and_empty_history(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": "alice"})

            ack = receive(ws, "authenticated")
            assert ack["userId"] == "alice"
            assert ack["socketId"]
            assert receive(ws, "all_messages") == []

    def test_offline_receiver_sees_message_on_next_login(self, client):
        with client.websocket_connect("/ws") as ws_a:
            login(ws_a, "a")
            ws_a.send_json({"event": "send_message", "data": {
                "senderId": "a", "receiverId": "b", "content": "hi", "clientId": "tmp-1",
            }})

            ack = receive(ws_a, "message_sent")
            assert ack["success"] is True
            assert ack["clientId"] == "tmp-1"
            snapshot = receive(ws_a, "all_messages")
            assert snapshot[0]["id"] == ack["messageId"]

        with client.websocket_connect("/ws") as ws_b:
            history = login(ws_b, "b")
            assert [m["content"] for m in history] == ["hi"]

    def test_online_receiver_gets_new_message(self, client):
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            login(ws_a, "a")
            login(ws_b, "b")

            ws_a.send_json({"event": "send_message", "data": {
                "senderId": "a", "receiverId": "b", "content": "hello",
            }})
            receive(ws_a, "message_sent")

            message = receive(ws_b, "new_message")
            assert message["content"] == "hello"
            assert message["senderId"] == "a"

    def test_missing_content_reports_error_and_stores_nothing(self, client):
        with client.websocket_connect("/ws") as ws:
            login(ws, "a")
            ws.send_json({"event": "send_message", "data": {"senderId": "a", "receiverId": "b"}})

            assert receive(ws, "message_error") == {"error": "Invalid message data"}

        with SessionLocal() as db:
            assert count_messages(db) == 0

    def test_typing_indicator_routed(self, client):
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            login(ws_a, "a")
            login(ws_b, "b")

            ws_a.send_json({"event": "typing", "data": {"receiverId": "b"}})
            assert receive(ws_b, "user_typing") == "a"

    def test_signaling_relayed_verbatim(self, client):
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            login(ws_a, "a")
            login(ws_b, "b")

            offer = {"to": "b", "from": "a", "offer": {"type": "offer", "sdp": "v=0"}, "isVideo": True}
            ws_a.send_json({"event": "video-offer", "data": offer})

            assert receive(ws_b, "video-offer") == offer

    def test_malformed_frame_answered_with_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert receive(ws, "error") == {"error": "Malformed frame"}

            ws.send_json({"data": "missing event"})
            assert receive(ws, "error") == {"error": "Malformed frame"}

            # Connection is still usable
            assert login(ws, "alice") == []


    def test_bad_indicator_keeps_session_relaying(self, client):
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            login(ws_a, "a")
            login(ws_b, "b")

            ws_a.send_json({"event": "typing", "data": {"receiverId": 42}})
            ws_a.send_json({"event": "webrtc-offer", "data": {"to": ["b"], "from": "a"}})
            ws_a.send_json({"event": "send_message", "data": {
                "senderId": "a", "receiverId": "b", "content": "still here",
            }})

            receive(ws_a, "message_sent")
            assert receive(ws_b, "new_message")["content"] == "still here"

    def test_handler_failure_answered_with_error(self, client, monkeypatch):
        async def broken(connection_id, event, data):
            raise RuntimeError("boom")

        monkeypatch.setitem(client.app.state.relay._handlers, "typing", broken)

        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            login(ws_a, "a")
            login(ws_b, "b")

            ws_a.send_json({"event": "typing", "data": {"receiverId": "b"}})
            assert receive(ws_a, "error") == {"error": "Internal error"}

            ws_a.send_json({"event": "send_message", "data": {
                "senderId": "a", "receiverId": "b", "content": "after failure",
            }})
            receive(ws_a, "message_sent")
            assert receive(ws_b, "new_message")["content"] == "after failure"

class TestStartupRestore:
    """Test the lifespan restore when backup is configured."""

    def test_restore_runs_before_connections(self, monkeypatch):
        fake = FakeSupabase([
            backup_row(1, "a", "b", "restored hi", "2025-01-15T10:01:00.000000Z"),
        ])
        monkeypatch.setattr(settings, "SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setattr(settings, "SUPABASE_KEY", "test-key")
        monkeypatch.setattr(settings, "BACKUP_INTERVAL_MS", 3_600_000)
        monkeypatch.setattr(main_module, "RemoteBackupStore", functools.partial(RemoteBackupStore, transport=fake))

        with TestClient(app) as client:
            assert client.app.state.synchronizer is not None
            with client.websocket_connect("/ws") as ws:
                history = login(ws, "b")

        assert [m["content"] for m in history] == ["restored hi"]
        assert [m["id"] for m in history] == [1]

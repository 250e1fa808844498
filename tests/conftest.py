"""
Pytest configuration and shared fixtures.

Test settings are pinned here, before any chatrelay import, so the
module-level engine and settings pick them up. Backup is disabled unless a
test wires a fake remote store explicitly.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatrelay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_KEY"] = ""

import httpx
import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chatrelay.config import get_settings
get_settings.cache_clear()

import chatrelay.models  # noqa: E402,F401  registers tables on Base.metadata
from chatrelay.storage import Base, engine  # noqa: E402


@pytest.fixture(autouse=True)
def tables():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


class RecordingTransport:
    """Stands in for ConnectionManager; records every outbound event."""

    def __init__(self):
        self.sent = []

    async def send(self, connection_id, event, data):
        self.sent.append((connection_id, event, data))
        return True

    def events_for(self, connection_id):
        return [(event, data) for conn, event, data in self.sent if conn == connection_id]

    def names_for(self, connection_id):
        return [event for event, _ in self.events_for(connection_id)]


@pytest.fixture
def transport():
    return RecordingTransport()


class FakeSupabase(httpx.AsyncBaseTransport):
    """
    In-memory PostgREST table with upsert-ignore-duplicates semantics.

    Set `unreachable` to raise connection errors, `fail_status` to answer
    every request with that status, or `fail_after` to start failing
    POSTs after that many successful ones. `junk_rows` are served verbatim
    ahead of the first page.
    """

    def __init__(self, rows=None):
        self.rows = {row["message_id"]: row for row in (rows or [])}
        self.unreachable = False
        self.fail_status = None
        self.fail_after = None
        self.posts = 0
        self.requests = []
        self.junk_rows = []

    async def handle_async_request(self, request):
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"message": "unavailable"}, request=request)

        if request.method == "POST":
            if self.fail_after is not None and self.posts >= self.fail_after:
                return httpx.Response(503, json={"message": "unavailable"}, request=request)
            self.posts += 1
            for row in json.loads(await request.aread()):
                self.rows.setdefault(row["message_id"], row)
            return httpx.Response(201, request=request)

        if request.method == "GET":
            ordered = self.junk_rows + sorted(self.rows.values(), key=lambda r: (r["timestamp"], r["message_id"]))
            offset = int(request.url.params.get("offset", 0))
            limit = int(request.url.params.get("limit", len(ordered)))
            return httpx.Response(200, json=ordered[offset:offset + limit], request=request)

        return httpx.Response(405, json={"message": "method not allowed"}, request=request)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


def backup_row(message_id, sender, receiver, content, timestamp, **extra):
    """Build a remote backup row the way the backup table stores it."""
    row = {
        "message_id": str(message_id),
        "sender_id": sender,
        "receiver_id": receiver,
        "content": content,
        "timestamp": timestamp,
        "client_id": None,
        "is_call_record": False,
        "call_type": None,
        "call_duration": None,
        "sqlite_id": str(message_id),
    }
    row.update(extra)
    return row

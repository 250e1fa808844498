"""
Tests for the durable store.

Tests cover:
- Id and timestamp assignment on insert
- Store errors on constraint violations
- History and since-watermark queries
- Insert-or-ignore used by restore
- Watermark persistence
"""

from datetime import datetime, timezone

import pytest

from chatrelay.errors import StoreError
from chatrelay.storage import (
    SessionLocal,
    check_db_health,
    count_messages,
    get_messages_for_user,
    get_messages_since,
    insert_message,
    insert_message_if_absent,
    load_watermark,
    save_watermark,
)
from chatrelay.utils import EPOCH_TIMESTAMP, next_timestamp, normalize_timestamp


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


def restore_fields(message_id, sender, receiver, content, timestamp):
    return {
        "id": message_id,
        "sender_id": sender,
        "receiver_id": receiver,
        "content": content,
        "timestamp": timestamp,
        "client_id": None,
        "is_call_record": False,
        "call_type": None,
        "call_duration": None,
        "message_type": "text",
        "audio_url": None,
    }


class TestInsertMessage:
    """Test message insertion."""

    def test_insert_assigns_id_and_timestamp(self, db):
        message = insert_message(db, "a", "b", "hi")

        assert message.id is not None
        assert message.timestamp.endswith("Z")
        assert message.is_call_record is False
        assert message.message_type == "text"
        assert count_messages(db) == 1

    def test_ids_and_timestamps_strictly_increase(self, db):
        messages = [insert_message(db, "a", "b", f"m{i}") for i in range(10)]

        ids = [m.id for m in messages]
        timestamps = [m.timestamp for m in messages]
        assert ids == sorted(set(ids))
        assert timestamps == sorted(set(timestamps))

    def test_insert_call_record_fields(self, db):
        message = insert_message(
            db, "a", "b", "Video call", client_id="c-1",
            is_call_record=True, call_type="video", call_duration=42,
        )

        assert message.client_id == "c-1"
        assert message.is_call_record is True
        assert message.call_type == "video"
        assert message.call_duration == 42

    def test_insert_voice_message(self, db):
        message = insert_message(
            db, "a", "b", "[voice]", message_type="voice", audio_url="blob://audio/1",
        )

        assert message.message_type == "voice"
        assert message.audio_url == "blob://audio/1"

    def test_constraint_violation_raises_store_error(self, db):
        with pytest.raises(StoreError):
            insert_message(db, "a", "b", None)

        assert count_messages(db) == 0

    def test_new_ids_continue_after_restored_ids(self, db):
        insert_message_if_absent(db, restore_fields(100, "a", "b", "old", "2025-01-15T10:00:00.000000Z"))

        message = insert_message(db, "a", "b", "new")
        assert message.id > 100

    def test_timestamp_after_future_restored_row(self, db):
        """A restored row stamped in the future still precedes new rows."""
        future = "2999-01-01T00:00:00.000000Z"
        insert_message_if_absent(db, restore_fields(1, "a", "b", "from the future", future))

        message = insert_message(db, "a", "b", "now")
        assert message.timestamp > future


class TestQueries:
    """Test history and watermark queries."""

    def test_history_for_user_includes_sent_and_received(self, db):
        insert_message(db, "a", "b", "a to b")
        insert_message(db, "b", "a", "b to a")
        insert_message(db, "c", "d", "unrelated")

        history = get_messages_for_user(db, "a")
        assert [m.content for m in history] == ["a to b", "b to a"]

    def test_history_empty_for_unknown_user(self, db):
        assert get_messages_for_user(db, "nobody") == []

    def test_since_is_strictly_greater(self, db):
        first = insert_message(db, "a", "b", "one")
        second = insert_message(db, "a", "b", "two")

        rows = get_messages_since(db, first.timestamp)
        assert [m.id for m in rows] == [second.id]

    def test_since_epoch_returns_all_ascending(self, db):
        for i in range(3):
            insert_message(db, "a", "b", f"m{i}")

        rows = get_messages_since(db, EPOCH_TIMESTAMP)
        assert [m.content for m in rows] == ["m0", "m1", "m2"]

    def test_since_respects_limit(self, db):
        for i in range(5):
            insert_message(db, "a", "b", f"m{i}")

        assert len(get_messages_since(db, EPOCH_TIMESTAMP, limit=2)) == 2


class TestInsertIfAbsent:
    """Test insert-or-ignore semantics."""

    def test_inserts_missing_row(self, db):
        fields = restore_fields(7, "a", "b", "restored", "2025-01-15T10:00:00.000000Z")

        assert insert_message_if_absent(db, fields) is True
        assert get_messages_for_user(db, "a")[0].id == 7

    def test_existing_id_is_ignored(self, db):
        fields = restore_fields(7, "a", "b", "restored", "2025-01-15T10:00:00.000000Z")
        insert_message_if_absent(db, fields)

        changed = dict(fields, content="changed")
        assert insert_message_if_absent(db, changed) is False

        rows = get_messages_for_user(db, "a")
        assert len(rows) == 1
        assert rows[0].content == "restored"

    def test_missing_required_column_raises_store_error(self, db):
        fields = restore_fields(7, "a", "b", None, "2025-01-15T10:00:00.000000Z")

        with pytest.raises(StoreError):
            insert_message_if_absent(db, fields)


class TestWatermark:
    """Test persisted backup watermark."""

    def test_defaults_to_epoch(self, db):
        assert load_watermark(db) == EPOCH_TIMESTAMP

    def test_save_and_reload(self, db):
        save_watermark(db, "2025-01-15T10:00:00.000000Z")
        save_watermark(db, "2025-01-15T10:05:00.000000Z")

        with SessionLocal() as other:
            assert load_watermark(other) == "2025-01-15T10:05:00.000000Z"


class TestTimestampHelpers:
    """Test timestamp assignment helpers."""

    def test_next_timestamp_uses_clock_when_ahead(self):
        now = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        assert next_timestamp("2025-01-15T09:00:00.000000Z", now=now) == "2025-01-15T10:00:00.000000Z"

    def test_next_timestamp_bumps_when_clock_behind(self):
        now = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        assert next_timestamp("2025-01-15T10:00:00.000000Z", now=now) == "2025-01-15T10:00:00.000001Z"

    def test_next_timestamp_without_history(self):
        now = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        assert next_timestamp(None, now=now) == "2025-01-15T10:00:00.000000Z"

    def test_normalize_timestamp_accepts_offsets(self):
        assert normalize_timestamp("2025-01-15T12:00:00+02:00") == "2025-01-15T10:00:00.000000Z"
        assert normalize_timestamp("2025-01-15T10:00:00.5Z") == "2025-01-15T10:00:00.500000Z"


class TestHealth:

    def test_health_check_passes_with_schema(self):
        assert check_db_health() is True

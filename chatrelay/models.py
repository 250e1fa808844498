"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic wire schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text

from chatrelay.storage import Base


class Message(Base):
    """
    SQLAlchemy model for the canonical chat message log.

    Table: messages
    Primary Key: id (AUTOINCREMENT, so ids are never reused, including
    after rows are restored from backup with explicit ids)

    Column names keep the camelCase layout the clients and the
    remote backup mapping expect.
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column("senderId", String, nullable=False, index=True)
    receiver_id = Column("receiverId", String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    client_id = Column("clientId", String, nullable=True)
    is_call_record = Column("isCallRecord", Boolean, nullable=False, default=False)
    call_type = Column("callType", String, nullable=True)
    call_duration = Column("callDuration", Integer, nullable=True)
    message_type = Column("messageType", String, nullable=False, default="text")
    audio_url = Column("audioUrl", String, nullable=True)


class BackupState(Base):
    """
    Key/value table for synchronizer state that must survive restarts.

    Currently holds a single row, the backup watermark.
    """
    __tablename__ = "backup_state"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)

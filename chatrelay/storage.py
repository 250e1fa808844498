import logging
from typing import List, Optional

from sqlalchemy import create_engine, func, or_, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatrelay.config import settings
from chatrelay.errors import StoreError
from chatrelay.utils import EPOCH_TIMESTAMP, next_timestamp

logger = logging.getLogger(__name__)

WATERMARK_KEY = "backup_watermark"

# Create SQLAlchemy engine with SQLite-specific settings
# check_same_thread=False is required because uvicorn may open the
# connection on a different thread than the one handling the socket
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatrelay.models import BackupState, Message  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
            )).scalar()
            if result == 0:
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def insert_message(
    db: Session,
    sender_id: str,
    receiver_id: str,
    content: str,
    client_id: Optional[str] = None,
    is_call_record: bool = False,
    call_type: Optional[str] = None,
    call_duration: Optional[int] = None,
    message_type: str = "text",
    audio_url: Optional[str] = None,
):
    """
    Persist a new message, assigning its id and server timestamp.

    The timestamp is strictly greater than every stored timestamp, so
    timestamp order always matches id order.

    Args:
        db: Database session
        sender_id: Sending user
        receiver_id: Receiving user
        content: Message text or payload reference
        client_id: Optional client correlation id, echoed in the ack
        is_call_record: Whether this row records a call
        call_type: Call type for call records (audio/video)
        call_duration: Call duration in seconds for call records
        message_type: "text" or "voice"
        audio_url: Voice payload reference

    Returns:
        The stored Message with id and timestamp populated

    Raises:
        StoreError: On constraint violation or I/O failure
    """
    from chatrelay.models import Message

    logger.info(f"Inserting message: from={sender_id}, to={receiver_id}")
    logger.debug(f"Message details: client_id={client_id}, type={message_type}, call={is_call_record}")

    try:
        last = db.query(func.max(Message.timestamp)).scalar()
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            timestamp=next_timestamp(last),
            client_id=client_id,
            is_call_record=is_call_record,
            call_type=call_type,
            call_duration=call_duration,
            message_type=message_type,
            audio_url=audio_url,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to insert message from {sender_id} to {receiver_id}: {e}")
        raise StoreError(str(e)) from e

    logger.info(f"Message stored: id={message.id}, ts={message.timestamp}")
    return message


def insert_message_if_absent(db: Session, fields: dict) -> bool:
    """
    Insert a message with an explicit id unless that id already exists.

    Used by restore; rows already present locally are left untouched.

    Args:
        db: Database session
        fields: Column values keyed by Message attribute name, including id

    Returns:
        True if a row was inserted, False if the id already existed

    Raises:
        StoreError: On any failure other than the id conflict
    """
    from chatrelay.models import Message

    # Map attribute names to the underlying column names
    values = {Message.__mapper__.attrs[name].columns[0].name: value for name, value in fields.items()}
    statement = sqlite_insert(Message.__table__).values(**values).on_conflict_do_nothing(
        index_elements=["id"]
    )
    try:
        result = db.execute(statement)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to restore message {fields.get('id')}: {e}")
        raise StoreError(str(e)) from e

    inserted = result.rowcount == 1
    logger.debug(f"Restore insert id={fields.get('id')}: {'inserted' if inserted else 'already present'}")
    return inserted


def get_messages_for_user(db: Session, user_id: str) -> List:
    """
    Retrieve the full history for a user (sent or received).

    Ordering: timestamp ASC, id ASC.

    Raises:
        StoreError: If the query fails
    """
    from chatrelay.models import Message

    logger.debug(f"Querying history for user {user_id}")
    try:
        messages = (
            db.query(Message)
            .filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
            .order_by(Message.timestamp.asc(), Message.id.asc())
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to load history for {user_id}: {e}")
        raise StoreError(str(e)) from e

    logger.info(f"Retrieved {len(messages)} messages for user {user_id}")
    return messages


def get_messages_since(db: Session, since: str, limit: Optional[int] = None) -> List:
    """
    Retrieve messages with timestamp strictly greater than `since`.

    Args:
        db: Database session
        since: ISO-8601 UTC lower bound (exclusive)
        limit: Optional cap on the number of rows

    Returns:
        Messages ordered by timestamp ASC, id ASC

    Raises:
        StoreError: If the query fails
    """
    from chatrelay.models import Message

    try:
        query = (
            db.query(Message)
            .filter(Message.timestamp > since)
            .order_by(Message.timestamp.asc(), Message.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        messages = query.all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to query messages since {since}: {e}")
        raise StoreError(str(e)) from e

    logger.debug(f"Found {len(messages)} messages since {since}")
    return messages


def count_messages(db: Session) -> int:
    """Return the total number of stored messages."""
    from chatrelay.models import Message

    return db.query(func.count(Message.id)).scalar() or 0


# =============================================================================
# Backup State Functions
# =============================================================================

def load_watermark(db: Session) -> str:
    """
    Load the persisted backup watermark.

    Returns:
        The stored watermark, or the epoch origin if none was saved
    """
    from chatrelay.models import BackupState

    state = db.get(BackupState, WATERMARK_KEY)
    if state is None:
        logger.info("No persisted backup watermark, starting from epoch")
        return EPOCH_TIMESTAMP
    logger.info(f"Loaded backup watermark: {state.value}")
    return state.value


def save_watermark(db: Session, watermark: str) -> None:
    """
    Persist the backup watermark.

    Raises:
        StoreError: If the write fails
    """
    from chatrelay.models import BackupState

    try:
        state = db.get(BackupState, WATERMARK_KEY)
        if state is None:
            db.add(BackupState(key=WATERMARK_KEY, value=watermark))
        else:
            state.value = watermark
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist backup watermark {watermark}: {e}")
        raise StoreError(str(e)) from e
    logger.debug(f"Persisted backup watermark: {watermark}")

"""
Pydantic schemas for the relay wire protocol.

This module contains:
- The inbound frame envelope and per-event payload models
- Outbound event payloads (acks, errors, message snapshots)
- The remote backup record projection of a stored message

Field names are part of the client contract, so models use the clients'
camelCase names as aliases and snake_case attributes internally.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.utils import normalize_timestamp


# =============================================================================
# Event Names
# =============================================================================

class InboundEvent(str, Enum):
    """Events a connection may send to the relay."""
    AUTHENTICATE = "authenticate"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    RECORDING = "recording"
    STOP_RECORDING = "stop_recording"


class OutboundEvent(str, Enum):
    """Events the relay pushes to connections."""
    AUTHENTICATED = "authenticated"
    ALL_MESSAGES = "all_messages"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_ERROR = "message_error"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    USER_RECORDING = "user_recording"
    USER_STOPPED_RECORDING = "user_stopped_recording"
    ERROR = "error"


# Call-signaling events are relayed verbatim under their own name.
# The video namespace mirrors the audio one so the two call types never mix.
SIGNALING_ACTIONS = ("offer", "answer", "ice-candidate", "end-call", "reject-call")
SIGNALING_EVENTS = frozenset(
    [f"webrtc-{action}" for action in SIGNALING_ACTIONS]
    + [f"video-{action}" for action in SIGNALING_ACTIONS]
)


# =============================================================================
# Inbound Models
# =============================================================================

class InboundFrame(BaseModel):
    """
    Envelope for every frame received on a connection.

    Example: {"event": "typing", "data": {"receiverId": "b"}}
    """
    event: str = Field(..., min_length=1, description="Event name")
    data: Any = Field(None, description="Event payload")


class AuthenticatePayload(BaseModel):
    """Payload of the authenticate event once normalized to an object."""
    user_id: str = Field(..., alias="userId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v):
        """Numeric user ids are accepted and keyed by their string form."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class SendMessageRequest(BaseModel):
    """
    Payload of the send_message event.

    senderId, receiverId and content are checked by the router rather than
    declared required here, so a missing field is reported to the sender as
    a message_error instead of a generic validation failure.
    """
    sender_id: Optional[str] = Field(None, alias="senderId")
    receiver_id: Optional[str] = Field(None, alias="receiverId")
    content: Optional[str] = Field(None, max_length=65536)
    client_id: Optional[str] = Field(None, alias="clientId")
    is_call_record: bool = Field(False, alias="isCallRecord")
    call_type: Optional[str] = Field(None, alias="callType")
    call_duration: Optional[int] = Field(None, alias="callDuration", ge=0)
    message_type: str = Field("text", alias="messageType")
    audio_url: Optional[str] = Field(None, alias="audioUrl")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("client_id", mode="before")
    @classmethod
    def coerce_client_id(cls, v):
        """Clients sometimes send numeric correlation ids."""
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("message_type")
    @classmethod
    def validate_message_type(cls, v: str) -> str:
        if v not in ("text", "voice"):
            raise ValueError("messageType must be 'text' or 'voice'")
        return v

    def missing_fields(self) -> list[str]:
        """Names of required fields that are absent or empty."""
        required = {
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "content": self.content,
        }
        return [name for name, value in required.items() if not value]


class PresenceSignalPayload(BaseModel):
    """Payload of typing/recording indicators."""
    receiver_id: Optional[str] = Field(None, alias="receiverId")
    sender_id: Optional[str] = Field(None, alias="senderId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Outbound Models
# =============================================================================

class MessageResponse(BaseModel):
    """
    A stored message as pushed to clients (new_message, all_messages).
    Built from ORM objects, serialized with camelCase names.
    """
    id: int
    sender_id: str = Field(..., serialization_alias="senderId")
    receiver_id: str = Field(..., serialization_alias="receiverId")
    content: str
    timestamp: str
    client_id: Optional[str] = Field(None, serialization_alias="clientId")
    is_call_record: bool = Field(False, serialization_alias="isCallRecord")
    call_type: Optional[str] = Field(None, serialization_alias="callType")
    call_duration: Optional[int] = Field(None, serialization_alias="callDuration")
    message_type: str = Field("text", serialization_alias="messageType")
    audio_url: Optional[str] = Field(None, serialization_alias="audioUrl")

    model_config = ConfigDict(from_attributes=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class AuthenticatedResponse(BaseModel):
    """Payload of the authenticated event."""
    user_id: str = Field(..., serialization_alias="userId")
    socket_id: str = Field(..., serialization_alias="socketId")
    message: str = "Successfully authenticated"


class MessageSentResponse(BaseModel):
    """Acknowledgment returned to the sender after a message is stored."""
    success: bool = True
    client_id: Optional[str] = Field(None, serialization_alias="clientId")
    message_id: int = Field(..., serialization_alias="messageId")
    timestamp: str


class ErrorResponse(BaseModel):
    """Payload of message_error and error events."""
    error: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Remote Backup Models
# =============================================================================

class BackupRecord(BaseModel):
    """
    Remote backup store projection of a stored message.

    message_id is the string form of the local id and is the unique
    conflict key for upserts; sqlite_id repeats it for traceability.
    """
    message_id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: str
    client_id: Optional[str] = None
    is_call_record: bool = False
    call_type: Optional[str] = None
    call_duration: Optional[int] = None
    sqlite_id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("is_call_record", mode="before")
    @classmethod
    def null_call_flag_is_false(cls, v):
        return False if v is None else v

    @classmethod
    def from_message(cls, message) -> "BackupRecord":
        return cls(
            message_id=str(message.id),
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=message.content,
            timestamp=message.timestamp,
            client_id=message.client_id,
            is_call_record=bool(message.is_call_record),
            call_type=message.call_type,
            call_duration=message.call_duration,
            sqlite_id=str(message.id),
        )

    def to_message_fields(self) -> dict:
        """
        Column values for restoring this record into the local store.

        Raises:
            ValueError: If message_id is not an integer id
        """
        return {
            "id": int(self.message_id),
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "timestamp": normalize_timestamp(self.timestamp),
            "client_id": self.client_id,
            "is_call_record": self.is_call_record,
            "call_type": self.call_type,
            "call_duration": self.call_duration,
            "message_type": "text",
            "audio_url": None,
        }

"""
Relay router: turns inbound connection events into outbound events.

Every frame from a connection goes through RelayRouter.handle, which
dispatches on the event name. Chat messages are persisted before anything
is delivered; typing/recording indicators and call signaling are pure
routing. A target user who is offline is an expected outcome, logged and
counted, never an error: chat messages reach them through the history
snapshot on their next authenticate, everything else is dropped.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatrelay.errors import InvalidPayload, StoreError
from chatrelay.metrics import record_message_persisted, record_relay_event
from chatrelay.presence import PresenceRegistry
from chatrelay.schemas import (
    SIGNALING_EVENTS,
    AuthenticatedResponse,
    AuthenticatePayload,
    ErrorResponse,
    InboundEvent,
    InboundFrame,
    MessageResponse,
    MessageSentResponse,
    OutboundEvent,
    PresenceSignalPayload,
    SendMessageRequest,
)
from chatrelay.storage import SessionLocal, get_messages_for_user, insert_message

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, connection_id: str, event: str, data: Any) -> bool: ...


# Indicator event -> event pushed to the receiver
INDICATOR_EVENTS: Dict[str, OutboundEvent] = {
    InboundEvent.TYPING.value: OutboundEvent.USER_TYPING,
    InboundEvent.STOP_TYPING.value: OutboundEvent.USER_STOPPED_TYPING,
    InboundEvent.RECORDING.value: OutboundEvent.USER_RECORDING,
    InboundEvent.STOP_RECORDING.value: OutboundEvent.USER_STOPPED_RECORDING,
}


class RelayRouter:
    """
    Dispatches inbound events for all connections.

    Args:
        registry: Presence registry used for routing
        transport: Object whose `send` pushes an event to a connection
        session_factory: Callable returning a new SQLAlchemy session
        snapshot_on_send: Push the sender's full history after each send
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        transport: Transport,
        session_factory: Callable[[], Session] = SessionLocal,
        snapshot_on_send: bool = True,
    ):
        self.registry = registry
        self.transport = transport
        self.session_factory = session_factory
        self.snapshot_on_send = snapshot_on_send
        self._handlers: Dict[str, Callable[[str, str, Any], Awaitable[None]]] = {
            InboundEvent.AUTHENTICATE.value: self._on_authenticate,
            InboundEvent.SEND_MESSAGE.value: self._on_send_message,
        }
        for event in INDICATOR_EVENTS:
            self._handlers[event] = self._on_indicator
        for event in SIGNALING_EVENTS:
            self._handlers[event] = self._on_signal

    async def handle(self, connection_id: str, frame: InboundFrame) -> None:
        """Handle one inbound frame from a connection."""
        handler = self._handlers.get(frame.event)
        if handler is None:
            logger.warning(f"Unknown event '{frame.event}' from {connection_id}")
            record_relay_event("unknown", "unknown_event")
            await self._emit(connection_id, OutboundEvent.ERROR, ErrorResponse(error=f"Unknown event: {frame.event}"))
            return
        await handler(connection_id, frame.event, frame.data)

    def disconnect(self, connection_id: str) -> Optional[str]:
        """Forget a closed connection. Returns the user that went offline."""
        return self.registry.unregister(connection_id)

    # =========================================================================
    # Authentication
    # =========================================================================

    async def _on_authenticate(self, connection_id: str, event: str, data: Any) -> None:
        # Clients send either the bare user id or {"userId": ...}
        if not isinstance(data, dict):
            data = {"userId": data}
        try:
            payload = AuthenticatePayload.model_validate(data)
        except ValidationError:
            logger.warning(f"Rejected authenticate from {connection_id}: missing userId")
            record_relay_event(event, "invalid_payload")
            await self._emit(connection_id, OutboundEvent.ERROR, ErrorResponse(error="userId is required"))
            return

        user_id = payload.user_id
        self.registry.register(user_id, connection_id)
        record_relay_event(event, "registered")

        await self._emit(
            connection_id,
            OutboundEvent.AUTHENTICATED,
            AuthenticatedResponse(user_id=user_id, socket_id=connection_id),
        )
        await self._push_snapshot(connection_id, user_id)

    async def _push_snapshot(self, connection_id: str, user_id: str) -> None:
        """Send the user's full history as all_messages."""
        try:
            with self.session_factory() as db:
                messages = get_messages_for_user(db, user_id)
                snapshot = [MessageResponse.model_validate(m).to_payload() for m in messages]
        except StoreError:
            await self._emit(
                connection_id,
                OutboundEvent.MESSAGE_ERROR,
                ErrorResponse(error="Failed to load messages"),
            )
            return
        await self.transport.send(connection_id, OutboundEvent.ALL_MESSAGES.value, snapshot)

    # =========================================================================
    # Chat Messages
    # =========================================================================

    async def _on_send_message(self, connection_id: str, event: str, data: Any) -> None:
        try:
            request = self._parse_send_message(data)
        except InvalidPayload as e:
            logger.error(f"Invalid message data from {connection_id}: {e}")
            record_relay_event(event, "invalid_payload")
            await self._emit(connection_id, OutboundEvent.MESSAGE_ERROR, ErrorResponse(error="Invalid message data"))
            return

        try:
            with self.session_factory() as db:
                stored = insert_message(
                    db,
                    sender_id=request.sender_id,
                    receiver_id=request.receiver_id,
                    content=request.content,
                    client_id=request.client_id,
                    is_call_record=request.is_call_record,
                    call_type=request.call_type,
                    call_duration=request.call_duration,
                    message_type=request.message_type,
                    audio_url=request.audio_url,
                )
                message = MessageResponse.model_validate(stored)
        except StoreError:
            record_relay_event(event, "store_error")
            await self._emit(connection_id, OutboundEvent.MESSAGE_ERROR, ErrorResponse(error="Failed to save message"))
            return

        record_message_persisted()
        payload = message.to_payload()
        logger.info(f"Processing message {message.id} from {message.sender_id} to {message.receiver_id}")

        receiver_conn = self.registry.resolve(message.receiver_id)
        if receiver_conn is None:
            logger.info(f"User {message.receiver_id} is offline, message {message.id} stored for next login")
            record_relay_event(event, "stored")
        elif receiver_conn == connection_id:
            # Message to self on the same connection: the ack and snapshot cover it
            record_relay_event(event, "delivered")
        else:
            await self.transport.send(receiver_conn, OutboundEvent.NEW_MESSAGE.value, payload)
            record_relay_event(event, "delivered")

        await self._emit(
            connection_id,
            OutboundEvent.MESSAGE_SENT,
            MessageSentResponse(client_id=request.client_id, message_id=message.id, timestamp=message.timestamp),
        )

        # Sender's other sessions, never the sending connection or the receiver's again
        for other in self.registry.group(message.sender_id, exclude=connection_id):
            if other != receiver_conn:
                await self.transport.send(other, OutboundEvent.NEW_MESSAGE.value, payload)

        if self.snapshot_on_send:
            await self._push_snapshot(connection_id, message.sender_id)

    @staticmethod
    def _parse_send_message(data: Any) -> SendMessageRequest:
        """
        Validate a send_message payload.

        Raises:
            InvalidPayload: If the payload is malformed or missing
                senderId, receiverId or content
        """
        if not isinstance(data, dict):
            raise InvalidPayload("payload must be an object")
        try:
            request = SendMessageRequest.model_validate(data)
        except ValidationError as e:
            raise InvalidPayload(str(e)) from e
        missing = request.missing_fields()
        if missing:
            raise InvalidPayload(f"missing {', '.join(missing)}")
        return request

    # =========================================================================
    # Typing / Recording Indicators
    # =========================================================================

    async def _on_indicator(self, connection_id: str, event: str, data: Any) -> None:
        try:
            payload = PresenceSignalPayload.model_validate(data if isinstance(data, dict) else {})
        except ValidationError:
            logger.warning(f"Rejected {event} from {connection_id}: malformed indicator payload")
            record_relay_event(event, "invalid_payload")
            return
        sender_id = self.registry.user_for(connection_id) or payload.sender_id
        if not sender_id or not payload.receiver_id:
            logger.debug(f"Dropping {event} from {connection_id}: sender or receiver unknown")
            record_relay_event(event, "dropped")
            return

        receiver_conn = self.registry.resolve(payload.receiver_id)
        if receiver_conn is None:
            logger.debug(f"Dropping {event} from {sender_id}: {payload.receiver_id} is offline")
            record_relay_event(event, "offline")
            return

        await self.transport.send(receiver_conn, INDICATOR_EVENTS[event].value, sender_id)
        record_relay_event(event, "delivered")

    # =========================================================================
    # Call Signaling
    # =========================================================================

    async def _on_signal(self, connection_id: str, event: str, data: Any) -> None:
        target = data.get("to") if isinstance(data, dict) else None
        if not isinstance(target, str) or not target:
            logger.warning(f"Dropping {event} from {connection_id}: no valid target user")
            record_relay_event(event, "dropped")
            return

        target_conn = self.registry.resolve(target)
        if target_conn is None:
            logger.info(f"Dropping {event} from {data.get('from')}: {target} is offline")
            record_relay_event(event, "offline")
            return

        await self.transport.send(target_conn, event, data)
        record_relay_event(event, "delivered")
        logger.debug(f"Relayed {event} from {data.get('from')} to {target}")

    async def _emit(self, connection_id: str, event: OutboundEvent, model) -> None:
        await self.transport.send(connection_id, event.value, model.model_dump(by_alias=True))

"""
Live WebSocket connection table.

Maps opaque connection ids to sockets and serializes outbound events as
{"event": ..., "data": ...} JSON frames. The relay router only ever talks
to connections through `send`, so tests can substitute any object with
the same coroutine.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    id: str
    websocket: WebSocket


class ConnectionManager:
    """Owns every accepted WebSocket, keyed by connection id."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    async def connect(self, websocket: WebSocket) -> Connection:
        """Accept the socket and assign it a fresh connection id."""
        await websocket.accept()
        connection = Connection(id=uuid.uuid4().hex, websocket=websocket)
        self._connections[connection.id] = connection
        logger.info(f"New client connected: {connection.id}, open connections: {len(self._connections)}")
        return connection

    def disconnect(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is not None:
            logger.info(f"Client disconnected: {connection_id}, open connections: {len(self._connections)}")

    async def send(self, connection_id: str, event: str, data: Any) -> bool:
        """
        Push one event to a connection.

        Returns:
            True if the frame was written, False if the connection is gone
            or the write failed. A failed write drops the connection.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.debug(f"Dropping {event} for closed connection {connection_id}")
            return False
        try:
            await connection.websocket.send_json({"event": event, "data": data})
        except Exception as e:
            # Socket closed between lookup and write; the receive loop cleans up
            logger.warning(f"Failed to send {event} to {connection_id}: {e}")
            self.disconnect(connection_id)
            return False
        return True

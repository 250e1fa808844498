"""
Presence registry: which user is reachable on which live connection.

Two structures are kept:

- presence: user <-> connection, one live connection per user
  (last authenticate wins), forward and reverse maps always mutated
  together.
- personal groups: every connection that authenticated as a user, until
  it disconnects. Used to fan a sent message out to the sender's other
  sessions. A connection superseded in presence stays in its group.

All mutation goes through one lock, so a reader on another thread never
observes the forward and reverse maps out of step.
"""

import logging
import threading
from typing import Dict, List, Optional, Set

from chatrelay.metrics import set_online_users

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Bidirectional user <-> connection map with personal groups."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._user_to_conn: Dict[str, str] = {}
        self._conn_to_user: Dict[str, str] = {}
        self._groups: Dict[str, Set[str]] = {}
        self._group_of: Dict[str, str] = {}

    def register(self, user_id: str, connection_id: str) -> Optional[str]:
        """
        Bind user -> connection and connection -> user.

        Any previous connection of the user is silently superseded, and a
        connection that re-authenticates as a different user leaves its
        previous identity first.

        Returns:
            The superseded connection id, if the user had another one
        """
        with self._lock:
            previous_user = self._conn_to_user.pop(connection_id, None)
            if previous_user is not None and previous_user != user_id:
                self._user_to_conn.pop(previous_user, None)
                logger.info(f"Connection {connection_id} switched identity from {previous_user} to {user_id}")

            superseded = self._user_to_conn.get(user_id)
            if superseded is not None and superseded != connection_id:
                self._conn_to_user.pop(superseded, None)
            else:
                superseded = None

            self._user_to_conn[user_id] = connection_id
            self._conn_to_user[connection_id] = user_id

            self._leave_group(connection_id)
            self._groups.setdefault(user_id, set()).add(connection_id)
            self._group_of[connection_id] = user_id

            online = len(self._user_to_conn)

        set_online_users(online)
        if superseded:
            logger.info(f"User {user_id} re-authenticated, connection {superseded} superseded by {connection_id}")
        logger.info(f"User {user_id} registered on connection {connection_id}, online users: {online}")
        return superseded

    def resolve(self, user_id: str) -> Optional[str]:
        """Connection currently bound to the user, or None if offline."""
        with self._lock:
            return self._user_to_conn.get(user_id)

    def unregister(self, connection_id: str) -> Optional[str]:
        """
        Remove a connection from presence and from its personal group.

        Idempotent. A superseded connection no longer owns its user's
        binding, so closing it leaves the newer binding in place.

        Returns:
            The user that went offline, or None
        """
        with self._lock:
            user_id = self._conn_to_user.pop(connection_id, None)
            if user_id is not None and self._user_to_conn.get(user_id) == connection_id:
                del self._user_to_conn[user_id]
            self._leave_group(connection_id)
            online = len(self._user_to_conn)

        set_online_users(online)
        if user_id is not None:
            logger.info(f"User {user_id} went offline (connection {connection_id}), online users: {online}")
        return user_id

    def user_for(self, connection_id: str) -> Optional[str]:
        """User a connection authenticated as, superseded or not."""
        with self._lock:
            return self._conn_to_user.get(connection_id) or self._group_of.get(connection_id)

    def group(self, user_id: str, exclude: Optional[str] = None) -> List[str]:
        """Connections in the user's personal group, minus `exclude`."""
        with self._lock:
            members = self._groups.get(user_id, set())
            return sorted(conn for conn in members if conn != exclude)

    def online_users(self) -> List[str]:
        with self._lock:
            return list(self._user_to_conn)

    def __len__(self) -> int:
        with self._lock:
            return len(self._user_to_conn)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._user_to_conn

    def _leave_group(self, connection_id: str) -> None:
        # Caller holds the lock
        owner = self._group_of.pop(connection_id, None)
        if owner is None:
            return
        members = self._groups.get(owner)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._groups[owner]

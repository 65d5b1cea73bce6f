"""Room membership and broadcast for conversations.

A room is the live set of connections subscribed to one conversation's
events. Rooms are ephemeral: they are rebuilt from the persisted
participant list when a client reconnects and asks to join.

Key features:
    - Membership is checked against the persisted participant list
    - Bulk join at connect time (empty list = every conversation)
    - Identity-wide join/leave used by group mutations
    - Fire-and-forget broadcast: events are queued on each connection's
      outbox, so one stalled connection never delays the others
    - Closed connections are pruned during broadcast

Thread Safety:
    This implementation is designed for async/await usage with a single
    event loop. It is NOT thread-safe for concurrent access from multiple
    threads.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from app.store.service import RelayStore

from .connections import Connection, ConnectionRegistry
from .errors import AuthorizationError, NotFoundError

logger = logging.getLogger(__name__)


class RoomManager:
    """Maps conversation ids to the connections subscribed to them."""

    def __init__(self, registry: ConnectionRegistry, store: RelayStore) -> None:
        self.registry = registry
        self.store = store

        # conversation_id -> set of connection_ids
        self.rooms: Dict[str, Set[str]] = {}

        # connection_id -> set of conversation_ids (for disconnect handling)
        self.connection_rooms: Dict[str, Set[str]] = {}

    # =========================================================================
    # Client-driven membership
    # =========================================================================

    def ensure_participant(self, conversation_id: str, identity_id: str) -> None:
        """Check the persisted participant list.

        Raises:
            NotFoundError: The conversation does not exist.
            AuthorizationError: The identity is not a participant.
        """
        if self.store.is_participant(conversation_id, identity_id):
            return
        if self.store.find_conversation(conversation_id) is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        raise AuthorizationError(f"Not a participant of conversation {conversation_id}")

    def join_room(self, connection: Connection, conversation_id: str) -> None:
        """Subscribe a connection after checking its identity participates."""
        self.ensure_participant(conversation_id, connection.identity_id)
        self.subscribe(connection, conversation_id)

    def join_rooms(
        self, connection: Connection, conversation_ids: Sequence[str]
    ) -> Tuple[List[str], List[str]]:
        """Bulk join used at connect time.

        An empty list joins every conversation the identity currently
        participates in.

        Returns:
            Tuple of (joined ids, rejected ids).
        """
        if not conversation_ids:
            conversation_ids = self.store.list_conversation_ids(connection.identity_id)
            for conversation_id in conversation_ids:
                self.subscribe(connection, conversation_id)
            return list(conversation_ids), []

        joined: List[str] = []
        rejected: List[str] = []
        for conversation_id in dict.fromkeys(conversation_ids):
            if self.store.is_participant(conversation_id, connection.identity_id):
                self.subscribe(connection, conversation_id)
                joined.append(conversation_id)
            else:
                rejected.append(conversation_id)
        if rejected:
            logger.warning(
                f"[Rooms] {connection.identity_id} refused rooms {rejected} (not a participant)"
            )
        return joined, rejected

    def leave_room(self, connection: Connection, conversation_id: str) -> bool:
        return self.unsubscribe(connection.id, conversation_id)

    # =========================================================================
    # Server-driven membership
    # =========================================================================

    def subscribe(self, connection: Connection, conversation_id: str) -> None:
        self.rooms.setdefault(conversation_id, set()).add(connection.id)
        self.connection_rooms.setdefault(connection.id, set()).add(conversation_id)
        logger.debug(f"[Rooms] Connection {connection.id} joined room {conversation_id}")

    def unsubscribe(self, connection_id: str, conversation_id: str) -> bool:
        members = self.rooms.get(conversation_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self.rooms[conversation_id]
        rooms = self.connection_rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(conversation_id)
            if not rooms:
                del self.connection_rooms[connection_id]
        logger.debug(f"[Rooms] Connection {connection_id} left room {conversation_id}")
        return True

    def join_identity(self, identity_id: str, conversation_id: str) -> List[Connection]:
        """Subscribe every live connection of an identity to a room."""
        connections = self.registry.connections_for(identity_id)
        for connection in connections:
            self.subscribe(connection, conversation_id)
        return connections

    def leave_identity(self, identity_id: str, conversation_id: str) -> List[Connection]:
        """Pull every live connection of an identity out of a room."""
        connections = self.registry.connections_for(identity_id)
        for connection in connections:
            self.unsubscribe(connection.id, conversation_id)
        return connections

    def drop_connection(self, connection_id: str) -> List[str]:
        """Remove a connection from every room (disconnect)."""
        rooms = list(self.connection_rooms.get(connection_id, ()))
        for conversation_id in rooms:
            self.unsubscribe(connection_id, conversation_id)
        return rooms

    def close_room(self, conversation_id: str) -> None:
        for connection_id in list(self.rooms.get(conversation_id, ())):
            self.unsubscribe(connection_id, conversation_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def members(self, conversation_id: str) -> List[Connection]:
        members = []
        for connection_id in self.rooms.get(conversation_id, ()):
            connection = self.registry.get(connection_id)
            if connection is not None:
                members.append(connection)
        return members

    def is_member(self, connection_id: str, conversation_id: str) -> bool:
        return connection_id in self.rooms.get(conversation_id, ())

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self.connection_rooms.get(connection_id, ()))

    def get_room_size(self, conversation_id: str) -> int:
        """Get the number of connections subscribed to a room."""
        return len(self.rooms.get(conversation_id, ()))

    # =========================================================================
    # Broadcast
    # =========================================================================

    def broadcast(
        self,
        conversation_id: str,
        event: Dict[str, Any],
        exclude_connection_id: Optional[str] = None,
        exclude_identity_id: Optional[str] = None,
    ) -> int:
        """Queue an event on every connection in a room.

        Never waits on any recipient. Connections that are already closed
        are removed from the room.

        Args:
            conversation_id: Room to broadcast to.
            event: JSON-serializable event.
            exclude_connection_id: Connection to skip.
            exclude_identity_id: Identity whose connections are all skipped
                (e.g. the typist).

        Returns:
            Number of connections the event was queued on.
        """
        delivered = 0
        failed: List[str] = []
        for connection in self.members(conversation_id):
            if connection.id == exclude_connection_id:
                continue
            if exclude_identity_id is not None and connection.identity_id == exclude_identity_id:
                continue
            if connection.send(event):
                delivered += 1
            else:
                failed.append(connection.id)
        self._cleanup_connections(conversation_id, failed)
        return delivered

    def _cleanup_connections(self, conversation_id: str, failed_connections: List[str]) -> None:
        for connection_id in failed_connections:
            if self.unsubscribe(connection_id, conversation_id):
                logger.debug(f"Removed dead connection from room {conversation_id}")

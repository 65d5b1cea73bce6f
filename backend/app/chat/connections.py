"""Connection registry for authenticated WebSocket sessions.

Each accepted socket becomes a Connection bound to one identity. An
identity may hold any number of concurrent connections (multi-device).

Outbound delivery:
    Every Connection owns a bounded outbox drained by its own writer task,
    so ``send()`` never waits on the network. A connection whose outbox
    fills up is treated as a stalled consumer: it is closed and further
    events to it are dropped, without affecting any other connection.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

# WebSocket close code for "try again later" (used for stalled consumers)
CLOSE_TRY_AGAIN_LATER = 1013

_CLOSE = object()


class Connection:
    """One authenticated transport session.

    Attributes:
        id: Server-assigned connection id.
        identity_id: Identity the connection was authenticated as.
        websocket: Transport object exposing async ``send_json`` and ``close``.
        outbox: Pending outbound events.
        closed: True once the connection stopped accepting events.
    """

    def __init__(self, identity_id: str, websocket: Any, queue_size: int = 256,
                 connection_id: Optional[str] = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.identity_id = identity_id
        self.websocket = websocket
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self._writer: Optional[asyncio.Task] = None

    def send(self, event: Dict[str, Any]) -> bool:
        """Queue an event for delivery without blocking.

        Returns:
            True if queued, False if the connection is closed or stalled.
        """
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"[Conn] Outbox full for connection {self.id} ({self.identity_id}); closing"
            )
            self._abort(CLOSE_TRY_AGAIN_LATER)
            return False

    def start(self) -> None:
        """Start the writer task draining the outbox to the socket."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._run_writer())

    async def stop(self) -> None:
        """Stop accepting events and let the writer flush what is queued."""
        self.closed = True
        if self._writer is None:
            return
        try:
            self.outbox.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None

    async def _run_writer(self) -> None:
        while True:
            event = await self.outbox.get()
            if event is _CLOSE:
                return
            try:
                await self.websocket.send_json(event)
            except Exception as e:
                logger.debug(f"[Conn] Failed to send to connection {self.id}: {e}")
                self.closed = True
                return

    def _abort(self, code: int) -> None:
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
        try:
            asyncio.get_running_loop().create_task(self._close_socket(code))
        except RuntimeError:
            pass

    async def _close_socket(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"[Conn] Close failed for connection {self.id}: {e}")

    def drain(self) -> List[Dict[str, Any]]:
        """Remove and return every queued event (used when no writer runs)."""
        events = []
        while True:
            try:
                event = self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if event is not _CLOSE:
                events.append(event)


class ConnectionRegistry:
    """Process-wide index of live connections by id and by identity.

    Lookups by identity are O(1) so targeted notices (added/removed from a
    group, presence) never scan all sockets.
    """

    def __init__(self) -> None:
        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}

        # identity_id -> set of connection_ids
        self._by_identity: Dict[str, Set[str]] = {}

    def register(self, connection: Connection) -> int:
        """Bind a connection to its identity.

        Returns:
            Number of live connections the identity holds afterwards.
        """
        self._connections[connection.id] = connection
        ids = self._by_identity.setdefault(connection.identity_id, set())
        ids.add(connection.id)
        logger.info(
            f"[Registry] Connection {connection.id} registered for {connection.identity_id} "
            f"({len(ids)} active)"
        )
        return len(ids)

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection. Unknown ids are ignored."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        ids = self._by_identity.get(connection.identity_id)
        if ids is not None:
            ids.discard(connection_id)
            if not ids:
                del self._by_identity[connection.identity_id]
        logger.info(
            f"[Registry] Connection {connection_id} unregistered for {connection.identity_id} "
            f"({self.connection_count(connection.identity_id)} active)"
        )
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections_for(self, identity_id: str) -> List[Connection]:
        return [self._connections[cid] for cid in self._by_identity.get(identity_id, ())]

    def connection_count(self, identity_id: str) -> int:
        return len(self._by_identity.get(identity_id, ()))

    def is_connected(self, identity_id: str) -> bool:
        return identity_id in self._by_identity

    def connected_identities(self) -> List[str]:
        return list(self._by_identity)

    def all_connections(self, exclude_identity: Optional[str] = None) -> List[Connection]:
        return [
            conn for conn in self._connections.values()
            if conn.identity_id != exclude_identity
        ]

    def send_to_identity(self, identity_id: str, event: Dict[str, Any]) -> int:
        """Queue an event on every connection of one identity.

        Returns:
            Number of connections the event was queued on.
        """
        return sum(1 for conn in self.connections_for(identity_id) if conn.send(event))

    def __len__(self) -> int:
        return len(self._connections)

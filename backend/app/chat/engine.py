"""Real-time synchronization engine.

Wires the connection registry, presence, rooms, the send pipeline,
receipts, typing and group mutations together and dispatches parsed client
requests to them.

Dispatch:
    Each request model maps to exactly one handler. The table is checked
    against ``REQUEST_TYPES`` when the engine is built, so adding a request
    variant without a handler fails at startup instead of at runtime.

    A handler returns either a dict of ``ack`` fields (sent to the
    requesting connection with its ``requestId``) or None (no ack).
    Any RelayError becomes an ``error`` event to the requester only.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from app.config import RealtimeSettings
from app.store.service import RelayStore

from .connections import Connection, ConnectionRegistry
from .errors import AuthorizationError, PersistenceError, RelayError, error_event
from .groups import GroupMutationBroadcaster
from .locks import KeyedLocks
from .manager import RoomManager
from .pipeline import MessagePipeline
from .presence import PresenceStore
from .protocol import (
    REQUEST_TYPES,
    AddMemberRequest,
    ChangeAdminRequest,
    CreateGroupRequest,
    JoinRoomRequest,
    JoinRoomsRequest,
    LeaveGroupRequest,
    LeaveRoomRequest,
    MarkConversationReadRequest,
    MarkDeliveredRequest,
    MarkReadRequest,
    RemoveMemberRequest,
    RenameGroupRequest,
    RequestBase,
    SendMessageRequest,
    StopTypingRequest,
    SyncMessagesRequest,
    TypingRequest,
    ack_event,
    connected_event,
    parse_request,
    request_id_of,
    stop_typing_event,
    synced_messages_event,
    typing_event,
    user_offline_event,
    user_online_event,
)
from .receipts import ReceiptAggregator
from .typing_tracker import TypingTracker

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[Optional[Dict[str, Any]]]]


class RelayEngine:
    """Process-wide owner of all live relay state."""

    def __init__(self, store: RelayStore, settings: Optional[RealtimeSettings] = None) -> None:
        self.store = store
        self.settings = settings or RealtimeSettings()

        self.registry = ConnectionRegistry()
        self.presence = PresenceStore(store)
        self.rooms = RoomManager(self.registry, store)
        self.conversation_locks = KeyedLocks("conversation")
        self.message_locks = KeyedLocks("message")
        self.typing = TypingTracker(self.settings.typing_ttl_seconds)
        self.pipeline = MessagePipeline(
            store,
            self.rooms,
            self.conversation_locks,
            max_text_length=self.settings.max_text_length,
            dedup_cache_size=self.settings.dedup_cache_size,
        )
        self.receipts = ReceiptAggregator(
            store, self.rooms, self.conversation_locks, self.message_locks
        )
        self.groups = GroupMutationBroadcaster(
            store,
            self.rooms,
            self.registry,
            self.conversation_locks,
            max_name_length=self.settings.max_group_name_length,
        )

        # identity_id -> display name, cached at connect for typing events
        self._display_names: Dict[str, str] = {}

        self._handlers: Dict[Type[RequestBase], Handler] = {
            JoinRoomsRequest: self._join_rooms,
            JoinRoomRequest: self._join_room,
            LeaveRoomRequest: self._leave_room,
            SendMessageRequest: self._send_message,
            TypingRequest: self._typing,
            StopTypingRequest: self._stop_typing,
            MarkDeliveredRequest: self._mark_delivered,
            MarkReadRequest: self._mark_read,
            MarkConversationReadRequest: self._mark_conversation_read,
            SyncMessagesRequest: self._sync_messages,
            CreateGroupRequest: self._create_group,
            AddMemberRequest: self._add_member,
            RemoveMemberRequest: self._remove_member,
            LeaveGroupRequest: self._leave_group,
            RenameGroupRequest: self._rename_group,
            ChangeAdminRequest: self._change_admin,
        }
        missing = [cls.__name__ for cls in REQUEST_TYPES if cls not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for {', '.join(missing)}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        await self.typing.start()

    async def stop(self) -> None:
        for connection in self.registry.all_connections():
            await connection.stop()
        await self.typing.stop()

    # =========================================================================
    # Connect / disconnect
    # =========================================================================

    def connect(self, websocket: Any, identity_id: str) -> Connection:
        """Admit an authenticated socket.

        Registers the connection, flips presence on the identity's first
        connection (broadcasting ``userOnline`` to everyone else) and queues
        the ``connected`` event.
        """
        identity = self.store.get_identity(identity_id)
        connection = Connection(identity_id, websocket, queue_size=self.settings.outbound_queue_size)
        self.registry.register(connection)
        self._display_names[identity_id] = identity.displayName

        if self.presence.mark_connected(identity_id, connection.id):
            event = user_online_event(identity_id)
            for other in self.registry.all_connections(exclude_identity=identity_id):
                other.send(event)

        identity = identity.model_copy(update={"isOnline": True})
        connection.send(
            connected_event(identity, self.store.list_conversation_ids(identity_id), connection.id)
        )
        return connection

    def disconnect(self, connection: Connection) -> None:
        """Forget a connection; on the identity's last one go offline."""
        rooms = self.rooms.drop_connection(connection.id)
        if self.registry.unregister(connection.id) is None:
            return
        identity_id = connection.identity_id
        logger.info(f"[Engine] Connection {connection.id} of {identity_id} left {len(rooms)} rooms")

        last_seen = self.presence.mark_disconnected(identity_id, connection.id)
        if last_seen is None:
            return
        self.typing.clear_identity(identity_id)
        self._display_names.pop(identity_id, None)
        event = user_offline_event(identity_id, last_seen)
        for other in self.registry.all_connections(exclude_identity=identity_id):
            other.send(event)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, connection: Connection, data: Any) -> None:
        """Parse one client frame and run its handler."""
        request_id = request_id_of(data)
        try:
            request = parse_request(data)
            handler = self._handlers[type(request)]
            result = await handler(connection, request)
        except PersistenceError as e:
            logger.error(f"[Engine] Persistence failure for {connection.identity_id}: {e.__cause__ or e}")
            connection.send(error_event(e, request_id))
            return
        except RelayError as e:
            logger.warning(f"[Engine] Rejected request from {connection.identity_id}: [{e.code}] {e.message}")
            connection.send(error_event(e, request_id))
            return

        if result is not None:
            connection.send(ack_event(request_id, requestType=request.type, **result))

    # =========================================================================
    # Rooms
    # =========================================================================

    async def _join_rooms(self, connection: Connection, request: JoinRoomsRequest):
        joined, rejected = self.rooms.join_rooms(connection, request.conversationIds)
        return {"conversationIds": joined, "rejected": rejected}

    async def _join_room(self, connection: Connection, request: JoinRoomRequest):
        self.rooms.join_room(connection, request.conversationId)
        return {"conversationId": request.conversationId}

    async def _leave_room(self, connection: Connection, request: LeaveRoomRequest):
        self.rooms.leave_room(connection, request.conversationId)
        return {"conversationId": request.conversationId}

    # =========================================================================
    # Messages
    # =========================================================================

    async def _send_message(self, connection: Connection, request: SendMessageRequest):
        message, duplicate = await self.pipeline.send(
            connection,
            request.conversationId,
            text=request.text,
            image_url=request.imageUrl,
            client_message_id=request.clientMessageId,
        )
        # Sending ends the sender's typing state
        self.typing.stop_typing(request.conversationId, connection.identity_id)
        return {
            "conversationId": request.conversationId,
            "messageId": message.id,
            "seq": message.seq,
            "clientMessageId": request.clientMessageId,
            "duplicate": duplicate,
        }

    async def _sync_messages(self, connection: Connection, request: SyncMessagesRequest):
        self.rooms.ensure_participant(request.conversationId, connection.identity_id)
        page = self.settings.sync_page_size
        messages = self.store.messages_since(
            request.conversationId, after_seq=request.afterSeq, limit=page + 1
        )
        connection.send(
            synced_messages_event(
                request.conversationId,
                messages[:page],
                has_more=len(messages) > page,
                request_id=request.requestId,
            )
        )
        return None

    # =========================================================================
    # Typing
    # =========================================================================

    def _require_room(self, connection: Connection, conversation_id: str) -> None:
        if not self.rooms.is_member(connection.id, conversation_id):
            raise AuthorizationError(f"Not joined to conversation {conversation_id}")

    async def _typing(self, connection: Connection, request: TypingRequest):
        self._require_room(connection, request.conversationId)
        identity_id = connection.identity_id
        self.typing.set_typing(request.conversationId, identity_id)
        display_name = self._display_names.get(identity_id, identity_id)
        self.rooms.broadcast(
            request.conversationId,
            typing_event(request.conversationId, identity_id, display_name),
            exclude_identity_id=identity_id,
        )
        return None

    async def _stop_typing(self, connection: Connection, request: StopTypingRequest):
        self._require_room(connection, request.conversationId)
        identity_id = connection.identity_id
        self.typing.stop_typing(request.conversationId, identity_id)
        self.rooms.broadcast(
            request.conversationId,
            stop_typing_event(request.conversationId, identity_id),
            exclude_identity_id=identity_id,
        )
        return None

    # =========================================================================
    # Receipts
    # =========================================================================

    async def _mark_delivered(self, connection: Connection, request: MarkDeliveredRequest):
        at = await self.receipts.mark_delivered(connection, request.conversationId, request.messageId)
        return {"messageId": request.messageId, "recorded": at is not None}

    async def _mark_read(self, connection: Connection, request: MarkReadRequest):
        at = await self.receipts.mark_read(connection, request.conversationId, request.messageId)
        return {"messageId": request.messageId, "recorded": at is not None}

    async def _mark_conversation_read(
        self, connection: Connection, request: MarkConversationReadRequest
    ):
        message_ids, unread = await self.receipts.mark_conversation_read(
            connection, request.conversationId
        )
        return {"conversationId": request.conversationId, "messageIds": message_ids, "unread": unread}

    # =========================================================================
    # Groups
    # =========================================================================

    async def _create_group(self, connection: Connection, request: CreateGroupRequest):
        conversation = await self.groups.create_group(connection, request.name, request.memberIds)
        return {"conversation": conversation.model_dump(mode="json")}

    async def _add_member(self, connection: Connection, request: AddMemberRequest):
        await self.groups.add_member(connection, request.conversationId, request.userId)
        return {"conversationId": request.conversationId, "userId": request.userId}

    async def _remove_member(self, connection: Connection, request: RemoveMemberRequest):
        await self.groups.remove_member(connection, request.conversationId, request.userId)
        self.typing.clear_conversation(request.conversationId, request.userId)
        return {"conversationId": request.conversationId, "userId": request.userId}

    async def _leave_group(self, connection: Connection, request: LeaveGroupRequest):
        conversation = await self.groups.leave_group(connection, request.conversationId)
        if conversation is None:
            self.typing.clear_conversation(request.conversationId)
            self.pipeline.forget_conversation(request.conversationId)
        else:
            self.typing.clear_conversation(request.conversationId, connection.identity_id)
        return {"conversationId": request.conversationId, "deleted": conversation is None}

    async def _rename_group(self, connection: Connection, request: RenameGroupRequest):
        conversation = await self.groups.rename_group(connection, request.conversationId, request.name)
        return {"conversationId": request.conversationId, "name": conversation.name}

    async def _change_admin(self, connection: Connection, request: ChangeAdminRequest):
        await self.groups.change_admin(connection, request.conversationId, request.newAdminId)
        return {"conversationId": request.conversationId, "newAdminId": request.newAdminId}


# =============================================================================
# Process-wide instance
# =============================================================================

_engine: Optional[RelayEngine] = None


def get_engine() -> RelayEngine:
    """Return the engine created at startup.

    Raises:
        RuntimeError: If the application has not started yet.
    """
    if _engine is None:
        raise RuntimeError("Relay engine is not initialized")
    return _engine


def set_engine(engine: Optional[RelayEngine]) -> None:
    global _engine
    _engine = engine

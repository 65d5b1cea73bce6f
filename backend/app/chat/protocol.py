"""WebSocket wire protocol for the relay.

Client -> server frames are JSON objects tagged by ``type`` and parsed into
one of a closed set of pydantic request models. Server -> client frames are
flat JSON objects built by the ``*_event`` helpers below:

    {"type": "<event type>", ...event fields}

Every request may carry an optional ``requestId``; it is echoed on the
``ack`` or ``error`` reply to the requesting connection.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.store.schemas import Conversation, Identity, Message

from .errors import RequestValidationError


# =============================================================================
# Client -> server requests
# =============================================================================


class RequestBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requestId: Optional[str] = Field(default=None, description="Client correlation id")


class ConversationRequest(RequestBase):
    conversationId: str = Field(..., min_length=1)


class JoinRoomsRequest(RequestBase):
    """Join several rooms at once. An empty list joins every conversation."""
    type: Literal["joinRooms"]
    conversationIds: List[str] = Field(default_factory=list)


class JoinRoomRequest(ConversationRequest):
    type: Literal["joinRoom"]


class LeaveRoomRequest(ConversationRequest):
    type: Literal["leaveRoom"]


class SendMessageRequest(ConversationRequest):
    """Send a text or image message. Exactly one of text/imageUrl is set."""
    type: Literal["sendMessage"]
    text: Optional[str] = None
    imageUrl: Optional[str] = None
    clientMessageId: Optional[str] = Field(
        default=None, description="Client de-duplication key for retries"
    )


class TypingRequest(ConversationRequest):
    type: Literal["typing"]


class StopTypingRequest(ConversationRequest):
    type: Literal["stopTyping"]


class MarkDeliveredRequest(ConversationRequest):
    type: Literal["markDelivered"]
    messageId: str = Field(..., min_length=1)


class MarkReadRequest(ConversationRequest):
    type: Literal["markRead"]
    messageId: str = Field(..., min_length=1)


class MarkConversationReadRequest(ConversationRequest):
    type: Literal["markConversationRead"]


class SyncMessagesRequest(ConversationRequest):
    """Fetch persisted messages newer than ``afterSeq`` (reconnect recovery)."""
    type: Literal["syncMessages"]
    afterSeq: int = Field(default=0, ge=0)


class CreateGroupRequest(RequestBase):
    type: Literal["createGroup"]
    name: str
    memberIds: List[str] = Field(default_factory=list)


class AddMemberRequest(ConversationRequest):
    type: Literal["addMember"]
    userId: str = Field(..., min_length=1)


class RemoveMemberRequest(ConversationRequest):
    type: Literal["removeMember"]
    userId: str = Field(..., min_length=1)


class LeaveGroupRequest(ConversationRequest):
    type: Literal["leaveGroup"]


class RenameGroupRequest(ConversationRequest):
    type: Literal["renameGroup"]
    name: str


class ChangeAdminRequest(ConversationRequest):
    type: Literal["changeAdmin"]
    newAdminId: str = Field(..., min_length=1)


ClientRequest = Annotated[
    Union[
        JoinRoomsRequest,
        JoinRoomRequest,
        LeaveRoomRequest,
        SendMessageRequest,
        TypingRequest,
        StopTypingRequest,
        MarkDeliveredRequest,
        MarkReadRequest,
        MarkConversationReadRequest,
        SyncMessagesRequest,
        CreateGroupRequest,
        AddMemberRequest,
        RemoveMemberRequest,
        LeaveGroupRequest,
        RenameGroupRequest,
        ChangeAdminRequest,
    ],
    Field(discriminator="type"),
]

# All request classes, used to check dispatch tables for completeness
REQUEST_TYPES = get_args(get_args(ClientRequest)[0])

_request_adapter: TypeAdapter = TypeAdapter(ClientRequest)


def parse_request(data: Any) -> RequestBase:
    """Parse a decoded client frame into its request model.

    Raises:
        RequestValidationError: Not an object, unknown ``type`` or invalid
            fields.
    """
    if not isinstance(data, dict):
        raise RequestValidationError("Request must be a JSON object")
    try:
        return _request_adapter.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "request"
        raise RequestValidationError(f"Invalid request ({location}): {first.get('msg')}") from e


def request_id_of(data: Any) -> Optional[str]:
    """Best-effort requestId from a frame that may have failed to parse."""
    if isinstance(data, dict) and isinstance(data.get("requestId"), str):
        return data["requestId"]
    return None


# =============================================================================
# Server -> client events
# =============================================================================


class EventType(str, Enum):
    """Event types sent to clients."""
    CONNECTED = "connected"
    ACK = "ack"
    ERROR = "error"
    MESSAGE = "message"
    CONVERSATION_UPDATED = "conversationUpdated"
    MESSAGE_DELIVERED = "messageDelivered"
    MESSAGE_READ = "messageRead"
    CONVERSATION_READ = "conversationRead"
    TYPING = "typing"
    STOP_TYPING = "stopTyping"
    USER_ONLINE = "userOnline"
    USER_OFFLINE = "userOffline"
    GROUP_UPDATED = "groupUpdated"
    ADDED_TO_GROUP = "addedToGroup"
    REMOVED_FROM_GROUP = "removedFromGroup"
    SYNCED_MESSAGES = "syncedMessages"


class GroupUpdateType(str, Enum):
    """Mutation tag carried by ``groupUpdated`` events."""
    GROUP_CREATED = "GROUP_CREATED"
    USER_ADDED = "USER_ADDED"
    USER_REMOVED = "USER_REMOVED"
    USER_LEFT = "USER_LEFT"
    GROUP_RENAMED = "GROUP_RENAMED"
    ADMIN_CHANGED = "ADMIN_CHANGED"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def build_event(event_type: EventType, **fields: Any) -> Dict[str, Any]:
    return {"type": event_type.value, **fields}


def connected_event(identity: Identity, conversation_ids: List[str], connection_id: str) -> Dict[str, Any]:
    return build_event(
        EventType.CONNECTED,
        connectionId=connection_id,
        user=identity.model_dump(mode="json"),
        conversationIds=conversation_ids,
    )


def ack_event(request_id: Optional[str], **fields: Any) -> Dict[str, Any]:
    return build_event(EventType.ACK, requestId=request_id, **fields)


def message_event(message: Message) -> Dict[str, Any]:
    return build_event(EventType.MESSAGE, message=message.model_dump(mode="json"))


def conversation_updated_event(conversation: Conversation, last_message: Message) -> Dict[str, Any]:
    """Summary update so clients can refresh counters without refetching history."""
    return build_event(
        EventType.CONVERSATION_UPDATED,
        conversationId=conversation.id,
        lastMessage=last_message.model_dump(mode="json"),
        unread=dict(conversation.unread),
    )


def message_delivered_event(
    conversation_id: str, message_id: str, user_id: str, at: datetime
) -> Dict[str, Any]:
    return build_event(
        EventType.MESSAGE_DELIVERED,
        conversationId=conversation_id,
        messageId=message_id,
        userId=user_id,
        deliveredAt=_iso(at),
    )


def message_read_event(
    conversation_id: str, message_id: str, user_id: str, at: datetime
) -> Dict[str, Any]:
    return build_event(
        EventType.MESSAGE_READ,
        conversationId=conversation_id,
        messageId=message_id,
        userId=user_id,
        readAt=_iso(at),
    )


def conversation_read_event(
    conversation_id: str, user_id: str, message_ids: List[str], unread: int
) -> Dict[str, Any]:
    return build_event(
        EventType.CONVERSATION_READ,
        conversationId=conversation_id,
        userId=user_id,
        messageIds=message_ids,
        unread=unread,
    )


def typing_event(conversation_id: str, user_id: str, display_name: str) -> Dict[str, Any]:
    return build_event(
        EventType.TYPING,
        conversationId=conversation_id,
        userId=user_id,
        displayName=display_name,
        isTyping=True,
    )


def stop_typing_event(conversation_id: str, user_id: str) -> Dict[str, Any]:
    return build_event(EventType.STOP_TYPING, conversationId=conversation_id, userId=user_id)


def user_online_event(user_id: str) -> Dict[str, Any]:
    return build_event(EventType.USER_ONLINE, userId=user_id, isOnline=True)


def user_offline_event(user_id: str, last_seen: datetime) -> Dict[str, Any]:
    return build_event(EventType.USER_OFFLINE, userId=user_id, isOnline=False, lastSeen=_iso(last_seen))


def group_updated_event(
    update_type: GroupUpdateType, conversation: Conversation, actor_id: str, **extra: Any
) -> Dict[str, Any]:
    return build_event(
        EventType.GROUP_UPDATED,
        updateType=update_type.value,
        conversation=conversation.model_dump(mode="json"),
        actorId=actor_id,
        **extra,
    )


def added_to_group_event(conversation: Conversation, added_by: str) -> Dict[str, Any]:
    """Sent only to a newly added member; carries the full snapshot."""
    return build_event(
        EventType.ADDED_TO_GROUP,
        conversation=conversation.model_dump(mode="json"),
        addedBy=added_by,
    )


def removed_from_group_event(conversation_id: str, removed_by: str) -> Dict[str, Any]:
    return build_event(
        EventType.REMOVED_FROM_GROUP,
        conversationId=conversation_id,
        removedBy=removed_by,
    )


def synced_messages_event(
    conversation_id: str, messages: List[Message], has_more: bool, request_id: Optional[str] = None
) -> Dict[str, Any]:
    return build_event(
        EventType.SYNCED_MESSAGES,
        requestId=request_id,
        conversationId=conversation_id,
        messages=[m.model_dump(mode="json") for m in messages],
        hasMore=has_more,
    )

"""Pydantic schemas for the relay's durable records.

These models mirror the rows kept by RelayStore:
    - Identity: a participant's profile and presence fields
    - Conversation: participants, admin, last message and unread counters
    - Message: one text or image message with its receipt sets
    - Receipt: a single delivered/read acknowledgement

Models are serialized with ``model_dump(mode="json")`` before they are put
on the wire, so timestamps travel as ISO 8601 strings.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class MessageKind(str, Enum):
    """Payload kind of a message.

    Attributes:
        TEXT: Plain text body.
        IMAGE: Reference to a stored image object.
    """
    TEXT = "text"
    IMAGE = "image"


class ReceiptKind(str, Enum):
    """Which receipt set a receipt belongs to."""
    DELIVERED = "delivered"
    READ = "read"


class Identity(BaseModel):
    """A participant as seen by the relay."""
    id: str = Field(..., description="Stable user id")
    displayName: str = Field(..., description="Display name")
    avatarUrl: Optional[str] = Field(default=None, description="Avatar reference")
    isOnline: bool = Field(default=False, description="Presence flag")
    lastSeen: Optional[datetime] = Field(default=None, description="Last disconnect time (UTC)")


class Receipt(BaseModel):
    """One entry of a message's delivered-to or read-by set."""
    userId: str
    at: datetime


class Message(BaseModel):
    """A persisted message.

    Attributes:
        id: Unique message identifier.
        conversationId: Conversation the message belongs to.
        senderId: Identity that sent the message.
        kind: text or image.
        text: Text body (text messages only).
        imageUrl: Stored object reference (image messages only).
        seq: Store-wide monotonic sequence; orders messages within a conversation.
        createdAt: Persistence timestamp (UTC).
        deliveredTo: Delivery receipts, in arrival order.
        readBy: Read receipts, in arrival order.
    """
    id: str
    conversationId: str
    senderId: str
    kind: MessageKind = MessageKind.TEXT
    text: Optional[str] = None
    imageUrl: Optional[str] = None
    seq: int
    createdAt: datetime
    deliveredTo: List[Receipt] = Field(default_factory=list)
    readBy: List[Receipt] = Field(default_factory=list)


class Conversation(BaseModel):
    """A one-to-one or group conversation."""
    id: str
    isGroup: bool = False
    name: Optional[str] = None
    adminId: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    lastMessageId: Optional[str] = None
    unread: Dict[str, int] = Field(default_factory=dict)
    createdAt: datetime
    updatedAt: datetime

    def has_participant(self, identity_id: str) -> bool:
        return identity_id in self.participants

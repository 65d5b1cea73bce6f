"""Durable storage for conversations, messages and identities."""

from .schemas import Conversation, Identity, Message, MessageKind, Receipt, ReceiptKind
from .service import RelayStore, utcnow

__all__ = [
    "Conversation",
    "Identity",
    "Message",
    "MessageKind",
    "Receipt",
    "ReceiptKind",
    "RelayStore",
    "utcnow",
]

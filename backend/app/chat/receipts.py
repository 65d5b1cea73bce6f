"""Delivery and read receipts with unread accounting.

Two accounting paths exist and they never touch the same counter in the
same code path:

    - per message: a first-time read appends a receipt and decrements the
      reader's counter by one (floored at zero) if the message was sent
      after the reader joined
    - bulk: ``mark_conversation_read`` appends receipts up to a cutoff and
      sets the counter to the number of unread messages newer than it

Both run under the conversation lock (taken before any message lock), so
a bulk read never interleaves with a per-message read or a send in the
same conversation.

Marks are idempotent. A repeated mark writes nothing and broadcasts
nothing. Senders never receive receipts for their own messages.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from app.store.schemas import Message, ReceiptKind
from app.store.service import RelayStore

from .connections import Connection
from .errors import NotFoundError
from .locks import KeyedLocks
from .manager import RoomManager
from .protocol import conversation_read_event, message_delivered_event, message_read_event

logger = logging.getLogger(__name__)


class ReceiptAggregator:
    def __init__(
        self,
        store: RelayStore,
        rooms: RoomManager,
        conversation_locks: KeyedLocks,
        message_locks: KeyedLocks,
    ) -> None:
        self.store = store
        self.rooms = rooms
        self.conversation_locks = conversation_locks
        self.message_locks = message_locks

    def _load_message(self, conversation_id: str, message_id: str) -> Message:
        message = self.store.get_message(message_id)
        if message.conversationId != conversation_id:
            raise NotFoundError(f"Message {message_id} not found in conversation {conversation_id}")
        return message

    async def mark_delivered(
        self, connection: Connection, conversation_id: str, message_id: str
    ) -> Optional[datetime]:
        """Record that a message reached the identity.

        Returns:
            The receipt timestamp, or None when nothing changed.
        """
        identity_id = connection.identity_id
        async with self.message_locks.hold(message_id):
            self.rooms.ensure_participant(conversation_id, identity_id)
            message = self._load_message(conversation_id, message_id)
            if message.senderId == identity_id:
                return None
            at = self.store.append_receipt(message_id, identity_id, ReceiptKind.DELIVERED)
            if at is None:
                logger.debug(f"[Receipts] {identity_id} already has delivery of {message_id}")
                return None
            self.rooms.broadcast(
                conversation_id,
                message_delivered_event(conversation_id, message_id, identity_id, at),
            )

        logger.info(f"[Receipts] {message_id} delivered to {identity_id}")
        return at

    async def mark_read(
        self, connection: Connection, conversation_id: str, message_id: str
    ) -> Optional[datetime]:
        """Record that the identity read a message.

        A first-time read decrements the identity's unread counter and
        broadcasts ``messageRead``. Repeats are no-ops.

        Returns:
            The receipt timestamp, or None when nothing changed.
        """
        identity_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            self.rooms.ensure_participant(conversation_id, identity_id)
            async with self.message_locks.hold(message_id):
                message = self._load_message(conversation_id, message_id)
                if message.senderId == identity_id:
                    return None
                at = self.store.append_receipt(message_id, identity_id, ReceiptKind.READ)
                if at is None:
                    logger.debug(f"[Receipts] {identity_id} already read {message_id}")
                    return None
                unread = self.store.decrement_unread(conversation_id, identity_id, message.seq)
                self.rooms.broadcast(
                    conversation_id,
                    message_read_event(conversation_id, message_id, identity_id, at),
                )

        logger.info(f"[Receipts] {message_id} read by {identity_id} (unread now {unread})")
        return at

    async def mark_conversation_read(
        self, connection: Connection, conversation_id: str
    ) -> Tuple[List[str], int]:
        """Mark every message up to the current latest one as read.

        The latest ``seq`` is snapshotted under the conversation lock and
        used as the cutoff, so the counter ends at the number of unread
        messages newer than the cutoff (zero while sends share the lock).
        A single ``conversationRead`` is broadcast unless nothing changed.

        Returns:
            Tuple of (newly read message ids, resulting unread count).
        """
        identity_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            self.rooms.ensure_participant(conversation_id, identity_id)
            before = self.store.get_unread(conversation_id, identity_id)
            cutoff = self.store.latest_seq(conversation_id)
            message_ids, unread = self.store.mark_read_through(conversation_id, identity_id, cutoff)
            if not message_ids and before == unread:
                logger.debug(f"[Receipts] {conversation_id} already read by {identity_id}")
                return message_ids, unread
            self.rooms.broadcast(
                conversation_id,
                conversation_read_event(conversation_id, identity_id, message_ids, unread),
            )

        logger.info(
            f"[Receipts] {identity_id} read {len(message_ids)} messages in {conversation_id} "
            f"through seq {cutoff}"
        )
        return message_ids, unread

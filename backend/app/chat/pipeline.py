"""Message fan-out pipeline.

A send is validated, persisted, and only then broadcast:

    1. Validate the payload (text xor image reference)
    2. Check the sender against the persisted participant list
    3. Under the conversation lock: persist the message, move the
       last-message pointer and increment every other participant's unread
       counter in one store transaction
    4. Broadcast ``message`` and then ``conversationUpdated`` to the room

If persistence fails nothing is broadcast and the error propagates to the
dispatcher, which reports it to the sender only.

Retries carrying the same ``clientMessageId`` are recognized through a
per-conversation LRU cache and resolved to the originally persisted message.
"""
import logging
from collections import OrderedDict
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from app.store.schemas import Message
from app.store.service import RelayStore

from .connections import Connection
from .errors import PersistenceError, RequestValidationError
from .locks import KeyedLocks
from .manager import RoomManager
from .protocol import conversation_updated_event, message_event

logger = logging.getLogger(__name__)

# Maximum number of client message ids remembered per conversation
MESSAGE_DEDUP_CACHE_SIZE = 1000

# Default upper bound for message text
MAX_TEXT_LENGTH = 5000

_IMAGE_SCHEMES = ("http", "https")


def normalize_payload(
    text: Optional[str], image_url: Optional[str], max_text_length: int = MAX_TEXT_LENGTH
) -> Tuple[Optional[str], Optional[str]]:
    """Validate a send payload.

    Returns:
        Tuple of (stripped text or None, image url or None); exactly one
        is set.

    Raises:
        RequestValidationError: Empty payload, both fields set, text too
            long, or an image reference that is not an http(s) URL.
    """
    if text is not None:
        text = text.strip() or None
    if image_url is not None:
        image_url = image_url.strip() or None

    if text is None and image_url is None:
        raise RequestValidationError("Message must contain text or an image")
    if text is not None and image_url is not None:
        raise RequestValidationError("Message must contain either text or an image, not both")

    if text is not None and len(text) > max_text_length:
        raise RequestValidationError(f"Message text exceeds {max_text_length} characters")

    if image_url is not None:
        parsed = urlparse(image_url)
        if parsed.scheme not in _IMAGE_SCHEMES or not parsed.netloc:
            raise RequestValidationError("Image reference must be an http(s) URL")

    return text, image_url


class MessagePipeline:
    """Persists messages and fans them out to conversation rooms."""

    def __init__(
        self,
        store: RelayStore,
        rooms: RoomManager,
        conversation_locks: KeyedLocks,
        max_text_length: int = MAX_TEXT_LENGTH,
        dedup_cache_size: int = MESSAGE_DEDUP_CACHE_SIZE,
    ) -> None:
        self.store = store
        self.rooms = rooms
        self.conversation_locks = conversation_locks
        self.max_text_length = max_text_length
        self.dedup_cache_size = dedup_cache_size

        # Message deduplication: conversation_id -> OrderedDict of
        # "sender:clientMessageId" -> persisted message id (LRU cache)
        self.seen_client_ids: Dict[str, OrderedDict] = {}

    async def send(
        self,
        connection: Connection,
        conversation_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Tuple[Message, bool]:
        """Persist and broadcast one message.

        Args:
            connection: The sending connection.
            conversation_id: Target conversation.
            text: Message text.
            image_url: Stored-object reference for an image message.
            client_message_id: Optional de-duplication key.

        Returns:
            Tuple of (message, duplicate). ``duplicate`` is True when the
            request was a retry of an already persisted message; nothing is
            broadcast in that case.
        """
        text, image_url = normalize_payload(text, image_url, self.max_text_length)
        sender_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            self.rooms.ensure_participant(conversation_id, sender_id)
            original = self._lookup_duplicate(conversation_id, sender_id, client_message_id)
            if original is not None:
                logger.info(
                    f"[Pipeline] Duplicate send {client_message_id} from {sender_id} "
                    f"resolved to {original.id}"
                )
                return original, True

            try:
                message, conversation = self.store.persist_message(
                    conversation_id, sender_id, text=text, image_url=image_url
                )
            except PersistenceError:
                logger.error(
                    f"[Pipeline] Send from {sender_id} to {conversation_id} failed; nothing broadcast"
                )
                raise

            self._remember(conversation_id, sender_id, client_message_id, message.id)

            delivered = self.rooms.broadcast(conversation_id, message_event(message))
            self.rooms.broadcast(
                conversation_id, conversation_updated_event(conversation, message)
            )

        logger.info(
            f"[Pipeline] Message {message.id} (seq {message.seq}) from {sender_id} "
            f"in {conversation_id} fanned out to {delivered} connections"
        )
        return message, False

    def _lookup_duplicate(
        self, conversation_id: str, sender_id: str, client_message_id: Optional[str]
    ) -> Optional[Message]:
        if not client_message_id:
            return None  # No key means we can't dedupe
        cache = self.seen_client_ids.get(conversation_id)
        if cache is None:
            return None
        key = f"{sender_id}:{client_message_id}"
        message_id = cache.get(key)
        if message_id is None:
            return None
        # Move to end (most recently used)
        cache.move_to_end(key)
        return self.store.find_message(message_id)

    def _remember(
        self, conversation_id: str, sender_id: str, client_message_id: Optional[str], message_id: str
    ) -> None:
        if not client_message_id:
            return
        cache = self.seen_client_ids.setdefault(conversation_id, OrderedDict())
        cache[f"{sender_id}:{client_message_id}"] = message_id

        # Evict oldest if cache is full
        while len(cache) > self.dedup_cache_size:
            cache.popitem(last=False)

    def forget_conversation(self, conversation_id: str) -> None:
        self.seen_client_ids.pop(conversation_id, None)

"""DuckDB-backed storage for conversations, messages and identities.

This module provides the durable state the real-time relay works against.
The service implements the singleton pattern so a process holds a single
database connection.

Database Schema:
    identities:                 id, display_name, avatar_url, is_online, last_seen
    conversations:              id, is_group, name, admin_id, last_message_id,
                                created_at, updated_at
    conversation_participants:  conversation_id, identity_id, join_order, joined_at,
                                joined_seq
    unread_counts:              conversation_id, identity_id, unread_count
    messages:                   id, conversation_id, sender_id, kind, body_text,
                                image_url, seq, created_at
    message_receipts:           message_id, identity_id, kind, receipt_at

Counter updates are single SQL statements (``unread_count + 1``,
``GREATEST(unread_count - 1, 0)``) so concurrent writers never lose an
update. Multi-row writes run inside one transaction and are rolled back as
a whole on failure.

Thread Safety:
    The DuckDB connection is NOT thread-safe. All calls are made from the
    event loop thread; per-conversation and per-message serialization is
    done by the callers (see app.chat.locks).

Usage:
    store = RelayStore.get_instance(db_path=":memory:")
    conversation = store.create_conversation(["alice", "bob"])
    message, conversation = store.persist_message(conversation.id, "alice", text="hi")
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import duckdb

from app.chat.errors import (
    NotFoundError,
    PersistenceError,
    RequestValidationError,
    StateConflictError,
)

from .schemas import Conversation, Identity, Message, MessageKind, Receipt, ReceiptKind

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB TIMESTAMP columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _persistent(method):
    """Translate DuckDB failures into PersistenceError."""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except duckdb.Error as e:
            logger.error(f"[Store] {method.__name__} failed: {e}")
            raise PersistenceError() from e
    return wrapper


class RelayStore:
    """Singleton store for relay state in DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["RelayStore"] = None
    _db_path: str = "relay.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "RelayStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create sequences, tables and indexes. Idempotent."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("CREATE SEQUENCE IF NOT EXISTS participants_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS identities (
                id VARCHAR PRIMARY KEY,
                display_name VARCHAR NOT NULL,
                avatar_url VARCHAR,
                is_online BOOLEAN NOT NULL DEFAULT FALSE,
                last_seen TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id VARCHAR PRIMARY KEY,
                is_group BOOLEAN NOT NULL,
                name VARCHAR,
                admin_id VARCHAR,
                last_message_id VARCHAR,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversation_participants (
                conversation_id VARCHAR NOT NULL,
                identity_id VARCHAR NOT NULL,
                join_order BIGINT NOT NULL DEFAULT nextval('participants_seq'),
                joined_at TIMESTAMP NOT NULL,
                joined_seq BIGINT NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS unread_counts (
                conversation_id VARCHAR NOT NULL,
                identity_id VARCHAR NOT NULL,
                unread_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                conversation_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                body_text VARCHAR,
                image_url VARCHAR,
                seq BIGINT NOT NULL DEFAULT nextval('messages_seq'),
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS message_receipts (
                message_id VARCHAR NOT NULL,
                identity_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                receipt_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_receipts_message ON message_receipts(message_id)"
        )

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block in one transaction; roll back and raise PersistenceError on failure."""
        conn = self._get_connection()
        conn.begin()
        try:
            yield conn
            conn.commit()
        except duckdb.Error as e:
            conn.rollback()
            logger.error(f"[Store] Transaction rolled back: {e}")
            raise PersistenceError() from e
        except Exception:
            conn.rollback()
            raise

    # =========================================================================
    # Identities
    # =========================================================================

    @_persistent
    def create_identity(
        self, identity_id: str, display_name: str, avatar_url: Optional[str] = None
    ) -> Identity:
        """Register an identity (called by the account collaborator)."""
        conn = self._get_connection()
        if self.identity_exists(identity_id):
            raise StateConflictError(f"Identity {identity_id} already exists")
        conn.execute(
            "INSERT INTO identities (id, display_name, avatar_url) VALUES (?, ?, ?)",
            [identity_id, display_name, avatar_url],
        )
        return Identity(id=identity_id, displayName=display_name, avatarUrl=avatar_url)

    @_persistent
    def get_identity(self, identity_id: str) -> Identity:
        row = self._get_connection().execute(
            """
            SELECT id, display_name, avatar_url, is_online, last_seen
            FROM identities WHERE id = ?
            """,
            [identity_id],
        ).fetchone()
        if row is None:
            raise NotFoundError(f"User {identity_id} not found")
        return Identity(
            id=row[0], displayName=row[1], avatarUrl=row[2], isOnline=row[3], lastSeen=row[4]
        )

    @_persistent
    def identity_exists(self, identity_id: str) -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM identities WHERE id = ?", [identity_id]
        ).fetchone()
        return row is not None

    @_persistent
    def update_profile(
        self,
        identity_id: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Identity:
        """Update display fields (profile collaborator)."""
        conn = self._get_connection()
        if display_name is not None:
            conn.execute(
                "UPDATE identities SET display_name = ? WHERE id = ?", [display_name, identity_id]
            )
        if avatar_url is not None:
            conn.execute(
                "UPDATE identities SET avatar_url = ? WHERE id = ?", [avatar_url, identity_id]
            )
        return self.get_identity(identity_id)

    @_persistent
    def set_presence(
        self, identity_id: str, is_online: bool, last_seen: Optional[datetime] = None
    ) -> None:
        """Write the presence flag, and lastSeen when given."""
        conn = self._get_connection()
        if last_seen is None:
            conn.execute(
                "UPDATE identities SET is_online = ? WHERE id = ?", [is_online, identity_id]
            )
        else:
            conn.execute(
                "UPDATE identities SET is_online = ?, last_seen = ? WHERE id = ?",
                [is_online, last_seen, identity_id],
            )

    # =========================================================================
    # Conversations
    # =========================================================================

    def create_conversation(
        self,
        participants: Sequence[str],
        is_group: bool = False,
        name: Optional[str] = None,
        admin_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation with a zeroed unread counter per participant.

        Raises:
            RequestValidationError: Fewer than two distinct participants, a
                one-to-one conversation with more than two, or a group whose
                admin is not a participant.
            NotFoundError: A participant identity does not exist.
        """
        members: List[str] = list(dict.fromkeys(participants))
        if len(members) < 2:
            raise RequestValidationError("A conversation needs at least two participants")
        if not is_group and len(members) != 2:
            raise RequestValidationError("A one-to-one conversation has exactly two participants")
        if is_group:
            if admin_id is None:
                admin_id = members[0]
            if admin_id not in members:
                raise RequestValidationError("Group admin must be a participant")
        else:
            name = None
            admin_id = None
        for member in members:
            if not self.identity_exists(member):
                raise NotFoundError(f"User {member} not found")

        conversation_id = conversation_id or str(uuid.uuid4())
        now = utcnow()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, is_group, name, admin_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [conversation_id, is_group, name, admin_id, now, now],
            )
            for member in members:
                conn.execute(
                    """
                    INSERT INTO conversation_participants (conversation_id, identity_id, joined_at)
                    VALUES (?, ?, ?)
                    """,
                    [conversation_id, member, now],
                )
                conn.execute(
                    "INSERT INTO unread_counts (conversation_id, identity_id) VALUES (?, ?)",
                    [conversation_id, member],
                )
        logger.info(
            f"[Store] Created {'group' if is_group else 'direct'} conversation "
            f"{conversation_id} with {len(members)} participants"
        )
        return self.get_conversation(conversation_id)

    @_persistent
    def find_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Load a conversation, or None if it does not exist."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT id, is_group, name, admin_id, last_message_id, created_at, updated_at
            FROM conversations WHERE id = ?
            """,
            [conversation_id],
        ).fetchone()
        if row is None:
            return None
        participants = [
            r[0] for r in conn.execute(
                """
                SELECT identity_id FROM conversation_participants
                WHERE conversation_id = ? ORDER BY join_order
                """,
                [conversation_id],
            ).fetchall()
        ]
        return Conversation(
            id=row[0],
            isGroup=row[1],
            name=row[2],
            adminId=row[3],
            lastMessageId=row[4],
            createdAt=row[5],
            updatedAt=row[6],
            participants=participants,
            unread=self.get_unread_map(conversation_id),
        )

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Load a conversation.

        Raises:
            NotFoundError: If the conversation does not exist.
        """
        conversation = self.find_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    @_persistent
    def is_participant(self, conversation_id: str, identity_id: str) -> bool:
        """Check membership against the persisted participant list."""
        row = self._get_connection().execute(
            """
            SELECT 1 FROM conversation_participants
            WHERE conversation_id = ? AND identity_id = ?
            """,
            [conversation_id, identity_id],
        ).fetchone()
        return row is not None

    @_persistent
    def list_conversation_ids(self, identity_id: str) -> List[str]:
        """All conversations the identity currently participates in."""
        rows = self._get_connection().execute(
            """
            SELECT p.conversation_id
            FROM conversation_participants p
            JOIN conversations c ON c.id = p.conversation_id
            WHERE p.identity_id = ?
            ORDER BY c.updated_at DESC
            """,
            [identity_id],
        ).fetchall()
        return [r[0] for r in rows]

    @_persistent
    def get_unread_map(self, conversation_id: str) -> Dict[str, int]:
        rows = self._get_connection().execute(
            "SELECT identity_id, unread_count FROM unread_counts WHERE conversation_id = ?",
            [conversation_id],
        ).fetchall()
        return {r[0]: r[1] for r in rows}

    @_persistent
    def get_unread(self, conversation_id: str, identity_id: str) -> Optional[int]:
        row = self._get_connection().execute(
            """
            SELECT unread_count FROM unread_counts
            WHERE conversation_id = ? AND identity_id = ?
            """,
            [conversation_id, identity_id],
        ).fetchone()
        return row[0] if row else None

    # =========================================================================
    # Group mutations
    # =========================================================================

    def add_participant(self, conversation_id: str, identity_id: str) -> Conversation:
        """Add a participant whose unread counter starts after the current last message.

        ``joined_seq`` records that message seq; older messages were never
        counted for the newcomer.
        """
        now = utcnow()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversation_participants
                    (conversation_id, identity_id, joined_at, joined_seq)
                SELECT ?::VARCHAR, ?::VARCHAR, ?::TIMESTAMP, COALESCE(MAX(seq), 0)
                FROM messages WHERE conversation_id = ?
                """,
                [conversation_id, identity_id, now, conversation_id],
            )
            conn.execute(
                "INSERT INTO unread_counts (conversation_id, identity_id) VALUES (?, ?)",
                [conversation_id, identity_id],
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?", [now, conversation_id]
            )
        return self.get_conversation(conversation_id)

    def remove_participant(
        self, conversation_id: str, identity_id: str, new_admin_id: Optional[str] = None
    ) -> Conversation:
        """Remove a participant and its unread entry, optionally moving admin first.

        Admin transfer and removal commit together so admin is never left
        pointing at a non-participant.
        """
        now = utcnow()
        with self._transaction() as conn:
            if new_admin_id is not None:
                conn.execute(
                    "UPDATE conversations SET admin_id = ? WHERE id = ?",
                    [new_admin_id, conversation_id],
                )
            conn.execute(
                """
                DELETE FROM conversation_participants
                WHERE conversation_id = ? AND identity_id = ?
                """,
                [conversation_id, identity_id],
            )
            conn.execute(
                "DELETE FROM unread_counts WHERE conversation_id = ? AND identity_id = ?",
                [conversation_id, identity_id],
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?", [now, conversation_id]
            )
        return self.get_conversation(conversation_id)

    def rename_conversation(self, conversation_id: str, name: str) -> Conversation:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE conversations SET name = ?, updated_at = ? WHERE id = ?",
                [name, utcnow(), conversation_id],
            )
        return self.get_conversation(conversation_id)

    def set_admin(self, conversation_id: str, admin_id: str) -> Conversation:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE conversations SET admin_id = ?, updated_at = ? WHERE id = ?",
                [admin_id, utcnow(), conversation_id],
            )
        return self.get_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation's structural rows. Messages are kept."""
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM conversation_participants WHERE conversation_id = ?",
                [conversation_id],
            )
            conn.execute(
                "DELETE FROM unread_counts WHERE conversation_id = ?", [conversation_id]
            )
            conn.execute("DELETE FROM conversations WHERE id = ?", [conversation_id])
        logger.info(f"[Store] Deleted conversation {conversation_id}")

    # =========================================================================
    # Messages
    # =========================================================================

    def persist_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Tuple[Message, Conversation]:
        """Persist a message and apply its conversation side effects atomically.

        In one transaction: insert the message, point the conversation's last
        message at it, and increment every other participant's unread counter
        by exactly one.

        Returns:
            Tuple of (message, refreshed conversation).

        Raises:
            PersistenceError: Nothing was written.
        """
        kind = MessageKind.IMAGE if image_url else MessageKind.TEXT
        message_id = str(uuid.uuid4())
        now = utcnow()
        with self._transaction() as conn:
            seq = conn.execute(
                """
                INSERT INTO messages (id, conversation_id, sender_id, kind, body_text, image_url, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING seq
                """,
                [message_id, conversation_id, sender_id, kind.value, text, image_url, now],
            ).fetchone()[0]
            conn.execute(
                "UPDATE conversations SET last_message_id = ?, updated_at = ? WHERE id = ?",
                [message_id, now, conversation_id],
            )
            conn.execute(
                """
                UPDATE unread_counts SET unread_count = unread_count + 1
                WHERE conversation_id = ? AND identity_id <> ?
                """,
                [conversation_id, sender_id],
            )
        message = Message(
            id=message_id,
            conversationId=conversation_id,
            senderId=sender_id,
            kind=kind,
            text=text,
            imageUrl=image_url,
            seq=seq,
            createdAt=now,
        )
        return message, self.get_conversation(conversation_id)

    @_persistent
    def find_message(self, message_id: str) -> Optional[Message]:
        row = self._get_connection().execute(
            """
            SELECT id, conversation_id, sender_id, kind, body_text, image_url, seq, created_at
            FROM messages WHERE id = ?
            """,
            [message_id],
        ).fetchone()
        if row is None:
            return None
        return self._with_receipts([row])[0]

    def get_message(self, message_id: str) -> Message:
        """Load a message with its receipt sets.

        Raises:
            NotFoundError: If the message does not exist.
        """
        message = self.find_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    @_persistent
    def latest_seq(self, conversation_id: str) -> int:
        """Highest message seq in the conversation, 0 when empty."""
        row = self._get_connection().execute(
            "SELECT COALESCE(MAX(seq), 0) FROM messages WHERE conversation_id = ?",
            [conversation_id],
        ).fetchone()
        return row[0]

    @_persistent
    def messages_since(
        self, conversation_id: str, after_seq: int = 0, limit: int = 100
    ) -> List[Message]:
        """Messages with seq > after_seq, oldest first, for reconnect recovery."""
        rows = self._get_connection().execute(
            """
            SELECT id, conversation_id, sender_id, kind, body_text, image_url, seq, created_at
            FROM messages
            WHERE conversation_id = ? AND seq > ?
            ORDER BY seq
            LIMIT ?
            """,
            [conversation_id, after_seq, limit],
        ).fetchall()
        return self._with_receipts(rows)

    def _with_receipts(self, rows: List[tuple]) -> List[Message]:
        if not rows:
            return []
        ids = [r[0] for r in rows]
        placeholders = ", ".join("?" for _ in ids)
        receipt_rows = self._get_connection().execute(
            f"""
            SELECT message_id, identity_id, kind, receipt_at
            FROM message_receipts
            WHERE message_id IN ({placeholders})
            ORDER BY receipt_at, rowid
            """,
            ids,
        ).fetchall()
        delivered: Dict[str, List[Receipt]] = {}
        read: Dict[str, List[Receipt]] = {}
        for message_id, identity_id, kind, at in receipt_rows:
            target = read if kind == ReceiptKind.READ.value else delivered
            target.setdefault(message_id, []).append(Receipt(userId=identity_id, at=at))
        return [
            Message(
                id=r[0],
                conversationId=r[1],
                senderId=r[2],
                kind=MessageKind(r[3]),
                text=r[4],
                imageUrl=r[5],
                seq=r[6],
                createdAt=r[7],
                deliveredTo=delivered.get(r[0], []),
                readBy=read.get(r[0], []),
            )
            for r in rows
        ]

    # =========================================================================
    # Receipts and unread accounting
    # =========================================================================

    @_persistent
    def append_receipt(
        self, message_id: str, identity_id: str, kind: ReceiptKind
    ) -> Optional[datetime]:
        """Append a receipt unless the identity is already in that set.

        Returns:
            The receipt timestamp when a row was written, None when the
            identity was already present.
        """
        now = utcnow()
        inserted = self._get_connection().execute(
            """
            INSERT INTO message_receipts (message_id, identity_id, kind, receipt_at)
            SELECT ?::VARCHAR, ?::VARCHAR, ?::VARCHAR, ?::TIMESTAMP
            WHERE NOT EXISTS (
                SELECT 1 FROM message_receipts
                WHERE message_id = ? AND identity_id = ? AND kind = ?
            )
            RETURNING message_id
            """,
            [message_id, identity_id, kind.value, now, message_id, identity_id, kind.value],
        ).fetchall()
        return now if inserted else None

    @_persistent
    def decrement_unread(
        self, conversation_id: str, identity_id: str, message_seq: int
    ) -> Optional[int]:
        """Atomically decrement one unread counter for a read of ``message_seq``.

        Only messages sent after the identity joined were counted for it, so
        the counter is left alone for older ones. Floored at zero.

        Returns:
            The resulting count, or None if the identity has no counter.
        """
        row = self._get_connection().execute(
            """
            UPDATE unread_counts SET unread_count = GREATEST(unread_count - 1, 0)
            WHERE conversation_id = ? AND identity_id = ?
              AND ? > (
                  SELECT joined_seq FROM conversation_participants
                  WHERE conversation_id = ? AND identity_id = ?
              )
            RETURNING unread_count
            """,
            [conversation_id, identity_id, message_seq, conversation_id, identity_id],
        ).fetchone()
        if row is None:
            return self.get_unread(conversation_id, identity_id)
        return row[0]

    def mark_read_through(
        self, conversation_id: str, identity_id: str, cutoff_seq: int
    ) -> Tuple[List[str], int]:
        """Bulk-read every message up to ``cutoff_seq`` for one identity.

        Appends read receipts for messages with seq <= cutoff_seq that were
        sent by someone else and not yet read by the identity, then sets the
        identity's counter to the number of such messages newer than the
        cutoff.

        Returns:
            Tuple of (newly read message ids, resulting unread count).
        """
        now = utcnow()
        with self._transaction() as conn:
            marked = conn.execute(
                """
                INSERT INTO message_receipts (message_id, identity_id, kind, receipt_at)
                SELECT m.id, ?::VARCHAR, ?::VARCHAR, ?::TIMESTAMP
                FROM messages m
                WHERE m.conversation_id = ? AND m.seq <= ? AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_receipts r
                      WHERE r.message_id = m.id AND r.identity_id = ? AND r.kind = ?
                  )
                RETURNING message_id
                """,
                [
                    identity_id, ReceiptKind.READ.value, now,
                    conversation_id, cutoff_seq, identity_id,
                    identity_id, ReceiptKind.READ.value,
                ],
            ).fetchall()
            remaining = conn.execute(
                """
                SELECT COUNT(*) FROM messages m
                WHERE m.conversation_id = ? AND m.seq > ? AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_receipts r
                      WHERE r.message_id = m.id AND r.identity_id = ? AND r.kind = ?
                  )
                """,
                [conversation_id, cutoff_seq, identity_id, identity_id, ReceiptKind.READ.value],
            ).fetchone()[0]
            conn.execute(
                """
                UPDATE unread_counts SET unread_count = ?
                WHERE conversation_id = ? AND identity_id = ?
                """,
                [remaining, conversation_id, identity_id],
            )
        return [r[0] for r in marked], remaining

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

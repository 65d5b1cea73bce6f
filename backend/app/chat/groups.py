"""Group conversation mutations and their notifications.

Participants and admin are the only mutable structure of a group. Every
mutation is serialized on the conversation lock and follows the same
order:

    1. Validate against the persisted conversation (requester is admin,
       target state is legal)
    2. Persist the change in one store transaction
    3. Correct room membership (join added identities' connections, pull
       removed identities' connections)
    4. Notify: ``groupUpdated`` to the room, ``addedToGroup`` or
       ``removedFromGroup`` to the affected identity's connections

A failure in steps 1-2 leaves participants, admin and rooms untouched.
"""
import logging
from typing import List, Optional

from app.store.schemas import Conversation
from app.store.service import RelayStore

from .connections import Connection, ConnectionRegistry
from .errors import (
    AuthorizationError,
    NotFoundError,
    RequestValidationError,
    StateConflictError,
)
from .locks import KeyedLocks
from .manager import RoomManager
from .protocol import (
    GroupUpdateType,
    added_to_group_event,
    group_updated_event,
    removed_from_group_event,
)

logger = logging.getLogger(__name__)

# Minimum number of members a creator must invite
MIN_INVITED_MEMBERS = 2

MAX_GROUP_NAME_LENGTH = 100


class GroupMutationBroadcaster:
    """Applies admin-gated group transitions and keeps rooms in step."""

    def __init__(
        self,
        store: RelayStore,
        rooms: RoomManager,
        registry: ConnectionRegistry,
        conversation_locks: KeyedLocks,
        max_name_length: int = MAX_GROUP_NAME_LENGTH,
    ) -> None:
        self.store = store
        self.rooms = rooms
        self.registry = registry
        self.conversation_locks = conversation_locks
        self.max_name_length = max_name_length

    # =========================================================================
    # Validation helpers
    # =========================================================================

    def _clean_name(self, name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise RequestValidationError("Group name is required")
        if len(name) > self.max_name_length:
            raise RequestValidationError(f"Group name exceeds {self.max_name_length} characters")
        return name

    def _load_group(self, conversation_id: str, requester_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if not conversation.has_participant(requester_id):
            raise AuthorizationError(f"Not a participant of conversation {conversation_id}")
        if not conversation.isGroup:
            raise RequestValidationError("Operation is only valid for group conversations")
        return conversation

    def _require_admin(self, conversation: Conversation, requester_id: str, action: str) -> None:
        if conversation.adminId != requester_id:
            logger.warning(
                f"[Groups] {requester_id} tried to {action} in {conversation.id} without being admin"
            )
            raise AuthorizationError(f"Only the group admin can {action}")

    def _notify(
        self,
        conversation: Conversation,
        update_type: GroupUpdateType,
        actor_id: str,
        **extra,
    ) -> None:
        self.rooms.broadcast(
            conversation.id, group_updated_event(update_type, conversation, actor_id, **extra)
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    async def create_group(
        self, connection: Connection, name: str, member_ids: List[str]
    ) -> Conversation:
        """Create a group with the requester as admin.

        Every participant's live connections are joined to the new room and
        receive ``addedToGroup``; the room then gets ``GROUP_CREATED``.
        """
        creator_id = connection.identity_id
        name = self._clean_name(name)
        invited = [m for m in dict.fromkeys(member_ids) if m != creator_id]
        if len(invited) < MIN_INVITED_MEMBERS:
            raise RequestValidationError(
                f"A group needs at least {MIN_INVITED_MEMBERS} other members"
            )

        conversation = self.store.create_conversation(
            [creator_id] + invited, is_group=True, name=name, admin_id=creator_id
        )
        async with self.conversation_locks.hold(conversation.id):
            for participant in conversation.participants:
                self.rooms.join_identity(participant, conversation.id)
                self.registry.send_to_identity(
                    participant, added_to_group_event(conversation, creator_id)
                )
            self._notify(conversation, GroupUpdateType.GROUP_CREATED, creator_id)

        logger.info(
            f"[Groups] {creator_id} created group {conversation.id} "
            f"with {len(conversation.participants)} participants"
        )
        return conversation

    async def add_member(
        self, connection: Connection, conversation_id: str, user_id: str
    ) -> Conversation:
        actor_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            conversation = self._load_group(conversation_id, actor_id)
            self._require_admin(conversation, actor_id, "add members")
            if conversation.has_participant(user_id):
                raise StateConflictError(f"User {user_id} is already a participant")
            if not self.store.identity_exists(user_id):
                raise NotFoundError(f"User {user_id} not found")

            conversation = self.store.add_participant(conversation_id, user_id)

            # Join before notifying so the new member sees subsequent events
            self.rooms.join_identity(user_id, conversation_id)
            self._notify(conversation, GroupUpdateType.USER_ADDED, actor_id, userId=user_id)
            self.registry.send_to_identity(user_id, added_to_group_event(conversation, actor_id))

        logger.info(f"[Groups] {actor_id} added {user_id} to {conversation_id}")
        return conversation

    async def remove_member(
        self, connection: Connection, conversation_id: str, user_id: str
    ) -> Conversation:
        actor_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            conversation = self._load_group(conversation_id, actor_id)
            self._require_admin(conversation, actor_id, "remove members")
            if user_id == conversation.adminId:
                raise StateConflictError("The group admin cannot be removed")
            if not conversation.has_participant(user_id):
                raise StateConflictError(f"User {user_id} is not a participant")

            conversation = self.store.remove_participant(conversation_id, user_id)

            self.rooms.leave_identity(user_id, conversation_id)
            self._notify(conversation, GroupUpdateType.USER_REMOVED, actor_id, userId=user_id)
            self.registry.send_to_identity(
                user_id, removed_from_group_event(conversation_id, actor_id)
            )

        logger.info(f"[Groups] {actor_id} removed {user_id} from {conversation_id}")
        return conversation

    async def leave_group(
        self, connection: Connection, conversation_id: str
    ) -> Optional[Conversation]:
        """Remove the requester from a group.

        An admin who leaves hands admin to the earliest-joined remaining
        participant. The last participant leaving deletes the conversation.

        Returns:
            The updated conversation, or None if it was deleted.
        """
        identity_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            conversation = self._load_group(conversation_id, identity_id)
            remaining = [p for p in conversation.participants if p != identity_id]

            if not remaining:
                self.store.delete_conversation(conversation_id)
                self.rooms.close_room(conversation_id)
                self.registry.send_to_identity(
                    identity_id, removed_from_group_event(conversation_id, identity_id)
                )
                logger.info(f"[Groups] Last member {identity_id} left; deleted {conversation_id}")
                return None

            new_admin_id = remaining[0] if conversation.adminId == identity_id else None
            conversation = self.store.remove_participant(
                conversation_id, identity_id, new_admin_id=new_admin_id
            )

            self.rooms.leave_identity(identity_id, conversation_id)
            extra = {"userId": identity_id}
            if new_admin_id is not None:
                extra["newAdminId"] = new_admin_id
            self._notify(conversation, GroupUpdateType.USER_LEFT, identity_id, **extra)
            self.registry.send_to_identity(
                identity_id, removed_from_group_event(conversation_id, identity_id)
            )

        if new_admin_id is not None:
            logger.info(f"[Groups] Admin of {conversation_id} passed to {new_admin_id}")
        logger.info(f"[Groups] {identity_id} left {conversation_id}")
        return conversation

    async def rename_group(
        self, connection: Connection, conversation_id: str, name: str
    ) -> Conversation:
        actor_id = connection.identity_id
        name = self._clean_name(name)
        async with self.conversation_locks.hold(conversation_id):
            conversation = self._load_group(conversation_id, actor_id)
            self._require_admin(conversation, actor_id, "rename the group")
            conversation = self.store.rename_conversation(conversation_id, name)
            self._notify(conversation, GroupUpdateType.GROUP_RENAMED, actor_id, name=name)

        logger.info(f"[Groups] {actor_id} renamed {conversation_id} to {name!r}")
        return conversation

    async def change_admin(
        self, connection: Connection, conversation_id: str, new_admin_id: str
    ) -> Conversation:
        actor_id = connection.identity_id
        async with self.conversation_locks.hold(conversation_id):
            conversation = self._load_group(conversation_id, actor_id)
            self._require_admin(conversation, actor_id, "change the admin")
            if not conversation.has_participant(new_admin_id):
                raise StateConflictError(f"New admin {new_admin_id} is not a participant")

            previous_admin_id = conversation.adminId
            conversation = self.store.set_admin(conversation_id, new_admin_id)
            self._notify(
                conversation,
                GroupUpdateType.ADMIN_CHANGED,
                actor_id,
                newAdminId=new_admin_id,
                previousAdminId=previous_admin_id,
            )

        logger.info(f"[Groups] Admin of {conversation_id} changed {previous_admin_id} -> {new_admin_id}")
        return conversation

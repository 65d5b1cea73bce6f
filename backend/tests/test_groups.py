"""Tests for group mutations and their notifications."""
import pytest

from app.chat.errors import (
    AuthorizationError,
    NotFoundError,
    RequestValidationError,
    StateConflictError,
)
from conftest import event_types


@pytest.fixture
def members(connect, group):
    """Alice (admin), Bob and Carol connected and joined; Dave connected."""
    return {name: connect(name) for name in ("alice", "bob", "carol", "dave")}


class TestCreateGroup:
    @pytest.mark.asyncio
    async def test_creator_becomes_admin(self, engine, store, connect):
        alice = connect("alice")
        bob = connect("bob")
        carol = connect("carol")

        conversation = await engine.groups.create_group(alice, "  Weekend  ", ["bob", "carol"])

        assert conversation.adminId == "alice"
        assert conversation.name == "Weekend"
        assert conversation.participants == ["alice", "bob", "carol"]
        assert conversation.unread == {"alice": 0, "bob": 0, "carol": 0}
        for connection in (alice, bob, carol):
            assert engine.rooms.is_member(connection.id, conversation.id)
            assert event_types(connection.drain()) == ["addedToGroup", "groupUpdated"]

    @pytest.mark.asyncio
    async def test_needs_two_other_members(self, engine, connect):
        alice = connect("alice")
        with pytest.raises(RequestValidationError):
            await engine.groups.create_group(alice, "Pair", ["bob", "alice"])

    @pytest.mark.asyncio
    async def test_unknown_member(self, engine, connect):
        alice = connect("alice")
        with pytest.raises(NotFoundError):
            await engine.groups.create_group(alice, "Ghosts", ["bob", "ghost"])

    @pytest.mark.asyncio
    async def test_name_required(self, engine, connect):
        alice = connect("alice")
        with pytest.raises(RequestValidationError):
            await engine.groups.create_group(alice, "   ", ["bob", "carol"])


class TestRemoveMember:
    @pytest.mark.asyncio
    async def test_scenario_admin_removes_member(self, engine, store, group, members):
        """A removes B from [A, B, C]."""
        conversation = await engine.groups.remove_member(members["alice"], group.id, "bob")

        assert conversation.participants == ["alice", "carol"]
        assert "bob" not in store.get_conversation(group.id).unread
        assert not engine.rooms.is_member(members["bob"].id, group.id)

        bob_events = members["bob"].drain()
        assert event_types(bob_events) == ["removedFromGroup"]
        assert bob_events[0]["removedBy"] == "alice"

        for name in ("alice", "carol"):
            events = members[name].drain()
            assert event_types(events) == ["groupUpdated"]
            assert events[0]["updateType"] == "USER_REMOVED"
            assert events[0]["userId"] == "bob"

    @pytest.mark.asyncio
    async def test_non_admin_rejected_without_changes(self, engine, store, group, members):
        with pytest.raises(AuthorizationError):
            await engine.groups.remove_member(members["bob"], group.id, "carol")

        assert store.get_conversation(group.id).participants == ["alice", "bob", "carol"]
        assert engine.rooms.is_member(members["carol"].id, group.id)
        assert all(c.drain() == [] for c in members.values())

    @pytest.mark.asyncio
    async def test_cannot_remove_admin(self, engine, group, members):
        await engine.groups.change_admin(members["alice"], group.id, "bob")
        with pytest.raises(StateConflictError):
            await engine.groups.remove_member(members["bob"], group.id, "bob")

    @pytest.mark.asyncio
    async def test_cannot_remove_non_participant(self, engine, group, members):
        with pytest.raises(StateConflictError):
            await engine.groups.remove_member(members["alice"], group.id, "dave")

    @pytest.mark.asyncio
    async def test_direct_conversation_rejected(self, engine, direct, members):
        with pytest.raises(RequestValidationError):
            await engine.groups.remove_member(members["alice"], direct.id, "bob")


class TestAddMember:
    @pytest.mark.asyncio
    async def test_added_member_joins_room_before_notice(self, engine, store, group, members):
        dave = members["dave"]
        conversation = await engine.groups.add_member(members["alice"], group.id, "dave")

        assert conversation.participants[-1] == "dave"
        assert engine.rooms.is_member(dave.id, group.id)
        events = dave.drain()
        assert event_types(events) == ["groupUpdated", "addedToGroup"]
        assert events[1]["conversation"]["participants"] == ["alice", "bob", "carol", "dave"]
        assert events[1]["addedBy"] == "alice"

        update = members["bob"].drain()[0]
        assert update["updateType"] == "USER_ADDED"

        # The new member receives subsequent room traffic
        await engine.pipeline.send(members["bob"], group.id, text="welcome")
        assert "message" in event_types(dave.drain())

    @pytest.mark.asyncio
    async def test_already_participant(self, engine, group, members):
        with pytest.raises(StateConflictError):
            await engine.groups.add_member(members["alice"], group.id, "carol")

    @pytest.mark.asyncio
    async def test_unknown_user(self, engine, group, members):
        with pytest.raises(NotFoundError):
            await engine.groups.add_member(members["alice"], group.id, "ghost")

    @pytest.mark.asyncio
    async def test_non_admin(self, engine, group, members):
        with pytest.raises(AuthorizationError):
            await engine.groups.add_member(members["carol"], group.id, "dave")


class TestLeaveGroup:
    @pytest.mark.asyncio
    async def test_member_leaves(self, engine, store, group, members):
        conversation = await engine.groups.leave_group(members["carol"], group.id)

        assert conversation.participants == ["alice", "bob"]
        assert conversation.adminId == "alice"
        assert not engine.rooms.is_member(members["carol"].id, group.id)
        assert event_types(members["carol"].drain()) == ["removedFromGroup"]
        event = members["alice"].drain()[0]
        assert event["updateType"] == "USER_LEFT"
        assert "newAdminId" not in event

    @pytest.mark.asyncio
    async def test_admin_leaving_transfers_admin(self, engine, store, group, members):
        conversation = await engine.groups.leave_group(members["alice"], group.id)

        assert conversation.adminId == "bob"
        assert conversation.participants == ["bob", "carol"]
        event = members["bob"].drain()[0]
        assert event["updateType"] == "USER_LEFT"
        assert event["newAdminId"] == "bob"

    @pytest.mark.asyncio
    async def test_last_member_leaving_deletes(self, engine, store, group, members):
        await engine.groups.leave_group(members["bob"], group.id)
        await engine.groups.leave_group(members["alice"], group.id)
        result = await engine.groups.leave_group(members["carol"], group.id)

        assert result is None
        assert store.find_conversation(group.id) is None
        assert engine.rooms.get_room_size(group.id) == 0

    @pytest.mark.asyncio
    async def test_admin_invariant_holds(self, engine, store, group, members):
        await engine.groups.add_member(members["alice"], group.id, "dave")
        await engine.groups.change_admin(members["alice"], group.id, "carol")
        await engine.groups.leave_group(members["carol"], group.id)
        await engine.groups.remove_member(members["alice"], group.id, "bob")
        await engine.groups.leave_group(members["alice"], group.id)

        conversation = store.get_conversation(group.id)
        assert conversation.adminId in conversation.participants
        assert conversation.participants == ["dave"]


class TestRenameAndAdmin:
    @pytest.mark.asyncio
    async def test_rename(self, engine, store, group, members):
        conversation = await engine.groups.rename_group(members["alice"], group.id, "Renamed")
        assert conversation.name == "Renamed"
        event = members["carol"].drain()[0]
        assert event["updateType"] == "GROUP_RENAMED"
        assert event["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_rename_non_admin(self, engine, group, members):
        with pytest.raises(AuthorizationError):
            await engine.groups.rename_group(members["bob"], group.id, "Mine now")

    @pytest.mark.asyncio
    async def test_rename_too_long(self, engine, group, members):
        with pytest.raises(RequestValidationError):
            await engine.groups.rename_group(members["alice"], group.id, "x" * 101)

    @pytest.mark.asyncio
    async def test_change_admin(self, engine, store, group, members):
        conversation = await engine.groups.change_admin(members["alice"], group.id, "carol")
        assert conversation.adminId == "carol"
        event = members["bob"].drain()[0]
        assert event["updateType"] == "ADMIN_CHANGED"
        assert event["newAdminId"] == "carol"
        assert event["previousAdminId"] == "alice"

    @pytest.mark.asyncio
    async def test_change_admin_to_non_participant(self, engine, store, group, members):
        with pytest.raises(StateConflictError):
            await engine.groups.change_admin(members["alice"], group.id, "dave")
        assert store.get_conversation(group.id).adminId == "alice"

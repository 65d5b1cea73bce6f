"""Tests for request parsing and engine dispatch."""
from unittest.mock import patch

import pytest

from app.chat.engine import RelayEngine
from app.chat.errors import (
    AuthorizationError,
    PersistenceError,
    RequestValidationError,
    error_event,
)
from app.chat.protocol import (
    REQUEST_TYPES,
    JoinRoomsRequest,
    SendMessageRequest,
    SyncMessagesRequest,
    parse_request,
    request_id_of,
)
from app.store.service import RelayStore
from conftest import event_types


class TestParseRequest:
    """Tests for the tagged request union."""

    def test_send_message(self):
        request = parse_request({
            "type": "sendMessage",
            "conversationId": "c1",
            "text": "hi",
            "requestId": "r1",
            "unknownField": True,
        })
        assert isinstance(request, SendMessageRequest)
        assert request.text == "hi"
        assert request.requestId == "r1"

    def test_join_rooms_defaults_to_empty(self):
        request = parse_request({"type": "joinRooms"})
        assert isinstance(request, JoinRoomsRequest)
        assert request.conversationIds == []

    def test_sync_defaults(self):
        request = parse_request({"type": "syncMessages", "conversationId": "c1"})
        assert isinstance(request, SyncMessagesRequest)
        assert request.afterSeq == 0

    @pytest.mark.parametrize("data", [
        {"type": "dance"},
        {"conversationId": "c1"},
        {"type": "markRead", "conversationId": "c1"},
        {"type": "joinRoom", "conversationId": ""},
        {"type": "syncMessages", "conversationId": "c1", "afterSeq": -1},
        ["not", "an", "object"],
        "text",
    ])
    def test_invalid(self, data):
        with pytest.raises(RequestValidationError):
            parse_request(data)

    def test_request_id_of(self):
        assert request_id_of({"requestId": "r9", "type": "bogus"}) == "r9"
        assert request_id_of({"requestId": 5}) is None
        assert request_id_of("text") is None

    def test_every_request_type_has_a_tag(self):
        tags = {cls.model_fields["type"].annotation.__args__[0] for cls in REQUEST_TYPES}
        assert len(tags) == len(REQUEST_TYPES) == 16


class TestErrorEvent:
    def test_error_event_shape(self):
        event = error_event(AuthorizationError("nope"), "r1")
        assert event == {"type": "error", "code": "not_authorized", "error": "nope", "requestId": "r1"}

    def test_persistence_message_is_generic(self):
        event = error_event(PersistenceError("connection refused on /var/db"))
        assert event["code"] == "persistence_failed"
        assert "var" not in event["error"]
        assert "requestId" not in event


class TestDispatch:
    """Tests for RelayEngine.handle."""

    def test_handler_table_is_complete(self, store):
        engine = RelayEngine(store)
        assert set(engine._handlers) == set(REQUEST_TYPES)

    @pytest.mark.asyncio
    async def test_ack_carries_request_id(self, engine, connect, direct):
        alice = connect("alice")
        await engine.handle(alice, {
            "type": "sendMessage",
            "conversationId": direct.id,
            "text": "hi",
            "requestId": "r1",
            "clientMessageId": "local-1",
        })
        events = alice.drain()
        assert event_types(events) == ["message", "conversationUpdated", "ack"]
        ack = events[-1]
        assert ack["requestId"] == "r1"
        assert ack["requestType"] == "sendMessage"
        assert ack["messageId"] == events[0]["message"]["id"]
        assert ack["clientMessageId"] == "local-1"
        assert ack["duplicate"] is False

    @pytest.mark.asyncio
    async def test_invalid_frame_answers_requester_only(self, engine, connect, direct):
        alice = connect("alice")
        bob = connect("bob")
        await engine.handle(alice, {"type": "sendMessage", "conversationId": direct.id, "requestId": "r2"})

        events = alice.drain()
        assert events == [{
            "type": "error",
            "code": "invalid_request",
            "error": "Message must contain text or an image",
            "requestId": "r2",
        }]
        assert bob.drain() == []

    @pytest.mark.asyncio
    async def test_unknown_type(self, engine, connect):
        alice = connect("alice")
        await engine.handle(alice, {"type": "explode", "requestId": "r3"})
        event = alice.drain()[0]
        assert event["code"] == "invalid_request"
        assert event["requestId"] == "r3"

    @pytest.mark.asyncio
    async def test_persistence_failure_reported_generically(self, engine, connect, direct):
        alice = connect("alice")
        bob = connect("bob")
        with patch.object(RelayStore, "persist_message", side_effect=PersistenceError()):
            await engine.handle(alice, {"type": "sendMessage", "conversationId": direct.id, "text": "hi"})

        event = alice.drain()[0]
        assert event["code"] == "persistence_failed"
        assert event["error"] == "Request failed, please retry"
        assert bob.drain() == []

    @pytest.mark.asyncio
    async def test_join_rooms_ack(self, engine, connect, direct, group):
        carol = connect("carol", join=False)
        await engine.handle(carol, {"type": "joinRooms", "conversationIds": [group.id, direct.id]})
        ack = carol.drain()[0]
        assert ack["conversationIds"] == [group.id]
        assert ack["rejected"] == [direct.id]

    @pytest.mark.asyncio
    async def test_join_and_leave_room(self, engine, connect, direct):
        alice = connect("alice", join=False)
        await engine.handle(alice, {"type": "joinRoom", "conversationId": direct.id})
        assert engine.rooms.is_member(alice.id, direct.id)
        await engine.handle(alice, {"type": "leaveRoom", "conversationId": direct.id})
        assert not engine.rooms.is_member(alice.id, direct.id)
        assert event_types(alice.drain()) == ["ack", "ack"]

    @pytest.mark.asyncio
    async def test_sync_messages_pages(self, engine, store, connect, direct):
        engine.settings.sync_page_size = 2
        alice = connect("alice")
        sent = [store.persist_message(direct.id, "bob", text=str(i))[0] for i in range(3)]

        await engine.handle(alice, {
            "type": "syncMessages", "conversationId": direct.id, "afterSeq": 0, "requestId": "s1",
        })
        event = alice.drain()[0]
        assert event["type"] == "syncedMessages"
        assert event["requestId"] == "s1"
        assert [m["id"] for m in event["messages"]] == [sent[0].id, sent[1].id]
        assert event["hasMore"] is True

        await engine.handle(alice, {
            "type": "syncMessages", "conversationId": direct.id, "afterSeq": sent[1].seq,
        })
        event = alice.drain()[0]
        assert [m["id"] for m in event["messages"]] == [sent[2].id]
        assert event["hasMore"] is False

    @pytest.mark.asyncio
    async def test_sync_requires_participation(self, engine, connect, direct):
        carol = connect("carol")
        await engine.handle(carol, {"type": "syncMessages", "conversationId": direct.id})
        assert carol.drain()[0]["code"] == "not_authorized"

    @pytest.mark.asyncio
    async def test_mark_conversation_read_ack(self, engine, connect, direct):
        alice = connect("alice")
        bob = connect("bob")
        await engine.handle(alice, {"type": "sendMessage", "conversationId": direct.id, "text": "hi"})
        bob.drain()

        await engine.handle(bob, {"type": "markConversationRead", "conversationId": direct.id})

        events = bob.drain()
        assert event_types(events) == ["conversationRead", "ack"]
        assert events[1]["unread"] == 0

    @pytest.mark.asyncio
    async def test_group_requests(self, engine, store, connect):
        alice = connect("alice")
        connect("bob")
        connect("carol")

        await engine.handle(alice, {"type": "createGroup", "name": "G", "memberIds": ["bob", "carol"]})
        ack = [e for e in alice.drain() if e["type"] == "ack"][0]
        conversation_id = ack["conversation"]["id"]

        await engine.handle(alice, {"type": "addMember", "conversationId": conversation_id, "userId": "dave"})
        await engine.handle(alice, {"type": "renameGroup", "conversationId": conversation_id, "name": "H"})
        await engine.handle(alice, {"type": "changeAdmin", "conversationId": conversation_id, "newAdminId": "bob"})
        await engine.handle(alice, {"type": "removeMember", "conversationId": conversation_id, "userId": "carol"})
        await engine.handle(alice, {"type": "leaveGroup", "conversationId": conversation_id})

        events = alice.drain()
        acks = [e for e in events if e["type"] == "ack"]
        errors = [e for e in events if e["type"] == "error"]
        assert [a["requestType"] for a in acks] == ["addMember", "renameGroup", "changeAdmin", "leaveGroup"]
        # Alice is no longer admin when she tries to remove carol
        assert [e["code"] for e in errors] == ["not_authorized"]

        conversation = store.get_conversation(conversation_id)
        assert conversation.name == "H"
        assert conversation.adminId == "bob"
        assert conversation.participants == ["bob", "carol", "dave"]

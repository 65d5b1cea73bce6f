"""Shared test fixtures and configuration for backend tests."""
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from app.chat.engine import RelayEngine
from app.config import AppConfig, RealtimeSettings
from app.main import app
from app.store.service import RelayStore

TEST_SECRET = "test-secret"

USERS = {
    "alice": "Alice",
    "bob": "Bob",
    "carol": "Carol",
    "dave": "Dave",
}


class FakeWebSocket:
    """Records what the relay writes to a socket."""

    def __init__(self):
        self.sent = []
        self.close_code = None

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000):
        self.close_code = code


def make_token(identity_id, secret=TEST_SECRET, expires_in=3600, **claims):
    """Sign a bearer token the way the account service would."""
    payload = {"id": identity_id, "exp": int(time.time()) + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def event_types(events):
    return [e["type"] for e in events]


@pytest.fixture
def store():
    """Fresh in-memory store with four known identities."""
    RelayStore.reset_instance()
    store = RelayStore(db_path=":memory:")
    for identity_id, name in USERS.items():
        store.create_identity(identity_id, name)
    yield store
    store.close()


@pytest.fixture
def direct(store):
    """One-to-one conversation between alice and bob."""
    return store.create_conversation(["alice", "bob"])


@pytest.fixture
def group(store):
    """Group of alice (admin), bob and carol."""
    return store.create_conversation(
        ["alice", "bob", "carol"], is_group=True, name="Team", admin_id="alice"
    )


@pytest.fixture
def engine(store):
    return RelayEngine(store, RealtimeSettings())


@pytest.fixture
def connect(engine):
    """Connect an identity through a fake socket.

    By default the connection joins every conversation of the identity.
    Handshake and presence events queued on any connection are discarded.
    """
    def _connect(identity_id, join=True):
        connection = engine.connect(FakeWebSocket(), identity_id)
        if join:
            engine.rooms.join_rooms(connection, [])
        for existing in engine.registry.all_connections():
            existing.drain()
        return connection
    return _connect


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app (no lifespan)."""
    return TestClient(app)


@pytest.fixture
def test_config():
    config = AppConfig()
    config.store.db_path = ":memory:"
    config.secrets.jwt.secret_key = TEST_SECRET
    return config

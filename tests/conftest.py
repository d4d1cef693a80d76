"""Shared fixtures for the presence chat test suite."""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the project root is on sys.path so 'presence_chat' resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from presence_chat.config import PusherCredentials  # noqa: E402

TEST_PASSWORD = "correct horse"


# ---------------------------------------------------------------------------
# Fake pub/sub client: records bind/subscribe order, fires events on demand
# ---------------------------------------------------------------------------

class FakeChannel:
    def __init__(self, name, calls):
        self.name = name
        self.calls = calls
        self.callbacks = {}

    def bind(self, event_name, callback):
        self.calls.append(("bind", event_name))
        self.callbacks.setdefault(event_name, []).append(callback)

    def fire(self, event_name, data):
        for cb in self.callbacks.get(event_name, []):
            cb(data)


class FakeClient:
    def __init__(self, auth_params):
        self.auth_params = auth_params
        self.calls = []
        self.disconnected = False
        self.channels = {}

    def channel(self, name):
        if name not in self.channels:
            self.channels[name] = FakeChannel(name, self.calls)
        return self.channels[name]

    def subscribe(self, name):
        self.calls.append(("subscribe", name))
        return self.channel(name)

    async def disconnect(self):
        self.calls.append(("disconnect",))
        self.disconnected = True


class FakeMembers:
    """Membership collection with the ``.me`` / ``.each`` surface."""

    def __init__(self, members, me_id):
        self._members = list(members)
        self.me = next((m for m in self._members if m["id"] == me_id), None)

    def each(self, callback):
        for m in self._members:
            callback(m)


@pytest.fixture
def fake_clients():
    """Client factory that keeps every client it builds."""
    built = []

    def factory(auth_params):
        client = FakeClient(auth_params)
        built.append(client)
        return client

    factory.built = built
    return factory


@pytest.fixture
def credentials():
    return PusherCredentials(
        app_id="1234",
        key="278d425bdf160c739803",
        secret="7ad3773142a6692b25b8",
        cluster="us2",
    )


@pytest.fixture(autouse=True)
def _clean_rate_limit_state():
    """Reset failed-attempt tracking between tests."""
    from presence_chat.auth import _failed_attempts

    _failed_attempts.clear()
    yield
    _failed_attempts.clear()


@pytest.fixture
def app(credentials):
    """The FastAPI app with a known password and signing credentials."""
    from presence_chat.channel_auth import ChannelAuthenticator

    with patch("presence_chat.config.CHAT_PASSWORD", TEST_PASSWORD), \
         patch("presence_chat.server._authenticator", ChannelAuthenticator(credentials)):
        from presence_chat.server import app as fastapi_app
        yield fastapi_app


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

"""Shared pytest fixtures for chatgraft tests."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from chatgraft.config import Settings
from chatgraft.db.connection import Database
from chatgraft.host.client import HostClient
from chatgraft.main import app, wire_services
from chatgraft.phantom.overlay import PhantomOverlay
from chatgraft.phantom.store import PhantomStore
from tests.fixtures import ORG_ID, FakeHost


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
async def http(fake_host):
    """httpx client whose requests are answered by the fake host."""
    async with httpx.AsyncClient(transport=fake_host.transport(), base_url="https://host.test") as client:
        yield client


@pytest.fixture
def host_client(http):
    """HostClient without interceptors."""
    return HostClient(http, ORG_ID)


@pytest.fixture
def store(db):
    return PhantomStore(db)


@pytest.fixture
def overlay_client(http, store):
    """HostClient reading conversations through the phantom overlay."""
    return HostClient(http, ORG_ID, interceptors=[PhantomOverlay(store, timeout=1.0)])


@pytest.fixture
def settings():
    return Settings(org_id=ORG_ID, session_key="test", poll_attempts=3, poll_interval=0.0)


@pytest.fixture
async def client(db, http, settings):
    """Async test client with every service wired to the fake host and in-memory DB."""
    wire_services(app, settings, db, http)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()

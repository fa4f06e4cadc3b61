"""Fixtures for API endpoint tests."""
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from api.main import app
from api.sessions import SyncSession, SyncSessionRegistry, set_session_registry
from core.config import Settings, get_settings
from schemas.identity import Identity
from services.memory_backend import InMemoryBackend, InMemoryStore


@pytest.fixture
async def registry(
    store: InMemoryStore,
    settings: Settings,
) -> AsyncGenerator[SyncSessionRegistry]:
    """
    Session registry over the shared in-memory store.

    ASGITransport does not run the lifespan, so the registry is installed here.
    """
    registry = SyncSessionRegistry(
        lambda token: InMemoryBackend(store, access_token=token),
        settings,
    )
    set_session_registry(registry)
    yield registry
    await registry.close_all()
    set_session_registry(None)


@pytest.fixture
def token(store: InMemoryStore, identity: Identity) -> str:
    """Access token of a signed-in session for ``identity``."""
    return store.issue_session(identity)


@pytest.fixture
async def anon_client(
    registry: SyncSessionRegistry,
    settings: Settings,
) -> AsyncGenerator[AsyncClient]:
    """Client without credentials."""
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
async def client(
    registry: SyncSessionRegistry,
    settings: Settings,
    token: str,
) -> AsyncGenerator[AsyncClient]:
    """Client authenticated as ``identity`` via a bearer token."""
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"Authorization": f"Bearer {token}"},
        ) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


async def session_for(registry: SyncSessionRegistry, token: str) -> SyncSession:
    """Return the live session for ``token``; it must resolve."""
    session = await registry.get(token)
    assert session is not None
    return session

"""Pytest fixtures for testing."""
import os
from collections.abc import AsyncGenerator

import pytest

# Settings are validated at import time by the app module; run everything in
# dev mode against the in-memory backend.
os.environ["DEV_MODE"] = "true"
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("SUPABASE_ANON_KEY", None)

from core.config import Settings, get_settings  # noqa: E402
from schemas.identity import Identity  # noqa: E402
from services.bookmark_sync import BookmarkSynchronizer  # noqa: E402
from services.memory_backend import InMemoryBackend, InMemoryStore  # noqa: E402

get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Dev-mode settings that ignore any local .env file."""
    return Settings(_env_file=None, DEV_MODE="true")


@pytest.fixture
def store() -> InMemoryStore:
    """Fresh in-memory store standing in for the remote service."""
    return InMemoryStore()


@pytest.fixture
def identity() -> Identity:
    return Identity(id="user-1", email="user1@example.com")


@pytest.fixture
def other_identity() -> Identity:
    return Identity(id="user-2", email="user2@example.com")


@pytest.fixture
def backend(store: InMemoryStore, identity: Identity) -> InMemoryBackend:
    """Backend session signed in as ``identity``."""
    return InMemoryBackend(store, access_token=store.issue_session(identity))


@pytest.fixture
async def synchronizer(
    backend: InMemoryBackend,
) -> AsyncGenerator[BookmarkSynchronizer]:
    """Synchronizer bound to ``backend``, torn down after the test."""
    sync = BookmarkSynchronizer(backend)
    yield sync
    await sync.teardown()

"""Fixtures for the Supabase adapter tests."""
import asyncio
import json
from collections.abc import AsyncGenerator, Iterator
from typing import Any

import httpx
import pytest
import respx

from core.config import Settings

SUPABASE_URL = "https://abc.supabase.co"
ANON_KEY = "anon-key"


@pytest.fixture
def supabase_settings() -> Settings:
    """Settings pointing at a (mocked) hosted project."""
    return Settings(
        _env_file=None,
        DEV_MODE="false",
        SUPABASE_URL=SUPABASE_URL,
        SUPABASE_ANON_KEY=ANON_KEY,
        APP_URL="http://localhost:8000",
    )


@pytest.fixture
def mock_api() -> Iterator[respx.MockRouter]:
    """Context manager for mocking Supabase responses."""
    with respx.mock(base_url=SUPABASE_URL, assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient]:
    async with httpx.AsyncClient(base_url=SUPABASE_URL) as client:
        yield client


class FakeSocket:
    """
    Stand-in for a websockets client connection speaking Phoenix v1.

    Replies to ``phx_join`` with ``join_status`` and answers heartbeats when
    ``answer_heartbeats`` is set. ``drop()`` ends the connection from the
    server side.
    """

    def __init__(self, join_status: str = "ok", answer_heartbeats: bool = True) -> None:
        self.join_status = join_status
        self.answer_heartbeats = answer_heartbeats
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def __aenter__(self) -> "FakeSocket":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def send(self, raw: str) -> None:
        message = json.loads(raw)
        self.sent.append(message)
        if message["event"] == "phx_join":
            self.push(
                topic=message["topic"],
                event="phx_reply",
                payload={"status": self.join_status, "response": {}},
                ref=message["ref"],
            )
        elif message["event"] == "heartbeat" and self.answer_heartbeats:
            self.push(
                topic="phoenix",
                event="phx_reply",
                payload={"status": "ok", "response": {}},
                ref=message["ref"],
            )

    async def close(self) -> None:
        self.drop()

    def push(self, **message: Any) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def push_raw(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    def events(self) -> list[str]:
        return [m["event"] for m in self.sent]


class FakeConnector:
    """Callable replacing ``websockets.connect``; hands out prepared sockets in order."""

    def __init__(self, *sockets: FakeSocket | Exception) -> None:
        self._queue = list(sockets)
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        item = self._queue.pop(0) if self._queue else FakeSocket()
        if isinstance(item, Exception):
            raise item
        self.sockets.append(item)
        return item


async def eventually(predicate: Any, timeout: float = 2.0) -> None:
    """Wait until ``predicate()`` is true."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)

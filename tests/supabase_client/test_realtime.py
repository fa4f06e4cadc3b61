"""
Tests for the Realtime change-feed subscription.

A fake connector stands in for ``websockets.connect`` so these exercise the
Phoenix channel protocol (join, heartbeat, leave) and the reconnect loop
without a server.
"""
from collections.abc import AsyncGenerator, Callable

import pytest

from services.exceptions import ChangeFeedError
from supabase_client import realtime
from supabase_client.realtime import RealtimeSubscription, build_join_payload, decode_frame
from tests.supabase_client.conftest import FakeConnector, FakeSocket, eventually

URL = "wss://abc.supabase.co/realtime/v1/websocket?apikey=anon-key&vsn=1.0.0"


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reconnect immediately instead of waiting a second."""
    monkeypatch.setattr(realtime, "INITIAL_RECONNECT_DELAY", 0.0)


class Recorder:
    def __init__(self) -> None:
        self.changes = 0
        self.errors: list[Exception] = []

    def on_change(self) -> None:
        self.changes += 1

    def on_error(self, error: Exception) -> None:
        self.errors.append(error)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
async def make_subscription(
    recorder: Recorder,
) -> AsyncGenerator[Callable[..., RealtimeSubscription]]:
    created: list[RealtimeSubscription] = []

    def factory(connector: FakeConnector, **kwargs: object) -> RealtimeSubscription:
        subscription = RealtimeSubscription(
            url=URL,
            channel="bookmarks-realtime",
            table="bookmarks",
            on_change=recorder.on_change,
            on_error=recorder.on_error,
            connect=connector,
            **kwargs,
        )
        created.append(subscription)
        return subscription

    yield factory
    for subscription in created:
        await subscription.close()


def test__build_join_payload__requests_all_events_on_table() -> None:
    payload = build_join_payload("bookmarks", access_token="jwt")

    assert payload["config"]["postgres_changes"] == [
        {"event": "*", "schema": "public", "table": "bookmarks"},
    ]
    assert payload["access_token"] == "jwt"


def test__build_join_payload__without_token() -> None:
    assert "access_token" not in build_join_payload("bookmarks", access_token=None)


async def test__start__joins_channel_for_table(
    make_subscription: Callable[..., RealtimeSubscription],
) -> None:
    socket = FakeSocket()
    connector = FakeConnector(socket)
    subscription = make_subscription(connector, access_token="jwt")

    subscription.start()
    await subscription.wait_first_attempt(1.0)

    assert subscription.is_joined
    assert subscription.table == "bookmarks"
    assert connector.urls == [URL]
    join = socket.sent[0]
    assert join["event"] == "phx_join"
    assert join["topic"] == "realtime:bookmarks-realtime"
    assert join["join_ref"] == join["ref"]
    assert join["payload"]["access_token"] == "jwt"


async def test__postgres_changes__calls_on_change(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    socket = FakeSocket()
    subscription = make_subscription(FakeConnector(socket))
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    socket.push(
        topic="realtime:bookmarks-realtime",
        event="postgres_changes",
        payload={"data": {"type": "INSERT", "table": "bookmarks"}},
        ref=None,
    )
    await eventually(lambda: recorder.changes == 1)

    assert recorder.errors == []


async def test__other_topics_and_events__ignored(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    socket = FakeSocket()
    subscription = make_subscription(FakeConnector(socket))
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    socket.push(topic="realtime:other", event="postgres_changes", payload={}, ref=None)
    socket.push(topic="realtime:bookmarks-realtime", event="presence_state", payload={}, ref=None)
    socket.push(
        topic="realtime:bookmarks-realtime",
        event="system",
        payload={"status": "ok", "message": "Subscribed to PostgreSQL"},
        ref=None,
    )
    socket.push(topic="realtime:bookmarks-realtime", event="postgres_changes", payload={}, ref=None)
    await eventually(lambda: recorder.changes == 1)

    assert recorder.changes == 1
    assert recorder.errors == []


async def test__non_object_frames__ignored_without_reconnect(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    """Valid JSON that is not an object is skipped; the feed keeps running."""
    socket = FakeSocket()
    connector = FakeConnector(socket)
    subscription = make_subscription(connector)
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    socket.push_raw("[1, 2]")
    socket.push_raw("42")
    socket.push_raw('"text"')
    socket.push(topic="realtime:bookmarks-realtime", event="postgres_changes", payload={}, ref=None)
    await eventually(lambda: recorder.changes == 1)

    assert recorder.errors == []
    assert subscription.is_joined
    assert len(connector.urls) == 1


def test__decode_frame__returns_objects_only() -> None:
    assert decode_frame('{"event": "phx_reply"}') == {"event": "phx_reply"}
    assert decode_frame("[]") is None
    assert decode_frame("null") is None


async def test__close__leaves_channel_and_stops(
    make_subscription: Callable[..., RealtimeSubscription],
) -> None:
    socket = FakeSocket()
    connector = FakeConnector(socket)
    subscription = make_subscription(connector)
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    await subscription.close()

    assert socket.events()[-1] == "phx_leave"
    assert socket.closed
    assert not subscription.is_joined
    assert len(connector.urls) == 1


async def test__join_rejected__reports_error_then_retries(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    """A rejected first join is reported; the retry succeeds and triggers a re-fetch."""
    connector = FakeConnector(FakeSocket(join_status="error"), FakeSocket())
    subscription = make_subscription(connector)
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], ChangeFeedError)
    assert "join rejected" in str(recorder.errors[0])

    await eventually(lambda: subscription.is_joined)
    await eventually(lambda: recorder.changes == 1)


async def test__connection_refused__reports_error_then_retries(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    connector = FakeConnector(OSError("connection refused"), FakeSocket())
    subscription = make_subscription(connector)
    subscription.start()

    await eventually(lambda: subscription.is_joined)

    assert len(connector.urls) == 2
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], ChangeFeedError)
    assert "connection refused" in str(recorder.errors[0])


async def test__server_drop__reconnects_and_refetches(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    """Changes may be missed while disconnected, so a rejoin triggers on_change."""
    first = FakeSocket()
    second = FakeSocket()
    connector = FakeConnector(first, second)
    subscription = make_subscription(connector)
    subscription.start()
    await subscription.wait_first_attempt(1.0)
    assert recorder.changes == 0

    first.drop()
    await eventually(lambda: len(connector.sockets) == 2 and subscription.is_joined)
    await eventually(lambda: recorder.changes == 1)

    assert len(recorder.errors) == 1
    assert second.events()[0] == "phx_join"


async def test__channel_error__reconnects(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    first = FakeSocket()
    connector = FakeConnector(first, FakeSocket())
    subscription = make_subscription(connector)
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    first.push(topic="realtime:bookmarks-realtime", event="phx_error", payload={}, ref=None)
    await eventually(lambda: len(connector.sockets) == 2 and subscription.is_joined)

    assert "phx_error" in str(recorder.errors[0])


async def test__heartbeat__sent_on_phoenix_topic(
    make_subscription: Callable[..., RealtimeSubscription],
) -> None:
    socket = FakeSocket()
    subscription = make_subscription(FakeConnector(socket), heartbeat_interval=0.01)
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    await eventually(lambda: socket.events().count("heartbeat") >= 2)

    heartbeat = next(m for m in socket.sent if m["event"] == "heartbeat")
    assert heartbeat["topic"] == "phoenix"
    assert subscription.is_joined


async def test__heartbeat__unanswered_closes_and_reconnects(
    make_subscription: Callable[..., RealtimeSubscription],
    recorder: Recorder,
) -> None:
    first = FakeSocket(answer_heartbeats=False)
    connector = FakeConnector(first, FakeSocket())
    subscription = make_subscription(connector, heartbeat_interval=0.01)
    subscription.start()
    await subscription.wait_first_attempt(1.0)

    await eventually(lambda: len(connector.sockets) == 2)

    assert first.closed
    assert len(recorder.errors) >= 1


async def test__failing_change_callback__does_not_stop_feed(
    recorder: Recorder,
) -> None:
    calls: list[int] = []

    def broken() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    socket = FakeSocket()
    subscription = RealtimeSubscription(
        url=URL,
        channel="bookmarks-realtime",
        table="bookmarks",
        on_change=broken,
        on_error=recorder.on_error,
        connect=FakeConnector(socket),
    )
    subscription.start()
    try:
        await subscription.wait_first_attempt(1.0)
        for _ in range(2):
            socket.push(
                topic="realtime:bookmarks-realtime", event="postgres_changes", payload={}, ref=None,
            )
        await eventually(lambda: len(calls) == 2)
        assert subscription.is_joined
        assert recorder.errors == []
    finally:
        await subscription.close()

"""
Supabase Realtime change feed over websockets.

Realtime speaks the Phoenix channel protocol (v1, JSON frames). A
subscription joins ``realtime:<channel>`` asking for ``postgres_changes`` on
one table, keeps the socket alive with heartbeats on the ``phoenix`` topic and
calls ``on_change`` for every change message. The payload is ignored: any
change means "re-fetch".

When the socket drops or the channel errors, ``on_error`` is called and the
subscription reconnects with exponential backoff. Changes may have been
missed while disconnected, so ``on_change`` fires once after every rejoin.
"""
import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from services.backend import ChangeCallback, ErrorCallback
from services.exceptions import ChangeFeedError

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
JOIN_TIMEOUT_SECONDS = 10.0
INITIAL_RECONNECT_DELAY = 1.0

Connect = Callable[[str], Any]


def build_join_payload(table: str, access_token: str | None, schema: str = "public") -> dict:
    """Channel config asking for every change event on ``schema.table``."""
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": [{"event": "*", "schema": schema, "table": table}],
            "private": False,
        },
    }
    if access_token:
        payload["access_token"] = access_token
    return payload


def decode_frame(raw: str | bytes) -> dict | None:
    """Parse one socket frame. Frames that are not JSON objects are ignored."""
    message = json.loads(raw)
    if not isinstance(message, dict):
        logger.debug("Ignoring non-object frame: %r", message)
        return None
    return message


class RealtimeSubscription:
    """One joined channel delivering change notifications for a table."""

    def __init__(
        self,
        url: str,
        channel: str,
        table: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        access_token: str | None = None,
        heartbeat_interval: float = 25.0,
        max_reconnect_delay: float = 30.0,
        connect: Connect = websockets.connect,
    ) -> None:
        self._url = url
        self.topic = f"realtime:{channel}"
        self._table = table
        self._on_change = on_change
        self._on_error = on_error
        self._access_token = access_token
        self._heartbeat_interval = heartbeat_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._connect = connect

        self._refs = itertools.count(1)
        self._ws: Any = None
        self._joined = False
        self._closing = False
        self._pending_heartbeat: str | None = None
        self._first_attempt = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def table(self) -> str:
        return self._table

    @property
    def is_joined(self) -> bool:
        return self._joined

    def start(self) -> None:
        """Start the connection loop in the background."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def wait_first_attempt(self, timeout: float) -> None:
        """Wait until the first join succeeded or failed, up to ``timeout``."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._first_attempt.wait(), timeout)

    async def close(self) -> None:
        """Leave the channel and stop reconnecting."""
        self._closing = True
        ws = self._ws
        if ws is not None and self._joined:
            try:
                await ws.send(self._message(self.topic, "phx_leave", {}))
            except (OSError, WebSocketException) as e:
                logger.debug("Could not send phx_leave: %s", e)
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        delay = INITIAL_RECONNECT_DELAY
        missed_changes = False
        while not self._closing:
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    await self._join(ws)
                    delay = INITIAL_RECONNECT_DELAY
                    self._first_attempt.set()
                    if missed_changes:
                        logger.info("Change feed rejoined %s", self.topic)
                        self._emit_change()
                    await self._listen(ws)
                error: Exception = ChangeFeedError("connection closed by server")
            except (OSError, json.JSONDecodeError, WebSocketException, ChangeFeedError) as e:
                error = e
            finally:
                self._ws = None
                self._joined = False
                self._pending_heartbeat = None

            if self._closing:
                return
            missed_changes = True
            self._first_attempt.set()
            logger.warning(
                "Change feed %s dropped (%s), reconnecting in %.1fs", self.topic, error, delay,
            )
            self._emit_error(error)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_reconnect_delay)

    async def _join(self, ws: Any) -> None:
        ref = self._next_ref()
        payload = build_join_payload(self._table, self._access_token)
        await ws.send(self._message(self.topic, "phx_join", payload, ref=ref, join_ref=ref))
        try:
            async with asyncio.timeout(JOIN_TIMEOUT_SECONDS):
                async for raw in ws:
                    message = decode_frame(raw)
                    if message is None:
                        continue
                    if message.get("event") == "phx_reply" and message.get("ref") == ref:
                        status = message.get("payload", {}).get("status")
                        if status != "ok":
                            response = message.get("payload", {}).get("response")
                            raise ChangeFeedError(f"join rejected: {response}")
                        self._joined = True
                        logger.debug("Joined %s", self.topic)
                        return
                    self._handle(message)
        except TimeoutError:
            raise ChangeFeedError("join timed out") from None
        raise ChangeFeedError("connection closed before join reply")

    async def _listen(self, ws: Any) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                message = decode_frame(raw)
                if message is not None:
                    self._handle(message)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._pending_heartbeat is not None:
                logger.warning("Heartbeat on %s timed out, closing socket", self.topic)
                await ws.close()
                return
            self._pending_heartbeat = self._next_ref()
            await ws.send(
                self._message(PHOENIX_TOPIC, "heartbeat", {}, ref=self._pending_heartbeat),
            )

    def _handle(self, message: dict) -> None:
        topic = message.get("topic")
        event = message.get("event")
        if topic == PHOENIX_TOPIC:
            if event == "phx_reply" and message.get("ref") == self._pending_heartbeat:
                self._pending_heartbeat = None
            return
        if topic != self.topic:
            return
        if event == "postgres_changes":
            self._emit_change()
        elif event in ("phx_error", "phx_close"):
            raise ChangeFeedError(f"channel {event}")
        elif event == "system":
            payload = message.get("payload", {})
            if payload.get("status") == "error":
                raise ChangeFeedError(f"channel error: {payload.get('message')}")

    def _emit_change(self) -> None:
        try:
            self._on_change()
        except Exception:
            logger.exception("Change-feed callback failed")

    def _emit_error(self, error: Exception) -> None:
        if self._on_error is None:
            return
        if not isinstance(error, ChangeFeedError):
            error = ChangeFeedError(str(error))
        try:
            self._on_error(error)
        except Exception:
            logger.exception("Change-feed error callback failed")

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _message(
        self,
        topic: str,
        event: str,
        payload: dict,
        ref: str | None = None,
        join_ref: str | None = None,
    ) -> str:
        return json.dumps(
            {
                "topic": topic,
                "event": event,
                "payload": payload,
                "ref": ref or self._next_ref(),
                "join_ref": join_ref,
            },
        )

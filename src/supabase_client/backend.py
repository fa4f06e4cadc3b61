"""Bookmark backend backed by a Supabase project."""
import logging

import httpx

from core.config import Settings
from schemas.bookmark import Bookmark
from schemas.identity import AuthSession, Identity, OAuthRedirect
from services.backend import ChangeCallback, ErrorCallback
from services.exceptions import RemoteStoreError

from . import auth
from .api_client import api_delete, api_get, api_post, get_headers, store_error
from .realtime import Connect, RealtimeSubscription

logger = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"


class SupabaseBackend:
    """
    One client session against a Supabase project.

    ``client`` is shared across sessions (connection reuse); the access token
    is what makes an instance session-scoped. Row-level security on the
    bookmarks table restricts every query to the token's own rows.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        access_token: str | None = None,
        connect: Connect | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self.access_token = access_token
        self._connect = connect

    @property
    def _headers(self) -> dict[str, str]:
        return get_headers(self._settings.supabase_anon_key, self.access_token)

    def _table_path(self, table: str | None = None) -> str:
        return f"{REST_PREFIX}/{table or self._settings.bookmarks_table}"

    # Auth

    async def get_current_identity(self) -> Identity | None:
        if not self.access_token:
            return None
        return await auth.fetch_user(self._client, self._headers)

    async def sign_in_with_provider(self, provider: str, redirect_to: str) -> OAuthRedirect:
        return auth.start_sign_in(self._settings.supabase_url, provider, redirect_to)

    async def exchange_code_for_session(self, code: str, code_verifier: str) -> AuthSession:
        session = await auth.exchange_code(self._client, self._headers, code, code_verifier)
        self.access_token = session.access_token
        return session

    async def sign_out(self) -> None:
        if self.access_token:
            try:
                await auth.logout(self._client, self._headers)
            finally:
                self.access_token = None

    # Table

    async def query_bookmarks(self, owner_id: str) -> list[Bookmark]:
        try:
            rows = await api_get(
                self._client,
                self._table_path(),
                self._headers,
                params={
                    "select": "*",
                    "user_id": f"eq.{owner_id}",
                    "order": "created_at.desc",
                },
            )
        except httpx.HTTPError as e:
            raise store_error("query", e) from e
        return [Bookmark.model_validate(row) for row in rows]

    async def insert_bookmark(self, title: str, url: str, owner_id: str) -> Bookmark:
        headers = {**self._headers, "Prefer": "return=representation"}
        try:
            rows = await api_post(
                self._client,
                self._table_path(),
                headers,
                json=[{"title": title, "url": url, "user_id": owner_id}],
            )
        except httpx.HTTPError as e:
            raise store_error("insert", e) from e
        if not rows:
            raise RemoteStoreError("insert", "no row returned")
        return Bookmark.model_validate(rows[0])

    async def delete_bookmark(self, bookmark_id: str) -> None:
        try:
            await api_delete(
                self._client,
                self._table_path(),
                self._headers,
                params={"id": f"eq.{bookmark_id}"},
            )
        except httpx.HTTPError as e:
            raise store_error("delete", e) from e

    # Change feed

    async def subscribe_to_changes(
        self,
        table: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> RealtimeSubscription:
        """
        Join the realtime channel for ``table``.

        Waits for the first join attempt so that changes made after this call
        returns are delivered. A failed first attempt is reported through
        ``on_error`` and retried in the background.
        """
        kwargs = {"connect": self._connect} if self._connect is not None else {}
        subscription = RealtimeSubscription(
            url=self._settings.realtime_url,
            channel=self._settings.realtime_channel,
            table=table,
            on_change=on_change,
            on_error=on_error,
            access_token=self.access_token,
            heartbeat_interval=self._settings.realtime_heartbeat_seconds,
            max_reconnect_delay=self._settings.realtime_reconnect_max_delay,
            **kwargs,
        )
        subscription.start()
        await subscription.wait_first_attempt(self._settings.http_timeout)
        return subscription

    async def unsubscribe(self, handle: RealtimeSubscription) -> None:
        await handle.close()

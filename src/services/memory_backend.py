"""
In-memory implementation of the bookmark backend.

Used in DEV_MODE and by the test suite. One ``InMemoryStore`` plays the part of
the managed service (auth sessions, the bookmarks table and its change feed);
each ``InMemoryBackend`` is one client session against it, so several sessions
for the same identity can share a store and see each other's changes.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode
from uuid import uuid4

from schemas.bookmark import Bookmark, sort_newest_first
from schemas.identity import AuthSession, Identity, OAuthRedirect
from services.backend import ChangeCallback, ErrorCallback
from services.exceptions import AuthenticationError, ChangeFeedError, RemoteStoreError

logger = logging.getLogger(__name__)

DEV_IDENTITY = Identity(id="dev|local-development-user", email="dev@localhost")


@dataclass(frozen=True)
class MemorySubscription:
    """Handle for a change-feed subscription on the in-memory store."""

    table: str
    subscription_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class _Subscriber:
    handle: MemorySubscription
    on_change: ChangeCallback
    on_error: ErrorCallback | None


class InMemoryStore:
    """Shared state standing in for the remote auth service and bookmarks table."""

    def __init__(self, table: str = "bookmarks") -> None:
        self.table = table
        self._records: dict[str, Bookmark] = {}
        self._sessions: dict[str, Identity] = {}
        self._auth_codes: dict[str, tuple[Identity, str]] = {}
        self._subscribers: dict[str, _Subscriber] = {}
        self._last_created_at: datetime | None = None

    # Auth

    def issue_session(self, identity: Identity) -> str:
        """Create an access token for ``identity``."""
        token = secrets.token_urlsafe(24)
        self._sessions[token] = identity
        return token

    def identity_for(self, token: str | None) -> Identity | None:
        """Return the identity an access token belongs to, if still valid."""
        if token is None:
            return None
        return self._sessions.get(token)

    def revoke(self, token: str) -> None:
        """Invalidate an access token."""
        self._sessions.pop(token, None)

    def issue_auth_code(self, identity: Identity, code_verifier: str) -> str:
        """Create a one-time code that completes a sign-in for ``identity``."""
        code = secrets.token_urlsafe(16)
        self._auth_codes[code] = (identity, code_verifier)
        return code

    def redeem_auth_code(self, code: str, code_verifier: str) -> Identity:
        """Exchange a one-time code for its identity."""
        entry = self._auth_codes.pop(code, None)
        if entry is None:
            raise AuthenticationError("Invalid or expired auth code")
        identity, expected_verifier = entry
        if not secrets.compare_digest(expected_verifier, code_verifier):
            raise AuthenticationError("Code verifier mismatch")
        return identity

    # Table

    def query(self, owner_id: str) -> list[Bookmark]:
        """Return the owner's bookmarks, newest first."""
        return sort_newest_first(
            [b for b in self._records.values() if b.user_id == owner_id],
        )

    def get(self, bookmark_id: str) -> Bookmark | None:
        return self._records.get(bookmark_id)

    def insert(self, title: str, url: str, owner_id: str) -> Bookmark:
        """Insert a row, assigning its canonical id and timestamp."""
        bookmark = Bookmark(
            id=str(uuid4()),
            title=title,
            url=url,
            user_id=owner_id,
            created_at=self._next_timestamp(),
        )
        self._records[bookmark.id] = bookmark
        self._notify()
        return bookmark

    def delete(self, bookmark_id: str, owner_id: str) -> None:
        """Delete a row the owner can see. Deleting a missing row changes nothing."""
        bookmark = self._records.get(bookmark_id)
        if bookmark is None or bookmark.user_id != owner_id:
            return
        del self._records[bookmark_id]
        self._notify()

    def _next_timestamp(self) -> datetime:
        # Strictly increasing, so rows inserted back-to-back keep their order
        now = datetime.now(UTC)
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    # Change feed

    def subscribe(
        self,
        table: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None,
    ) -> MemorySubscription:
        handle = MemorySubscription(table=table)
        self._subscribers[handle.subscription_id] = _Subscriber(handle, on_change, on_error)
        return handle

    def unsubscribe(self, handle: MemorySubscription) -> None:
        self._subscribers.pop(handle.subscription_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def drop_subscriptions(self, reason: str = "connection lost") -> None:
        """Simulate the feed dropping: every subscriber's error callback fires."""
        error = ChangeFeedError(reason)
        for subscriber in list(self._subscribers.values()):
            if subscriber.on_error is not None:
                subscriber.on_error(error)

    def _notify(self) -> None:
        # Notifications are pushed after the write returns, like a real feed
        loop = asyncio.get_running_loop()
        for subscriber in list(self._subscribers.values()):
            if subscriber.handle.table == self.table:
                loop.call_soon(self._deliver, subscriber.handle.subscription_id)

    def _deliver(self, subscription_id: str) -> None:
        subscriber = self._subscribers.get(subscription_id)
        if subscriber is None:
            return
        try:
            subscriber.on_change()
        except Exception:
            logger.exception("Change-feed callback failed")


class InMemoryBackend:
    """One client session against an ``InMemoryStore``."""

    def __init__(
        self,
        store: InMemoryStore,
        access_token: str | None = None,
        sign_in_identity: Identity = DEV_IDENTITY,
    ) -> None:
        self.store = store
        self.access_token = access_token
        self._sign_in_identity = sign_in_identity

    async def get_current_identity(self) -> Identity | None:
        return self.store.identity_for(self.access_token)

    async def sign_in_with_provider(self, provider: str, redirect_to: str) -> OAuthRedirect:
        """Skip the provider and send the browser straight back with a code."""
        code_verifier = secrets.token_urlsafe(32)
        code = self.store.issue_auth_code(self._sign_in_identity, code_verifier)
        return OAuthRedirect(
            provider=provider,
            url=f"{redirect_to}?{urlencode({'code': code})}",
            code_verifier=code_verifier,
        )

    async def exchange_code_for_session(self, code: str, code_verifier: str) -> AuthSession:
        identity = self.store.redeem_auth_code(code, code_verifier)
        self.access_token = self.store.issue_session(identity)
        return AuthSession(access_token=self.access_token, identity=identity)

    async def sign_out(self) -> None:
        if self.access_token is not None:
            self.store.revoke(self.access_token)
        self.access_token = None

    async def query_bookmarks(self, owner_id: str) -> list[Bookmark]:
        self._check_owner("query", owner_id)
        return self.store.query(owner_id)

    async def insert_bookmark(self, title: str, url: str, owner_id: str) -> Bookmark:
        self._check_owner("insert", owner_id)
        return self.store.insert(title, url, owner_id)

    async def delete_bookmark(self, bookmark_id: str) -> None:
        identity = self.store.identity_for(self.access_token)
        if identity is None:
            raise RemoteStoreError("delete", "not authenticated", status_code=401)
        self.store.delete(bookmark_id, identity.id)

    async def subscribe_to_changes(
        self,
        table: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> MemorySubscription:
        return self.store.subscribe(table, on_change, on_error)

    async def unsubscribe(self, handle: MemorySubscription) -> None:
        self.store.unsubscribe(handle)

    def _check_owner(self, operation: str, owner_id: str) -> None:
        # Mirrors row-level security: a session only touches its own rows
        identity = self.store.identity_for(self.access_token)
        if identity is None:
            raise RemoteStoreError(operation, "not authenticated", status_code=401)
        if identity.id != owner_id:
            raise RemoteStoreError(operation, "row-level security violation", status_code=403)

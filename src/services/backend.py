"""
Capability interface for the auth/store/change-feed service.

The synchronizer and the session gate only talk to the backend through this
protocol, so a Supabase project and the in-memory store are interchangeable.
A backend instance is session-scoped: it holds whatever credentials the
current browser session has, and ``get_current_identity`` answers for them.
"""
from collections.abc import Callable
from typing import Protocol

from schemas.bookmark import Bookmark
from schemas.identity import AuthSession, Identity, OAuthRedirect

ChangeCallback = Callable[[], None]
ErrorCallback = Callable[[Exception], None]


class SubscriptionHandle(Protocol):
    """Opaque handle returned by ``subscribe_to_changes``."""

    @property
    def table(self) -> str: ...


class BookmarkBackend(Protocol):
    async def get_current_identity(self) -> Identity | None: ...

    async def sign_in_with_provider(self, provider: str, redirect_to: str) -> OAuthRedirect: ...

    async def exchange_code_for_session(self, code: str, code_verifier: str) -> AuthSession: ...

    async def sign_out(self) -> None: ...

    async def query_bookmarks(self, owner_id: str) -> list[Bookmark]: ...

    async def insert_bookmark(self, title: str, url: str, owner_id: str) -> Bookmark: ...

    async def delete_bookmark(self, bookmark_id: str) -> None: ...

    async def subscribe_to_changes(
        self,
        table: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle: ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...

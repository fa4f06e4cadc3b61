"""Session gate: resolves the current identity and guards everything behind it."""
import asyncio
import logging
from collections.abc import Awaitable, Callable

from schemas.identity import Identity, OAuthRedirect
from services.backend import BookmarkBackend
from services.bookmark_sync import BookmarkSynchronizer
from services.exceptions import AuthenticationError, NotAuthenticatedError

logger = logging.getLogger(__name__)

Redirect = Callable[[str], Awaitable[None] | None]


class SessionGate:
    """
    Holds the identity for one client session.

    ``resolve_session`` is called once when the session is mounted. An absent
    or invalid session sends the caller to ``login_path`` via ``redirect``;
    a valid one initializes the attached synchronizer. A session that later
    expires, whether found by ``verify_session`` or reported by the
    synchronizer, is cleared the same way.
    """

    def __init__(
        self,
        backend: BookmarkBackend,
        synchronizer: BookmarkSynchronizer | None = None,
        redirect: Redirect | None = None,
        login_path: str = "/login",
    ) -> None:
        self._backend = backend
        self.synchronizer = synchronizer
        self._redirect = redirect
        self.login_path = login_path
        self.identity: Identity | None = None
        self._generation = 0
        self._background_tasks: set[asyncio.Task] = set()
        if synchronizer is not None:
            synchronizer.on_session_expired = self.session_expired

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    async def resolve_session(self) -> Identity | None:
        """
        Ask the auth service who the caller is.

        Returns None after redirecting when there is no valid session. If the
        gate is closed while the auth call is in flight, the late answer is
        ignored entirely.
        """
        self._generation += 1
        generation = self._generation
        try:
            identity = await self._backend.get_current_identity()
        except AuthenticationError as e:
            logger.info("Session rejected by auth service: %s", e)
            identity = None

        if generation != self._generation:
            logger.debug("Discarding identity resolved after gate was closed")
            return None

        if identity is None:
            self.identity = None
            await self._go_to_login()
            return None

        self.identity = identity
        if self.synchronizer is not None:
            await self.synchronizer.initialize(identity)
        # None if the store rejected the token during the initial load
        return self.identity

    async def verify_session(self) -> Identity | None:
        """
        Re-check a resolved session with the auth service.

        Returns the identity while it is still valid. A revoked or expired
        session, or one that now belongs to someone else, is expired and None
        is returned. If the auth service cannot be reached the session is kept.
        """
        if self.identity is None:
            return None
        generation = self._generation
        try:
            current = await self._backend.get_current_identity()
        except AuthenticationError as e:
            logger.warning("Could not re-check session, keeping it: %s", e)
            return self.identity

        if generation != self._generation:
            return self.identity
        if current is None or current.id != self.identity.id:
            await self.expire()
            return None
        return self.identity

    async def expire(self) -> None:
        """Forget an identity the auth service no longer accepts and go to login."""
        if self.identity is None:
            return
        self._clear_identity()
        await self._end_session()

    def session_expired(self) -> None:
        """Expire from synchronous code; the cleanup runs as a tracked task."""
        if self.identity is None:
            return
        self._clear_identity()
        task = asyncio.create_task(self._end_session())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def require_identity(self) -> Identity:
        """Return the resolved identity or raise ``NotAuthenticatedError``."""
        if self.identity is None:
            raise NotAuthenticatedError()
        return self.identity

    async def sign_in_url(self, provider: str, redirect_to: str) -> OAuthRedirect:
        """Start a redirect-based sign-in with an external provider."""
        return await self._backend.sign_in_with_provider(provider, redirect_to)

    async def sign_out(self) -> None:
        """End the session, drop local state and go back to the login page."""
        self.require_identity()
        self._generation += 1
        if self.synchronizer is not None:
            await self.synchronizer.teardown()
        try:
            await self._backend.sign_out()
        finally:
            self.identity = None
        await self._go_to_login()

    async def close(self) -> None:
        """Discard the gate: ignore in-flight resolution and stop syncing."""
        self._generation += 1
        self.identity = None
        await self.wait_idle()
        if self.synchronizer is not None:
            await self.synchronizer.teardown()

    async def wait_idle(self) -> None:
        """Wait for scheduled session cleanup to finish."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    def _clear_identity(self) -> None:
        logger.info("Session for %s expired", self.identity.id if self.identity else None)
        self._generation += 1
        self.identity = None

    async def _end_session(self) -> None:
        if self.synchronizer is not None:
            await self.synchronizer.teardown()
        await self._go_to_login()

    async def _go_to_login(self) -> None:
        if self._redirect is None:
            return
        result = self._redirect(self.login_path)
        if result is not None:
            await result

"""
Per-browser-session synchronizers.

Each signed-in browser session (identified by its access token cookie) gets
its own backend, ``SessionGate`` and ``BookmarkSynchronizer``. The gate is
resolved when the session is first seen and re-checked with the auth service
at most every ``session_recheck_seconds`` after that; the synchronizer stays
subscribed to the change feed until logout, expiry or shutdown.
"""
import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial

from core.config import Settings
from services.backend import BookmarkBackend
from services.bookmark_sync import BookmarkSynchronizer
from services.session_gate import SessionGate

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str | None], BookmarkBackend]


@dataclass
class SyncSession:
    """Everything bound to one browser session."""

    backend: BookmarkBackend
    gate: SessionGate
    synchronizer: BookmarkSynchronizer
    redirects: list[str] = field(default_factory=list)
    verified_at: float = field(default_factory=time.monotonic)


class SyncSessionRegistry:
    """Creates, caches and closes ``SyncSession`` objects keyed by access token."""

    def __init__(self, backend_factory: BackendFactory, settings: Settings) -> None:
        self._backend_factory = backend_factory
        self._settings = settings
        self._sessions: dict[str, SyncSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def anonymous_backend(self) -> BookmarkBackend:
        """Backend without a user session, for starting and completing sign-in."""
        return self._backend_factory(None)

    def backend_for(self, token: str | None) -> BookmarkBackend:
        return self._backend_factory(token)

    async def get(self, token: str | None) -> SyncSession | None:
        """
        Return the live session for ``token``, resolving it on first use.

        Returns None when the token does not belong to a valid session; such
        tokens are not cached. A cached session that has expired is dropped
        and None is returned, so the next request resolves the token afresh.
        """
        if not token:
            return None
        session = self._sessions.get(token)
        if session is not None:
            if await self._still_valid(session):
                return session
            await self.drop(token)
            return None

        lock = self._locks.setdefault(token, asyncio.Lock())
        async with lock:
            session = self._sessions.get(token)
            if session is not None:
                return session
            session = self._build(token)
            identity = await session.gate.resolve_session()
            if identity is None:
                self._locks.pop(token, None)
                return None
            self._sessions[token] = session
            logger.info("Opened bookmark session for %s", identity.id)
            return session

    async def sign_out(self, token: str) -> None:
        """Sign the session out remotely and forget it."""
        session = self._forget(token)
        if session is not None and session.gate.is_authenticated:
            await session.gate.sign_out()
            return
        # Never resolved in this process: still revoke the token remotely
        if session is not None:
            await session.gate.close()
        await self._backend_factory(token).sign_out()

    async def drop(self, token: str) -> None:
        """Forget a session without signing it out."""
        session = self._forget(token)
        if session is not None:
            await session.gate.close()

    async def close_all(self) -> None:
        """Tear down every session (application shutdown)."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._locks.clear()
        for session in sessions:
            await session.gate.close()

    async def _still_valid(self, session: SyncSession) -> bool:
        if not session.gate.is_authenticated:
            return False
        if time.monotonic() - session.verified_at < self._settings.session_recheck_seconds:
            return True
        identity = await session.gate.verify_session()
        session.verified_at = time.monotonic()
        return identity is not None

    def _forget(self, token: str) -> SyncSession | None:
        self._locks.pop(token, None)
        return self._sessions.pop(token, None)

    def _redirected(self, token: str, redirects: list[str], path: str) -> None:
        redirects.append(path)
        # An expired session leaves the registry as soon as it is sent to login
        session = self._sessions.get(token)
        if session is not None and not session.gate.is_authenticated:
            self._forget(token)
            logger.info("Dropped expired bookmark session")

    def _build(self, token: str) -> SyncSession:
        backend = self._backend_factory(token)
        synchronizer = BookmarkSynchronizer(backend, table=self._settings.bookmarks_table)
        redirects: list[str] = []
        gate = SessionGate(
            backend,
            synchronizer=synchronizer,
            redirect=partial(self._redirected, token, redirects),
            login_path=self._settings.login_path,
        )
        return SyncSession(
            backend=backend, gate=gate, synchronizer=synchronizer, redirects=redirects,
        )


# Global registry state using a container to avoid global statement
class _RegistryState:
    """Container for the global session registry."""

    registry: SyncSessionRegistry | None = None


_state = _RegistryState()


def get_session_registry() -> SyncSessionRegistry:
    """Get the global session registry (set during app lifespan)."""
    if _state.registry is None:
        raise RuntimeError("Session registry not initialized")
    return _state.registry


def set_session_registry(registry: SyncSessionRegistry | None) -> None:
    """Set the global session registry."""
    _state.registry = registry

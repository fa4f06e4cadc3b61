"""
Client-side bookmark state synchronization.

``BookmarkSynchronizer`` keeps the current identity's bookmarks in memory,
newest first. User intents are applied to the local list immediately
(optimistic update) and forwarded to the backend as tracked tasks whose
outcome either confirms or rolls back the local change. Any change-feed
notification triggers a full re-fetch that replaces the list.

Everything runs on one event loop, so there are no locks. Late results are
filtered instead:

- ``_epoch`` is bumped by ``initialize``/``teardown``; work started under an
  older epoch never touches state.
- each refresh gets a generation number; a refresh that completes after a
  newer one has been applied is dropped.
"""
import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from schemas.bookmark import Bookmark, BookmarkCreate, first_error_message, sort_newest_first
from schemas.identity import Identity
from services.backend import BookmarkBackend, SubscriptionHandle
from services.exceptions import BookmarkValidationError, NotAuthenticatedError, RemoteStoreError

logger = logging.getLogger(__name__)

SAVE_FAILED_MESSAGE = "Could not save bookmark"
DELETE_FAILED_MESSAGE = "Could not delete bookmark"
LOAD_FAILED_MESSAGE = "Could not load bookmarks"

# A fetched row older than this, relative to a provisional entry, is never
# taken to be that entry's insert
CLAIM_WINDOW = timedelta(minutes=1)


@dataclass(frozen=True)
class SyncState:
    """Immutable snapshot handed to listeners."""

    bookmarks: tuple[Bookmark, ...]
    stale: bool
    last_error: str | None


StateListener = Callable[[SyncState], None]


def is_session_rejected(error: Exception) -> bool:
    """True when the store refused the call because the access token is no longer valid."""
    return isinstance(error, RemoteStoreError) and error.status_code == 401


@dataclass
class _PendingInsert:
    provisional: Bookmark
    # Ids already in the list when the add was issued; a new row with the same
    # title and url that shows up in a refresh is taken to be this insert.
    known_ids: frozenset[str]
    cancelled: bool = False
    # Row a refresh matched to this insert, and the row already deleted for it
    claimed_id: str | None = None
    deleted_id: str | None = None


class BookmarkSynchronizer:
    """Optimistic, feed-reconciled view of one identity's bookmarks."""

    def __init__(
        self,
        backend: BookmarkBackend,
        table: str = "bookmarks",
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
        on_session_expired: Callable[[], None] | None = None,
    ) -> None:
        self._backend = backend
        self._table = table
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._clock = clock or (lambda: datetime.now(UTC))
        # Called once when the store rejects the session's token; the owner is
        # expected to tear the synchronizer down
        self.on_session_expired = on_session_expired

        self.identity: Identity | None = None
        self.stale = False
        self.last_error: str | None = None
        self._bookmarks: list[Bookmark] = []
        self._subscription: SubscriptionHandle | None = None

        self._epoch = 0
        self._refresh_issued = 0
        self._refresh_applied = 0
        self._pending_inserts: dict[str, _PendingInsert] = {}
        self._pending_deletes: dict[str, Bookmark] = {}

        self._mutation_tasks: set[asyncio.Task] = set()
        self._refresh_tasks: set[asyncio.Task] = set()
        self._listeners: list[StateListener] = []

    @property
    def bookmarks(self) -> tuple[Bookmark, ...]:
        return tuple(self._bookmarks)

    @property
    def state(self) -> SyncState:
        return SyncState(
            bookmarks=tuple(self._bookmarks),
            stale=self.stale,
            last_error=self.last_error,
        )

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Lifecycle

    async def initialize(self, identity: Identity) -> None:
        """
        Bind to ``identity``: subscribe to the change feed, then load the list.

        Subscribing first means a change landing between the two calls still
        triggers a refresh. Feed or load failures leave the synchronizer usable
        but ``stale``.
        """
        await self.teardown()
        self._epoch += 1
        epoch = self._epoch
        self.identity = identity

        handle: SubscriptionHandle | None = None
        try:
            handle = await self._backend.subscribe_to_changes(
                self._table,
                partial(self._on_change, epoch),
                partial(self._on_feed_error, epoch),
            )
        except Exception as e:
            logger.warning("Change-feed subscription failed for %s: %s", identity.id, e)

        if epoch != self._epoch:
            # Torn down while subscribing
            if handle is not None:
                await self._backend.unsubscribe(handle)
            return
        if handle is None:
            self.stale = True
        self._subscription = handle
        await self._refresh(epoch)

    async def teardown(self) -> None:
        """
        Unbind from the current identity.

        Closes the subscription and cancels scheduled refreshes. Remote writes
        already issued are awaited so they are not lost, but their results no
        longer touch local state. Safe to call repeatedly.
        """
        self._epoch += 1
        handle, self._subscription = self._subscription, None
        had_identity = self.identity is not None
        self.identity = None
        self._bookmarks = []
        self._pending_inserts.clear()
        self._pending_deletes.clear()
        self.stale = False
        self.last_error = None

        for task in list(self._refresh_tasks):
            task.cancel()
        if handle is not None:
            try:
                await self._backend.unsubscribe(handle)
            except Exception as e:
                logger.warning("Failed to close change-feed subscription: %s", e)
        if self._mutation_tasks:
            await asyncio.gather(*self._mutation_tasks, return_exceptions=True)
        if had_identity:
            logger.info("Bookmark synchronizer torn down")

    async def refresh(self) -> None:
        """Re-fetch the list and replace local state."""
        self._require_identity()
        await self._refresh(self._epoch)

    async def wait_idle(self) -> None:
        """Wait until no mutation or refresh is outstanding."""
        while True:
            # Let queued feed callbacks schedule their refreshes first
            await asyncio.sleep(0)
            tasks = self._mutation_tasks | self._refresh_tasks
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # Intents

    def add_bookmark(self, title: str, url: str) -> Bookmark:
        """
        Validate, prepend a provisional bookmark, and insert it remotely.

        Returns the provisional bookmark. Raises ``BookmarkValidationError``
        without touching state when the input is invalid.
        """
        identity = self._require_identity()
        try:
            data = BookmarkCreate(title=title, url=url)
        except ValidationError as e:
            raise BookmarkValidationError(first_error_message(e)) from None

        provisional = Bookmark(
            id=self._id_factory(),
            title=data.title,
            url=data.url,
            user_id=identity.id,
            created_at=self._clock(),
            pending=True,
        )
        pending = _PendingInsert(
            provisional=provisional,
            known_ids=frozenset(b.id for b in self._bookmarks),
        )
        self._pending_inserts[provisional.id] = pending
        self._bookmarks = [provisional, *self._bookmarks]
        self.last_error = None
        self._notify()

        self._track(self._mutation_tasks, self._run_insert(self._epoch, pending))
        return provisional

    def delete_bookmark(self, bookmark_id: str) -> bool:
        """
        Remove a bookmark locally and delete it remotely.

        Returns False, without any remote call, if the id is not in the list.
        Deleting a provisional entry is deferred until its insert confirms.
        Deleting a row a refresh matched to a pending insert also cancels that
        insert, so its late reply does not bring the row back.
        """
        self._require_identity()
        target = next((b for b in self._bookmarks if b.id == bookmark_id), None)
        if target is None:
            return False

        self._bookmarks = [b for b in self._bookmarks if b.id != bookmark_id]
        self.last_error = None
        pending = self._pending_inserts.get(bookmark_id)
        if pending is not None:
            pending.cancelled = True
        else:
            for claimant in self._pending_inserts.values():
                if claimant.claimed_id == bookmark_id:
                    claimant.cancelled = True
                    claimant.deleted_id = bookmark_id
            self._schedule_delete(self._epoch, target)
        self._notify()
        return True

    # Remote work

    async def _run_insert(self, epoch: int, pending: _PendingInsert) -> None:
        provisional = pending.provisional
        try:
            canonical = await self._backend.insert_bookmark(
                provisional.title, provisional.url, provisional.user_id,
            )
        except Exception as e:
            logger.warning("Failed to save bookmark %s: %s", provisional.url, e)
            if epoch != self._epoch:
                return
            if is_session_rejected(e):
                self._expire()
                return
            self._pending_inserts.pop(provisional.id, None)
            if pending.cancelled:
                return
            self._bookmarks = [b for b in self._bookmarks if b.id != provisional.id]
            self.last_error = SAVE_FAILED_MESSAGE
            self._notify()
            return

        if epoch != self._epoch:
            return
        self._pending_inserts.pop(provisional.id, None)
        others = [b for b in self._bookmarks if b.id not in (provisional.id, canonical.id)]
        if pending.cancelled:
            self._bookmarks = others
            if canonical.id != pending.deleted_id and canonical.id not in self._pending_deletes:
                self._schedule_delete(epoch, canonical)
        elif canonical.id in self._pending_deletes:
            self._bookmarks = others
        else:
            self._bookmarks = sort_newest_first([canonical, *others])
        self._notify()

    def _schedule_delete(self, epoch: int, target: Bookmark) -> None:
        self._pending_deletes[target.id] = target
        self._track(self._mutation_tasks, self._run_delete(epoch, target))

    async def _run_delete(self, epoch: int, target: Bookmark) -> None:
        try:
            await self._backend.delete_bookmark(target.id)
        except Exception as e:
            logger.warning("Failed to delete bookmark %s: %s", target.id, e)
            if epoch != self._epoch:
                return
            if is_session_rejected(e):
                self._expire()
                return
            self._pending_deletes.pop(target.id, None)
            for claimant in self._pending_inserts.values():
                if claimant.deleted_id == target.id:
                    claimant.cancelled = False
                    claimant.deleted_id = None
            if all(b.id != target.id for b in self._bookmarks):
                self._bookmarks = sort_newest_first([*self._bookmarks, target])
            self.last_error = DELETE_FAILED_MESSAGE
            self._notify()
            return

        if epoch == self._epoch:
            self._pending_deletes.pop(target.id, None)

    async def _refresh(self, epoch: int) -> None:
        identity = self.identity
        if identity is None or epoch != self._epoch:
            return
        self._refresh_issued += 1
        generation = self._refresh_issued
        try:
            fetched = await self._backend.query_bookmarks(identity.id)
        except Exception as e:
            if epoch != self._epoch:
                return
            logger.warning("Failed to load bookmarks for %s: %s", identity.id, e)
            if is_session_rejected(e):
                self._expire()
                return
            self.stale = True
            self.last_error = LOAD_FAILED_MESSAGE
            self._notify()
            return

        if epoch != self._epoch or generation < self._refresh_applied:
            logger.debug("Discarding out-of-date bookmark refresh %d", generation)
            return
        self._refresh_applied = generation
        self._bookmarks = self._reconcile(fetched)
        self.stale = False
        self._notify()

    def _reconcile(self, fetched: list[Bookmark]) -> list[Bookmark]:
        """Merge a fetched list with the mutations still in flight."""
        visible = [b for b in fetched if b.id not in self._pending_deletes]
        claimed: set[str] = set()
        hidden: set[str] = set()
        overlay: list[Bookmark] = []
        for pending in self._pending_inserts.values():
            provisional = pending.provisional
            match = next(
                (
                    b for b in visible
                    if b.id not in pending.known_ids
                    and b.id not in claimed
                    and b.title == provisional.title
                    and b.url == provisional.url
                    and b.created_at >= provisional.created_at - CLAIM_WINDOW
                ),
                None,
            )
            if match is not None:
                claimed.add(match.id)
                pending.claimed_id = match.id
                if pending.cancelled:
                    hidden.add(match.id)
            elif not pending.cancelled:
                overlay.append(provisional)
        return sort_newest_first(overlay + [b for b in visible if b.id not in hidden])

    # Feed callbacks

    def _on_change(self, epoch: int) -> None:
        if epoch != self._epoch or self.identity is None:
            return
        self._track(self._refresh_tasks, self._refresh(epoch))

    def _on_feed_error(self, epoch: int, error: Exception) -> None:
        if epoch != self._epoch:
            return
        logger.warning("Bookmark change feed interrupted: %s", error)
        self.stale = True
        self._notify()

    def _expire(self) -> None:
        """
        Drop the identity after the store rejected its token.

        State is cleared at once so no further intent is accepted; closing the
        subscription is left to ``teardown``, which ``on_session_expired``
        owners call.
        """
        identity = self.identity
        logger.warning(
            "Session for %s rejected by the store, signing out",
            identity.id if identity else None,
        )
        self._epoch += 1
        self.identity = None
        self._bookmarks = []
        self._pending_inserts.clear()
        self._pending_deletes.clear()
        self.stale = False
        self.last_error = None
        self._notify()
        if self.on_session_expired is not None:
            try:
                self.on_session_expired()
            except Exception:
                logger.exception("Session expiry callback failed")

    # Helpers

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise NotAuthenticatedError()
        return self.identity

    def _track(self, tasks: set[asyncio.Task], coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def _notify(self) -> None:
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Bookmark state listener failed")


@dataclass
class BookmarkDraft:
    """Form state for the add intent. Cleared once a submission is accepted."""

    title: str = ""
    url: str = ""

    def submit(self, synchronizer: BookmarkSynchronizer) -> Bookmark:
        bookmark = synchronizer.add_bookmark(self.title, self.url)
        self.clear()
        return bookmark

    def clear(self) -> None:
        self.title = ""
        self.url = ""

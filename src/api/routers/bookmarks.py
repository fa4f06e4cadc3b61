"""Bookmark endpoints: current list, add/delete intents and live updates."""
import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from api.dependencies import get_sync_session
from api.sessions import SyncSession
from schemas.bookmark import BookmarkIntent, BookmarkResponse, SyncStateResponse
from services.bookmark_sync import BookmarkSynchronizer, SyncState
from services.exceptions import BookmarkValidationError

router = APIRouter(prefix="/bookmarks", tags=["bookmarks"])

KEEPALIVE_SECONDS = 15.0


def to_response(state: SyncState) -> SyncStateResponse:
    """Convert a synchronizer snapshot into the API shape."""
    return SyncStateResponse(
        items=[BookmarkResponse.model_validate(b) for b in state.bookmarks],
        stale=state.stale,
        last_error=state.last_error,
    )


def format_event(state: SyncState) -> str:
    """Render a snapshot as one server-sent event."""
    return f"event: state\ndata: {to_response(state).model_dump_json()}\n\n"


async def state_events(
    synchronizer: BookmarkSynchronizer,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """
    Yield the current state, then every state change, until the client leaves
    or the session ends.

    Sends a comment line when nothing changed for ``keepalive`` seconds so
    proxies keep the connection open.
    """
    queue: asyncio.Queue[SyncState] = asyncio.Queue()
    remove = synchronizer.add_listener(queue.put_nowait)
    try:
        yield format_event(synchronizer.state)
        # Once the session ends, only the snapshots already queued are sent
        while synchronizer.identity is not None or not queue.empty():
            if await is_disconnected():
                break
            try:
                state = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_event(state)
    finally:
        remove()


@router.get("/", response_model=SyncStateResponse)
async def list_bookmarks(
    session: SyncSession = Depends(get_sync_session),
) -> SyncStateResponse:
    """List the caller's bookmarks, newest first, including pending ones."""
    return to_response(session.synchronizer.state)


@router.post("/", response_model=BookmarkResponse, status_code=201)
async def create_bookmark(
    data: BookmarkIntent,
    session: SyncSession = Depends(get_sync_session),
) -> BookmarkResponse:
    """
    Add a bookmark.

    Returns the provisional entry immediately; the remote insert completes in
    the background and shows up on the event stream.
    """
    try:
        bookmark = session.synchronizer.add_bookmark(data.title, data.url)
    except BookmarkValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return BookmarkResponse.model_validate(bookmark)


@router.get("/events")
async def bookmark_events(
    request: Request,
    session: SyncSession = Depends(get_sync_session),
) -> StreamingResponse:
    """Stream state snapshots as server-sent events."""
    return StreamingResponse(
        state_events(session.synchronizer, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: str,
    session: SyncSession = Depends(get_sync_session),
) -> None:
    """Delete a bookmark."""
    if not session.synchronizer.delete_bookmark(bookmark_id):
        raise HTTPException(status_code=404, detail="Bookmark not found")

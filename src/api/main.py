"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import auth, bookmarks, health
from api.sessions import BackendFactory, SyncSessionRegistry, set_session_registry
from core.config import Settings, get_settings
from services.exceptions import NotAuthenticatedError
from services.memory_backend import InMemoryBackend, InMemoryStore
from supabase_client import SupabaseBackend

logger = logging.getLogger(__name__)


def build_backend_factory(
    settings: Settings,
    http_client: httpx.AsyncClient | None,
) -> BackendFactory:
    """
    Choose the backend for this process.

    DEV_MODE serves everything from one in-memory store; otherwise every session
    gets a Supabase backend sharing ``http_client``.
    """
    if settings.dev_mode or http_client is None:
        store = InMemoryStore(table=settings.bookmarks_table)
        logger.warning("DEV_MODE enabled: using in-memory backend, authentication bypassed")
        return lambda token: InMemoryBackend(store, access_token=token)
    return lambda token: SupabaseBackend(http_client, settings, access_token=token)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()

    # Startup: shared HTTP client for all Supabase sessions
    http_client: httpx.AsyncClient | None = None
    if not app_settings.dev_mode:
        http_client = httpx.AsyncClient(
            base_url=app_settings.supabase_url,
            timeout=app_settings.http_timeout,
        )

    registry = SyncSessionRegistry(build_backend_factory(app_settings, http_client), app_settings)
    set_session_registry(registry)

    yield

    # Shutdown: close subscriptions before the HTTP client goes away
    await registry.close_all()
    set_session_registry(None)
    if http_client is not None:
        await http_client.aclose()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking - API shouldn't be framed
        response.headers["X-Frame-Options"] = "DENY"
        return response


app_settings = get_settings()

app = FastAPI(
    title="Smart Bookmarks API",
    description="Personal bookmarks with optimistic updates and live sync.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(NotAuthenticatedError)
async def not_authenticated_handler(
    _request: Request, _exc: NotAuthenticatedError,
) -> JSONResponse:
    """Session ended between resolving and handling the request."""
    return JSONResponse(
        status_code=401,
        content={"detail": {"error": "not_authenticated", "login_url": app_settings.login_path}},
    )


app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(bookmarks.router)

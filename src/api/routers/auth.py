"""Sign-in, OAuth callback and sign-out endpoints."""
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.dependencies import get_session_token
from api.sessions import SyncSessionRegistry, get_session_registry
from core.config import Settings, get_settings
from services.exceptions import AuthenticationError
from services.session_gate import SessionGate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

PKCE_COOKIE_NAME = "sb-pkce-verifier"
PKCE_COOKIE_MAX_AGE = 600


@router.get("/login")
async def login(
    response_format: Literal["redirect", "json"] = Query(default="redirect", alias="format"),
    registry: SyncSessionRegistry = Depends(get_session_registry),
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Start signing in with the configured identity provider.

    Redirects the browser to the provider (or returns the URL as JSON) and keeps
    the PKCE verifier in a short-lived cookie for the callback.
    """
    gate = SessionGate(registry.anonymous_backend(), login_path=settings.login_path)
    redirect = await gate.sign_in_url(settings.oauth_provider, settings.redirect_url)

    response: Response
    if response_format == "json":
        response = JSONResponse({"login_url": redirect.url, "provider": redirect.provider})
    else:
        response = RedirectResponse(redirect.url, status_code=302)
    response.set_cookie(
        PKCE_COOKIE_NAME,
        redirect.code_verifier,
        max_age=PKCE_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: str | None = None,
    registry: SyncSessionRegistry = Depends(get_session_registry),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Finish sign-in: exchange the code for a session and store it in a cookie."""
    code_verifier = request.cookies.get(PKCE_COOKIE_NAME)
    if not code or not code_verifier:
        logger.info("OAuth callback without code or verifier")
        return RedirectResponse(settings.login_path, status_code=303)

    backend = registry.anonymous_backend()
    try:
        session = await backend.exchange_code_for_session(code, code_verifier)
    except AuthenticationError as e:
        logger.warning("OAuth code exchange failed: %s", e)
        return RedirectResponse(settings.login_path, status_code=303)

    response = RedirectResponse("/bookmarks/", status_code=303)
    response.set_cookie(
        settings.session_cookie_name,
        session.access_token,
        max_age=session.expires_in,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    response.delete_cookie(PKCE_COOKIE_NAME)
    return response


@router.post("/logout")
async def logout(
    token: str | None = Depends(get_session_token),
    registry: SyncSessionRegistry = Depends(get_session_registry),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Sign out, stop syncing this session and send the browser to the login page."""
    if token:
        try:
            await registry.sign_out(token)
        except AuthenticationError as e:
            logger.warning("Remote sign-out failed: %s", e)
    response = RedirectResponse(settings.login_path, status_code=303)
    response.delete_cookie(settings.session_cookie_name)
    return response

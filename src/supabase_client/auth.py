"""
Supabase Auth (GoTrue) calls.

Sign-in uses the PKCE flow: the browser is sent to the provider through
``/authorize`` with a code challenge, comes back to our callback with a code,
and the code plus the stored verifier are exchanged for an access token.
"""
import base64
import hashlib
import logging
import secrets
from urllib.parse import urlencode

import httpx

from schemas.identity import AuthSession, Identity, OAuthRedirect
from services.exceptions import AuthenticationError

from .api_client import api_get, api_post, describe_http_error

logger = logging.getLogger(__name__)

AUTH_PREFIX = "/auth/v1"


def generate_pkce_pair() -> tuple[str, str]:
    """Return a ``(code_verifier, code_challenge)`` pair using the S256 method."""
    code_verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def build_authorize_url(
    supabase_url: str,
    provider: str,
    redirect_to: str,
    code_challenge: str,
) -> str:
    """Build the URL that starts an OAuth sign-in with ``provider``."""
    query = urlencode(
        {
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge,
            "code_challenge_method": "s256",
        },
    )
    return f"{supabase_url.rstrip('/')}{AUTH_PREFIX}/authorize?{query}"


def start_sign_in(supabase_url: str, provider: str, redirect_to: str) -> OAuthRedirect:
    """Create the redirect for a provider sign-in along with its PKCE verifier."""
    code_verifier, code_challenge = generate_pkce_pair()
    return OAuthRedirect(
        provider=provider,
        url=build_authorize_url(supabase_url, provider, redirect_to, code_challenge),
        code_verifier=code_verifier,
    )


def identity_from_user(user: dict) -> Identity:
    """Map a GoTrue user object to an ``Identity``."""
    return Identity(id=str(user["id"]), email=user.get("email"))


async def fetch_user(client: httpx.AsyncClient, headers: dict[str, str]) -> Identity | None:
    """
    Return the identity the access token in ``headers`` belongs to.

    Returns None for a missing, expired or revoked token.

    Raises:
        AuthenticationError: If the auth service could not be reached or failed.
    """
    try:
        user = await api_get(client, f"{AUTH_PREFIX}/user", headers)
    except httpx.HTTPStatusError as e:
        if e.response.status_code in (401, 403):
            return None
        message, _ = describe_http_error(e)
        raise AuthenticationError(f"Could not fetch user: {message}") from e
    except httpx.RequestError as e:
        raise AuthenticationError(f"Auth service unavailable: {e}") from e
    if not user or "id" not in user:
        return None
    return identity_from_user(user)


async def exchange_code(
    client: httpx.AsyncClient,
    headers: dict[str, str],
    code: str,
    code_verifier: str,
) -> AuthSession:
    """
    Exchange an OAuth callback code for a session.

    Raises:
        AuthenticationError: If the code is invalid, expired or already used.
    """
    try:
        data = await api_post(
            client,
            f"{AUTH_PREFIX}/token",
            headers,
            json={"auth_code": code, "code_verifier": code_verifier},
            params={"grant_type": "pkce"},
        )
    except httpx.HTTPError as e:
        message, _ = describe_http_error(e)
        raise AuthenticationError(f"Code exchange failed: {message}") from e
    if not data or "access_token" not in data:
        raise AuthenticationError("Code exchange failed: no session returned")

    user = data.get("user")
    return AuthSession(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        identity=identity_from_user(user) if user else None,
    )


async def logout(client: httpx.AsyncClient, headers: dict[str, str]) -> None:
    """
    Revoke the session in ``headers``.

    A token the server no longer recognizes is already signed out.
    """
    try:
        await api_post(client, f"{AUTH_PREFIX}/logout", headers)
    except httpx.HTTPStatusError as e:
        if e.response.status_code in (401, 403, 404):
            logger.info("Session already invalid at sign-out")
            return
        message, _ = describe_http_error(e)
        raise AuthenticationError(f"Sign-out failed: {message}") from e
    except httpx.RequestError as e:
        raise AuthenticationError(f"Auth service unavailable: {e}") from e

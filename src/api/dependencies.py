"""FastAPI dependencies for injection."""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.sessions import SyncSession, SyncSessionRegistry, get_session_registry
from core.config import Settings, get_settings

# HTTP Bearer token scheme (browsers use the session cookie instead)
security = HTTPBearer(auto_error=False)


def get_session_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str | None:
    """Access token from the Authorization header, falling back to the session cookie."""
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(settings.session_cookie_name)


async def get_sync_session(
    token: str | None = Depends(get_session_token),
    registry: SyncSessionRegistry = Depends(get_session_registry),
    settings: Settings = Depends(get_settings),
) -> SyncSession:
    """
    Resolve the caller's session, or answer 401 with where to sign in.

    Bookmark endpoints only ever run with a resolved identity.
    """
    session = await registry.get(token)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "not_authenticated", "login_url": settings.login_path},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


__all__ = [
    "get_session_registry",
    "get_session_token",
    "get_settings",
    "get_sync_session",
]

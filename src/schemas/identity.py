"""Pydantic schemas for authenticated identities and auth sessions."""
from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """An authenticated user. ``id`` is opaque and stable across sessions."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None


class OAuthRedirect(BaseModel):
    """Where to send the browser to sign in, plus the PKCE verifier to keep."""

    provider: str
    url: str
    code_verifier: str


class AuthSession(BaseModel):
    """Tokens issued after a successful sign-in."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    identity: Identity | None = Field(default=None)

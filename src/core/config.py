"""Application configuration using pydantic-settings."""
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Supabase project - endpoint and public (anon) key
    supabase_url: str = Field(default="", validation_alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", validation_alias="SUPABASE_ANON_KEY")

    # Development mode - serves a fixed local identity from the in-memory backend
    dev_mode: bool = Field(default=False, validation_alias="DEV_MODE")

    # Public URL of this app - OAuth redirects come back here
    app_url: str = Field(default="http://localhost:8000", validation_alias="APP_URL")
    login_path: str = Field(default="/login", validation_alias="LOGIN_PATH")
    oauth_provider: str = Field(default="google", validation_alias="OAUTH_PROVIDER")

    # Remote store layout
    bookmarks_table: str = Field(default="bookmarks", validation_alias="BOOKMARKS_TABLE")
    realtime_channel: str = Field(
        default="bookmarks-realtime", validation_alias="REALTIME_CHANNEL",
    )

    # Network behavior
    http_timeout: float = Field(default=10.0, validation_alias="HTTP_TIMEOUT")
    realtime_heartbeat_seconds: float = Field(
        default=25.0, validation_alias="REALTIME_HEARTBEAT_SECONDS",
    )
    realtime_reconnect_max_delay: float = Field(
        default=30.0, validation_alias="REALTIME_RECONNECT_MAX_DELAY",
    )

    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")

    # Seconds a cached session is trusted before the auth service is asked again
    # (0 re-checks on every request)
    session_recheck_seconds: float = Field(default=0.0, validation_alias="SESSION_RECHECK_SECONDS")

    # Browser session cookie
    session_cookie_name: str = Field(default="sb-session", validation_alias="SESSION_COOKIE_NAME")
    cookie_secure: bool = Field(default=False, validation_alias="COOKIE_SECURE")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS",
    )

    @model_validator(mode="after")
    def validate_backend_settings(self) -> "Settings":
        """
        Require Supabase credentials outside DEV_MODE, and keep DEV_MODE local.

        DEV_MODE skips the identity provider entirely, so it must never be pointed
        at a remote Supabase project.
        """
        if not self.dev_mode:
            if not self.supabase_url or not self.supabase_anon_key:
                raise ValueError(
                    "SUPABASE_URL and SUPABASE_ANON_KEY must be set unless DEV_MODE is enabled.",
                )
            return self

        if not self.supabase_url:
            return self

        hostname = (urlparse(self.supabase_url).hostname or "").lower()
        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname not in local_hosts:
            raise ValueError(
                f"DEV_MODE cannot be enabled with a remote Supabase project. "
                f"Host '{hostname}' is not local. "
                f"DEV_MODE bypasses all authentication and must only be used locally.",
            )
        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def rest_url(self) -> str:
        """Get the PostgREST base URL."""
        return f"{self.supabase_url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        """Get the Supabase Auth (GoTrue) base URL."""
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    @property
    def realtime_url(self) -> str:
        """Get the Realtime websocket URL (http(s) scheme swapped for ws(s))."""
        base = self.supabase_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket?apikey={self.supabase_anon_key}&vsn=1.0.0"

    @property
    def redirect_url(self) -> str:
        """Get the OAuth callback URL handled by this app."""
        return f"{self.app_url.rstrip('/')}/auth/callback"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

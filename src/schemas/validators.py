"""
Shared validation functions for bookmark schemas.

Messages raised here are shown to the user as-is, so keep them short.
"""
from urllib.parse import urlsplit

from core.config import get_settings


def validate_title(title: str | None) -> str:
    """Trim the title and reject empty or overlong values."""
    normalized = (title or "").strip()
    if not normalized:
        raise ValueError("Title required")
    settings = get_settings()
    if len(normalized) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(normalized):,} characters).",
        )
    return normalized


def validate_absolute_url(url: str | None) -> str:
    """
    Trim the URL and require it to be absolute.

    An absolute URL has at least a scheme and an authority (``https://host``).
    Relative references and bare words such as ``not-a-url`` are rejected.
    """
    normalized = (url or "").strip()
    if not normalized:
        raise ValueError("URL required")
    try:
        parts = urlsplit(normalized)
        # Accessing .port validates the authority's port component
        parts.port  # noqa: B018
    except ValueError:
        raise ValueError("Invalid URL") from None
    if not parts.scheme or not parts.netloc or not parts.hostname:
        raise ValueError("Invalid URL")
    return normalized

"""Pydantic schemas for bookmarks and synchronizer state."""
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from schemas.validators import validate_absolute_url, validate_title


class BookmarkCreate(BaseModel):
    """
    Schema for an add intent.

    Fields are validated in declaration order, so an empty title is reported
    before a malformed URL.
    """

    title: str
    url: str

    @field_validator("title", mode="before")
    @classmethod
    def check_title(cls, v: Any) -> str:
        """Require a non-empty title."""
        return validate_title(v)

    @field_validator("url", mode="before")
    @classmethod
    def check_url(cls, v: Any) -> str:
        """Require an absolute URL."""
        return validate_absolute_url(v)


def first_error_message(exc: ValidationError) -> str:
    """Return the user-facing message of the first validation error."""
    errors = exc.errors()
    if not errors:
        return str(exc)
    error = errors[0]
    cause = error.get("ctx", {}).get("error")
    if isinstance(cause, ValueError):
        return str(cause)
    return error["msg"]


class Bookmark(BaseModel):
    """
    A bookmark as held in the local list.

    ``id`` is either a provisional id generated on optimistic insert (``pending``
    is True) or the canonical id assigned by the store.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    url: str
    user_id: str
    created_at: datetime
    pending: bool = Field(default=False, exclude=True)

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        """Store ids as strings regardless of the column type upstream."""
        return str(v)

    @field_validator("created_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC so sorting never mixes naive and aware."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


def sort_newest_first(bookmarks: list[Bookmark]) -> list[Bookmark]:
    """Order bookmarks by ``created_at`` descending."""
    return sorted(bookmarks, key=lambda b: b.created_at, reverse=True)


class BookmarkIntent(BaseModel):
    """Request body for the add intent. Validated by the synchronizer, not here."""

    title: str = ""
    url: str = ""


class BookmarkResponse(BaseModel):
    """Bookmark as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    url: str
    created_at: datetime
    pending: bool


class SyncStateResponse(BaseModel):
    """Snapshot of the synchronizer returned by the API and event stream."""

    items: list[BookmarkResponse]
    stale: bool
    last_error: str | None

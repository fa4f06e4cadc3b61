"""Shared exceptions for bookmark sync and backend operations."""


class BookmarkValidationError(ValueError):
    """
    Raised when an add intent fails validation.

    Raised synchronously, before any optimistic change is applied. The message
    is meant to be shown to the user directly (e.g. "Title required").
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotAuthenticatedError(Exception):
    """Raised when a bookmark or session operation runs without a resolved identity."""

    def __init__(self, message: str = "No authenticated identity") -> None:
        super().__init__(message)


class AuthenticationError(Exception):
    """Raised when the auth service rejects or cannot validate the session."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class RemoteStoreError(Exception):
    """
    Raised when the remote store rejects a query, insert or delete.

    ``status_code`` is set when the failure came back as an HTTP response.
    """

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}")


class ChangeFeedError(Exception):
    """Raised or reported when the change-feed subscription is rejected or drops."""

    def __init__(self, message: str) -> None:
        super().__init__(message)

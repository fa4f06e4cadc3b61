"""HTTP client helpers for Supabase REST and Auth endpoints."""
from typing import Any

import httpx

from services.exceptions import RemoteStoreError


def get_headers(api_key: str, access_token: str | None = None) -> dict[str, str]:
    """
    Get common headers for Supabase requests.

    Requests without a user session are authorized with the anon key itself.
    """
    return {
        "apikey": api_key,
        "Authorization": f"Bearer {access_token or api_key}",
        "X-Client-Info": "smart-bookmarks",
    }


async def api_get(
    client: httpx.AsyncClient,
    path: str,
    headers: dict[str, str],
    params: dict[str, Any] | None = None,
) -> Any:
    """Make an authenticated GET request."""
    response = await client.get(path, params=params, headers=headers)
    response.raise_for_status()
    return response.json()


async def api_post(
    client: httpx.AsyncClient,
    path: str,
    headers: dict[str, str],
    json: Any = None,
    params: dict[str, Any] | None = None,
) -> Any:
    """Make an authenticated POST request. Returns None for empty bodies."""
    response = await client.post(path, json=json, params=params, headers=headers)
    response.raise_for_status()
    if not response.content:
        return None
    return response.json()


async def api_delete(
    client: httpx.AsyncClient,
    path: str,
    headers: dict[str, str],
    params: dict[str, Any] | None = None,
) -> None:
    """Make an authenticated DELETE request."""
    response = await client.delete(path, params=params, headers=headers)
    response.raise_for_status()


def describe_http_error(e: httpx.HTTPError) -> tuple[str, int | None]:
    """Extract a short message and status code from an httpx error."""
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        try:
            body = e.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("msg") or body.get("error_description")
            if message:
                return str(message), status
        return f"HTTP {status}", status
    return f"request error: {e}", None


def store_error(operation: str, e: httpx.HTTPError) -> RemoteStoreError:
    """Wrap an httpx error raised by a table operation."""
    message, status = describe_http_error(e)
    return RemoteStoreError(operation, message, status_code=status)

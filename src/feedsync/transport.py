"""HTTP backend collaborator for the blog API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from feedsync.types import Err, FailureReason, Ok, Page, Result

logger = logging.getLogger(__name__)

_REASONS_BY_STATUS: dict[int, FailureReason] = {
    400: FailureReason.VALIDATION,
    401: FailureReason.UNAUTHORIZED,
    403: FailureReason.UNAUTHORIZED,
    404: FailureReason.CONFLICT,
    409: FailureReason.CONFLICT,
    422: FailureReason.VALIDATION,
}


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for name in ("error", "message"):
            if isinstance(body.get(name), str):
                return str(body[name])
    return default


def to_result(response: httpx.Response) -> Result[Any]:
    """Convert an HTTP response into the Result consumed by mutations.

    Bodies shaped {"success": true, "data": ...} are unwrapped. A 2xx body
    carrying an "error" field is still a failure.
    """
    body = _json_or_none(response)
    if not response.is_success:
        reason = _REASONS_BY_STATUS.get(response.status_code, FailureReason.NETWORK)
        if isinstance(body, dict) and body.get("requiresAuth"):
            reason = FailureReason.UNAUTHORIZED
        return Err(reason, _error_message(body, f"HTTP {response.status_code}"))

    if isinstance(body, dict):
        if body.get("requiresAuth"):
            return Err(FailureReason.UNAUTHORIZED, _error_message(body, "Authentication required"))
        if body.get("error"):
            return Err(FailureReason.VALIDATION, _error_message(body, "Request failed"))
        if "data" in body:
            return Ok(body["data"])
    return Ok(body)


class BlogBackend:
    """Async client for the blog REST API.

    Every method returns Ok/Err instead of raising, so it can be used
    directly as a mutation's network call.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Result[Any]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            return Err(FailureReason.NETWORK, str(exc) or type(exc).__name__)
        result = to_result(response)
        if isinstance(result, Err):
            logger.debug("%s %s -> %s", method, path, result.reason.value)
        return result

    # -------------------------------------------------------------------------
    # Interactions
    # -------------------------------------------------------------------------

    async def like_post(self, post_id: str) -> Result[Any]:
        return await self._request("POST", f"/api/blogs/{post_id}/like")

    async def unlike_post(self, post_id: str) -> Result[Any]:
        return await self._request("DELETE", f"/api/blogs/{post_id}/like")

    async def set_like(self, post_id: str, liked: bool) -> Result[Any]:
        if liked:
            return await self.like_post(post_id)
        return await self.unlike_post(post_id)

    async def save_post(self, post_id: str) -> Result[Any]:
        return await self._request("POST", f"/api/blogs/{post_id}/favorite")

    async def unsave_post(self, post_id: str) -> Result[Any]:
        return await self._request("DELETE", f"/api/blogs/{post_id}/favorite")

    async def set_saved(self, post_id: str, saved: bool) -> Result[Any]:
        if saved:
            return await self.save_post(post_id)
        return await self.unsave_post(post_id)

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    async def get_comments(self, post_id: str) -> Result[Any]:
        return await self._request("GET", f"/api/blogs/{post_id}/comments")

    async def create_comment(
        self, post_id: str, content: str, *, parent_id: str | None = None
    ) -> Result[Any]:
        body: dict[str, Any] = {"content": content}
        if parent_id is not None:
            body["parentId"] = parent_id
        return await self._request("POST", f"/api/blogs/{post_id}/comments", json=body)

    async def update_comment(
        self, post_id: str, comment_id: str, content: str
    ) -> Result[Any]:
        return await self._request(
            "PUT",
            f"/api/blogs/{post_id}/comments/{comment_id}",
            json={"content": content},
        )

    async def delete_comment(self, post_id: str, comment_id: str) -> Result[Any]:
        return await self._request(
            "DELETE", f"/api/blogs/{post_id}/comments/{comment_id}"
        )

    # -------------------------------------------------------------------------
    # Posts and profiles
    # -------------------------------------------------------------------------

    async def get_post(self, post_id: str) -> Result[Any]:
        return await self._request("GET", f"/api/blogs/{post_id}")

    async def get_posts(self, cursor: Any = None, *, limit: int = 10) -> Page[Any]:
        """Fetch one feed page; cursor is the page number (first page is 1).

        Raises the failure as an exception since feed loading is not a
        mutation.
        """
        page = int(cursor) if cursor is not None else 1
        response = await self._client.get(
            "/api/blogs", params={"page": page, "limit": limit}
        )
        response.raise_for_status()
        body = response.json()
        items = body.get("data") or body.get("posts") or []
        if "nextPage" in body:
            next_cursor = body["nextPage"]
        else:
            pagination = body.get("pagination") or {}
            total_pages = pagination.get("totalPages", page)
            next_cursor = page + 1 if page < total_pages else None
        return Page(items=tuple(items), next_cursor=next_cursor)

    async def update_post(self, post_id: str, fields: dict[str, Any]) -> Result[Any]:
        return await self._request("PUT", f"/api/blogs/{post_id}", json=fields)

    async def create_post(self, fields: dict[str, Any]) -> Result[Any]:
        return await self._request("POST", "/api/blogs", json=fields)

    async def delete_post(self, post_id: str) -> Result[Any]:
        return await self._request("DELETE", f"/api/blogs/{post_id}")

    async def update_profile(self, user_id: str, fields: dict[str, Any]) -> Result[Any]:
        return await self._request("PUT", f"/api/user/{user_id}/profile", json=fields)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


__all__ = ["BlogBackend", "to_result"]

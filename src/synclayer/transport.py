"""
HTTP transport for the sync backend
Pattern: one lazily created httpx.AsyncClient per transport, async context manager

All requests go through the deployment's proxy with an `x-app-key` header.
Status codes are mapped onto the synclayer error taxonomy; nothing here
retries, retry policy belongs to the caller.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Tuple

import httpx

from .errors import (
    BadRequestError,
    NotFoundError,
    PreconditionFailedError,
    TransportError,
)

logger = logging.getLogger(__name__)

USER_AGENT = "synclayer/0.1"


class HttpTransport:
    """
    Async JSON-over-HTTP client for the sync backend.

    Usage:
        async with HttpTransport("https://example.com/api/b", app_key="k") as t:
            body, headers = await t.get_json("/api/sync/pull-batch", params={...})
    """

    def __init__(self,
                 base_url: str,
                 app_key: Optional[str] = None,
                 timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            base_url: Backend (or proxy) origin, trailing slashes are ignored
            app_key: Value sent as `x-app-key` and as `app_key` on stream URLs
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests mount a fake backend here)
        """
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.app_key = app_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry"""
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "accept": "application/json",
                "user-agent": USER_AGENT,
            }
            if self.app_key:
                headers["x-app-key"] = self.app_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ==================== Requests ====================

    async def request_json(self,
                           method: str,
                           path: str,
                           params: Optional[Mapping[str, Any]] = None,
                           json_body: Any = None,
                           headers: Optional[Mapping[str, str]] = None) -> Tuple[Any, httpx.Headers]:
        """
        Send a request and decode the JSON response.

        Returns:
            (decoded body, response headers); body is None for 204 responses

        Raises:
            NotFoundError: 404
            PreconditionFailedError: 412
            BadRequestError: 400 or 422
            TransportError: network failure, other non-2xx, malformed JSON
        """
        client = self._ensure_client()
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        raise_for_status(response, method, path)

        if response.status_code == 204 or not response.content:
            return None, response.headers
        try:
            return response.json(), response.headers
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TransportError(
                f"{method} {path} returned a malformed body: {e}",
                status_code=response.status_code,
            ) from e

    async def get_json(self, path: str, params: Optional[Mapping[str, Any]] = None,
                       headers: Optional[Mapping[str, str]] = None) -> Tuple[Any, httpx.Headers]:
        return await self.request_json("GET", path, params=params, headers=headers)

    async def put_json(self, path: str, body: Any, params: Optional[Mapping[str, Any]] = None,
                       headers: Optional[Mapping[str, str]] = None) -> Tuple[Any, httpx.Headers]:
        return await self.request_json("PUT", path, params=params, json_body=body, headers=headers)

    async def post_json(self, path: str, body: Any, params: Optional[Mapping[str, Any]] = None,
                        headers: Optional[Mapping[str, str]] = None) -> Tuple[Any, httpx.Headers]:
        return await self.request_json("POST", path, params=params, json_body=body, headers=headers)

    @asynccontextmanager
    async def stream_lines(self, path: str,
                           params: Optional[Mapping[str, Any]] = None) -> AsyncIterator[AsyncIterator[str]]:
        """
        Open a text/event-stream response and yield its line iterator.

        EventSource-style endpoints cannot rely on custom headers behind every
        proxy, so the app key is also sent as the `app_key` query parameter.
        The stream has no read timeout; the server's keepalive comments keep
        it alive.

        Raises:
            TransportError: On connect failure or non-2xx status
        """
        client = self._ensure_client()
        query: Dict[str, Any] = dict(params or {})
        if self.app_key:
            query.setdefault("app_key", self.app_key)

        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with client.stream(
                "GET",
                path,
                params=query,
                headers={"accept": "text/event-stream", "cache-control": "no-cache"},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                raise_for_status(response, "GET", path)
                yield response.aiter_lines()
        except httpx.HTTPError as e:
            raise TransportError(f"GET {path} stream failed: {e}") from e


def raise_for_status(response: httpx.Response, method: str, path: str) -> None:
    """Map an error response onto the synclayer error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    detail = _error_detail(response)
    message = f"{method} {path} failed: {status} {response.reason_phrase} :: {detail}"

    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status == 412:
        raise PreconditionFailedError(message, status_code=status)
    if status in (400, 422):
        raise BadRequestError(message, status_code=status)
    raise TransportError(message, status_code=status)


def _error_detail(response: httpx.Response) -> str:
    try:
        return json.dumps(response.json())
    except Exception:
        try:
            return response.text[:500]
        except httpx.ResponseNotRead:
            return ""


__all__ = ["HttpTransport", "raise_for_status", "USER_AGENT"]

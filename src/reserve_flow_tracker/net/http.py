"""Shared JSON-over-HTTP client.

One ``HttpClient`` is constructed by the caller and injected into every chain
adapter; it owns a single pooled ``aiohttp.ClientSession`` and applies the
per-request timeout to every call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "por-collector"
_ERROR_SNIPPET_BYTES = 4096


class HttpClientError(Exception):
    """Base exception for HTTP client errors."""


class TransportError(HttpClientError):
    """Raised on timeouts and connection failures (no HTTP response)."""


class HTTPStatusError(HttpClientError):
    """Raised when the server answers with a non-2xx status."""

    def __init__(self, status: int, url: str, body: str = "", *, method: str = "GET") -> None:
        detail = f": {body}" if body else ""
        super().__init__(f"{method} {url} => {status}{detail}")
        self.status = status
        self.url = url
        self.body = body

    @property
    def retryable(self) -> bool:
        """Rate limiting and server-side failures are worth retrying."""
        return self.status == 429 or self.status >= 500


class DecodeError(HttpClientError):
    """Raised when a payload is malformed or misses an expected field."""


class HttpClient:
    """Pooled aiohttp session with a fixed per-request timeout.

    Example:
        ```python
        async with HttpClient(timeout_seconds=30) as http:
            summary = await http.get_json("https://blockstream.info/api/address/bc1...")
        ```
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers=self._headers,
                connector=aiohttp.TCPConnector(limit=128, limit_per_host=32),
            )
            self._owns_session = True
        return self._session

    async def get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """GET ``url`` and decode the JSON body."""
        return await self._request("GET", url, params=params, headers=headers)

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """POST ``payload`` as JSON and decode the JSON body."""
        return await self._request("POST", url, json_body=payload, headers=headers)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        session = self._get_session()
        logger.debug("%s %s", method, url)
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if resp.status // 100 != 2:
                    body = (await resp.content.read(_ERROR_SNIPPET_BYTES)).decode(errors="replace")
                    raise HTTPStatusError(resp.status, url, body.strip(), method=method)
                text = await resp.text()
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        try:
            return json.loads(text)
        except ValueError as e:
            raise DecodeError(f"{method} {url} returned invalid JSON: {e}") from e

    async def aclose(self) -> None:
        """Close the underlying session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

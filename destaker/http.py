from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class HttpClient:
    """Thin ``httpx.AsyncClient`` wrapper with retries for transient failures.

    Transport errors and 5xx responses are retried with exponential backoff.
    4xx responses are returned as-is so callers can tell 429 from 402 from 404.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), limits=limits)
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff

    async def get(self, url: str, *, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        logger.debug(f"HTTP GET {url} params={params}")
        return await self._request("GET", url, params=params, headers=headers)

    async def post(
        self,
        url: str,
        *,
        json: Any | None = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        logger.debug(f"HTTP POST {url} json_keys={list(json.keys()) if isinstance(json, dict) else None}")
        kwargs: Dict[str, Any] = {"json": json, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await self._request("POST", url, **kwargs)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=5),
            retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
        )
        async for attempt in retrying:
            with attempt:
                resp = await self._client.request(method, url, **kwargs)
                if resp.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"server error {resp.status_code}", request=resp.request, response=resp
                    )
                return resp
        raise RuntimeError("HTTP request failed without exception")

    async def aclose(self) -> None:
        await self._client.aclose()

"""Shared async HTTP plumbing for provider clients.

Every request goes through :meth:`ProviderClient._request`, which waits on
the provider's rate limiter, retries network errors, 5xx and 429 responses
with backoff, and maps the remaining failures onto :mod:`encore.errors`.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from encore.errors import NotFoundError, ProviderAuthError, RateLimitedError, UpstreamError
from encore.providers.models import ProviderName
from encore.providers.ratelimit import RateLimiter

log = structlog.get_logger(__name__)

_MAX_RETRIES = 3


def _retry_after(resp: httpx.Response, default: float) -> float:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return default
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return default


class ProviderClient:
    """Base class: owns one ``httpx.AsyncClient`` per ``async with`` block."""

    provider: ProviderName
    base_url: str
    refreshes_token = False

    def __init__(
        self,
        *,
        limiter: RateLimiter | None = None,
        max_retries: int = _MAX_RETRIES,
        backoff_base: float = 1.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._limiter = limiter or RateLimiter(10, 1.0, name=self.provider)
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):  # noqa: ANN204
        kw: dict[str, Any] = {"timeout": 30.0, "headers": {"Accept": "application/json"}}
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = f"{type(self).__name__} used outside 'async with'"
            raise RuntimeError(msg)
        return self._client

    # -- hooks --

    async def _auth_headers(self, *, force: bool = False) -> dict[str, str]:  # noqa: ARG002
        """Headers carrying credentials; token-based clients refresh when *force*."""
        return {}

    def _auth_params(self) -> dict[str, str]:
        """Query parameters carrying credentials (Ticketmaster's ``apikey``)."""
        return {}

    # -- request helper --

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        query = {**(params or {}), **self._auth_params()}
        force_auth = False

        for attempt in range(self._max_retries):
            last = attempt >= self._max_retries - 1
            headers = await self._auth_headers(force=force_auth)
            force_auth = False
            await self._limiter.acquire()

            try:
                resp = await self.client.request(method, url, headers=headers, params=query)
            except httpx.TransportError as exc:
                if last:
                    raise UpstreamError(
                        self.provider,
                        f"network error after {self._max_retries} attempts: {exc}",
                        retryable=True,
                    ) from exc
                wait = self._backoff_base * 2**attempt
                log.warning(
                    "provider_network_error",
                    provider=self.provider,
                    error=str(exc),
                    retry_in=wait,
                    attempt=attempt,
                )
                await asyncio.sleep(wait)
                continue

            status = resp.status_code

            if status == 401 and self.refreshes_token and not last and attempt == 0:
                force_auth = True
                continue

            if status in (401, 403):
                raise ProviderAuthError(self.provider, f"authentication rejected ({status})", status_code=status)

            if status == 404:
                raise NotFoundError(self.provider, f"not found: {url}", status_code=404)

            if status == 429:
                retry_after = _retry_after(resp, self._backoff_base * 2**attempt)
                if last:
                    raise RateLimitedError(self.provider, retry_after=retry_after)
                log.warning(
                    "provider_rate_limited",
                    provider=self.provider,
                    retry_after=retry_after,
                    attempt=attempt,
                )
                await asyncio.sleep(retry_after)
                continue

            if status >= 500:
                if last:
                    raise UpstreamError(
                        self.provider,
                        f"server error {status}",
                        status_code=status,
                        retryable=True,
                    )
                wait = self._backoff_base * 2**attempt
                log.warning(
                    "provider_server_error",
                    provider=self.provider,
                    status=status,
                    retry_in=wait,
                    attempt=attempt,
                )
                await asyncio.sleep(wait)
                continue

            if status >= 400:
                raise UpstreamError(self.provider, f"HTTP {status}: {resp.text[:200]}", status_code=status)

            return resp

        raise UpstreamError(self.provider, f"max retries ({self._max_retries}) exceeded", retryable=True)

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._request("GET", url, params=params)
        return resp.json()

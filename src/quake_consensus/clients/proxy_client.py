"""Async HTTP client for the per-source proxy endpoints (``/api/proxy/{id}``)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from quake_consensus.sources import SourceConfig

logger = logging.getLogger(__name__)

ACCEPT = "application/json, text/html, */*"


class FetchError(Exception):
    """Network, HTTP or timeout failure talking to a source."""


@dataclass
class ProxyResponse:
    source_id: str
    status_code: int
    content_type: str
    text: str

    @property
    def is_json(self) -> bool:
        return "json" in self.content_type


class ProxyClient:
    """Fetches raw responses for any configured source through the proxy.

    The underlying ``httpx.AsyncClient`` may be injected (tests pass one built
    on ``httpx.MockTransport``); otherwise one is created lazily.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 1,
        retry_backoff_base: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_backoff_base = retry_backoff_base
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def probe(self, source: SourceConfig, timeout_seconds: float = 10.0) -> bool:
        """Lightweight HEAD request; True when the proxy answers 2xx.

        A proxy that does not allow HEAD (405) is probed with a GET instead.
        """
        client = await self._get_client()
        url = source.endpoint(self.base_url)
        try:
            resp = await client.head(url, timeout=timeout_seconds)
            if resp.status_code == 405:
                logger.debug("[%s] HEAD not allowed, probing with GET", source.id)
                resp = await client.get(url, headers={"Accept": ACCEPT}, timeout=timeout_seconds)
        except httpx.HTTPError as exc:
            logger.warning("[%s] probe failed: %s", source.id, exc)
            return False
        return resp.is_success

    async def fetch(self, source: SourceConfig) -> ProxyResponse:
        """GET the source through the proxy with exponential backoff retry.

        Raises:
            FetchError: every attempt failed or timed out.
        """
        client = await self._get_client()
        url = source.endpoint(self.base_url)
        last_exc: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = await client.get(
                    url,
                    headers={"Accept": ACCEPT, "Cache-Control": "no-cache"},
                    timeout=self.timeout_seconds,
                )
                resp.raise_for_status()
                return ProxyResponse(
                    source_id=source.id,
                    status_code=resp.status_code,
                    content_type=resp.headers.get("content-type", "").lower(),
                    text=resp.text,
                )
            except httpx.HTTPError as exc:
                last_exc = exc
                if attempt < self.max_retries:
                    backoff = self.retry_backoff_base ** attempt
                    logger.warning(
                        "%s: attempt %d/%d failed (%s), retrying in %.1fs",
                        source.id, attempt + 1, self.max_retries + 1, exc, backoff,
                    )
                    await asyncio.sleep(backoff)

        raise FetchError(
            f"{source.id}: all {self.max_retries + 1} attempts failed: {last_exc}"
        ) from last_exc

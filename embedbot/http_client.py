"""
Shared async HTTP client for fetching sources and talking to the media repository. [PA][RM]

One `httpx.AsyncClient` is created per process with pooled keep-alive
connections, the configured proxy and a link-preview User-Agent.
Per-request wall-clock bounds are applied by callers.
"""
from __future__ import annotations

from typing import Optional

import httpx

from .config import PipelineConfig
from .utils.logging import get_logger

logger = get_logger(__name__)


class SharedHttpClient:
    """Lazily started shared client. [RM]"""

    def __init__(self, config: PipelineConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "SharedHttpClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> httpx.AsyncClient:
        if self.client is not None:
            return self.client

        limits = httpx.Limits(
            max_connections=64,
            max_keepalive_connections=16,
            keepalive_expiry=30.0,
        )
        timeout = httpx.Timeout(
            connect=min(10.0, self.config.download_timeout_s),
            read=self.config.download_timeout_s,
            write=self.config.upload_timeout_s,
            pool=5.0,
        )
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }

        kwargs = {}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif self.config.proxy_url:
            kwargs["proxy"] = self.config.proxy_url

        self.client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout,
            headers=headers,
            follow_redirects=True,
            max_redirects=5,
            **kwargs,
        )
        logger.info(
            f"🌐 Shared HTTP client started (proxy: {bool(self.config.proxy_url)})",
            extra={"subsys": "http"},
        )
        return self.client

    async def stop(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            logger.info("🛑 Shared HTTP client stopped", extra={"subsys": "http"})

"""
EmbedService: the entry point the chat layer calls for each linked message.

It resolves the link (rewrites, page metadata), runs the media pipeline for
the chosen media URL and returns everything needed to compose a reply.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .captions import Caption, compose_caption
from .config import PipelineConfig
from .exceptions import PipelineError, describe_failure
from .http_client import SharedHttpClient
from .metadata import PageMetadata, fetch_page_metadata, select_media_url
from .pipeline.cache_store import CacheStore
from .pipeline.fetcher import Fetcher
from .pipeline.orchestrator import JobOrchestrator
from .pipeline.prober import Prober
from .pipeline.transcoder import Transcoder
from .pipeline.types import EvictionReport, PipelineResult
from .pipeline.uploader import Uploader
from .pipeline.worker_pool import WorkerPool
from .utils.logging import get_logger

logger = get_logger(__name__)


def extract_first_url(text: str) -> Optional[str]:
    """First whitespace-separated http(s) URL in a message body."""
    for word in text.split():
        if word.startswith(("http://", "https://")) and urlsplit(word).netloc:
            return word
    return None


@dataclass
class EmbedReply:
    """What the chat layer needs to post a reply."""

    caption: Caption
    media_url: Optional[str] = None
    result: Optional[PipelineResult] = None
    error: Optional[PipelineError] = None

    @property
    def failure_reason(self) -> Optional[str]:
        return describe_failure(self.error) if self.error is not None else None


class EmbedService:
    def __init__(
        self,
        config: PipelineConfig,
        orchestrator: JobOrchestrator,
        http: SharedHttpClient,
    ):
        self.config = config
        self.orchestrator = orchestrator
        self.http = http

    @classmethod
    async def create(
        cls,
        config: PipelineConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "EmbedService":
        """Wire every pipeline component from one validated config."""
        http = SharedHttpClient(config, transport=transport)
        client = await http.start()
        pool = WorkerPool(config.worker_pool_size, acquire_timeout=config.pool_acquire_timeout_s)
        orchestrator = JobOrchestrator(
            config=config,
            fetcher=Fetcher(client),
            prober=Prober(config.ffprobe_path, timeout_s=config.probe_timeout_s),
            transcoder=Transcoder(pool, config.ffmpeg_path, timeout_s=config.transcode_timeout_s),
            uploader=Uploader(
                client,
                config.homeserver_url,
                config.access_token,
                timeout_s=config.upload_timeout_s,
            ),
            cache=CacheStore(config.cache_dir),
        )
        logger.info("🚀 Embed service ready", extra={"subsys": "embed"})
        return cls(config, orchestrator, http)

    async def handle_message(self, body: str, request_id: str) -> Optional[EmbedReply]:
        url = extract_first_url(body)
        if url is None:
            return None
        return await self.handle_url(url, request_id)

    async def handle_url(self, url: str, request_id: str) -> Optional[EmbedReply]:
        """Returns None when the link yields nothing worth posting."""
        url = self.config.rewrite_url(url)
        client = await self.http.start()
        meta: Optional[PageMetadata]
        meta, is_html = await fetch_page_metadata(client, url, self.config.download_timeout_s)

        if is_html:
            if meta is None or meta.is_empty():
                logger.debug(f"No embeddable metadata at {url}", extra={"subsys": "embed", "request_id": request_id})
                return None
            media_url = select_media_url(meta)
        else:
            meta = None
            media_url = url

        patterns = self.config.ignored_title_patterns
        if media_url is None:
            return EmbedReply(caption=compose_caption(meta, patterns))

        try:
            result = await self.orchestrator.process(media_url, request_id)
        except PipelineError as e:
            logger.warning(
                f"⚠️ Media pipeline failed for {media_url}: {describe_failure(e)}",
                extra={"subsys": "embed", "request_id": request_id, "event": "embed.media_failed",
                       "detail": {"code": e.code}},
            )
            # Text-only fallback still carries the caption
            return EmbedReply(caption=compose_caption(meta, patterns), media_url=media_url, error=e)

        caption = compose_caption(meta, patterns, has_media=True, media_info=result.media_info)
        return EmbedReply(caption=caption, media_url=media_url, result=result)

    def retract(self, request_id: str) -> int:
        """The originating chat event was redacted."""
        return self.orchestrator.cancel(request_id, reason="source event retracted")

    async def run_maintenance(self) -> EvictionReport:
        return await self.orchestrator.cache.evict_expired(self.config.eviction_policy)

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
        await self.http.stop()
        self.orchestrator.cache.close()

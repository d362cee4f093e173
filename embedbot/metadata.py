"""
OpenGraph / Twitter-card metadata extraction for link previews.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, fields
from typing import Optional, Tuple
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup

from .utils.logging import get_logger

logger = get_logger(__name__)

MAX_PAGE_BYTES = 2 * 1024 * 1024

HTML_TYPES = {"text/html", "application/xhtml+xml"}


@dataclass
class PageMetadata:
    card: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


def _absolute_url(value: str, base_url: Optional[str]) -> Optional[str]:
    value = value.strip()
    if base_url:
        value = urljoin(base_url, value)
    parts = urlsplit(value)
    if parts.scheme in ("http", "https") and parts.netloc:
        return value
    return None


def parse_page_metadata(html: str, base_url: Optional[str] = None) -> PageMetadata:
    """Parse og:* and twitter:* meta tags. OpenGraph wins over Twitter values.

    Both `property=` and `name=` attributes are accepted since sites mix them.
    """
    soup = BeautifulSoup(html, "html.parser")
    meta = PageMetadata()
    og = {}
    twitter = {}

    for tag in soup.find_all("meta"):
        key = tag.get("property") or tag.get("name")
        content = tag.get("content")
        if not key or content is None:
            continue
        key = key.strip().lower()
        if key.startswith("og:"):
            og.setdefault(key, content)
        elif key.startswith("twitter:"):
            twitter.setdefault(key, content)

    meta.title = og.get("og:title")
    meta.description = og.get("og:description")
    for attr, key in (("image_url", "og:image"), ("video_url", "og:video"), ("audio_url", "og:audio")):
        if key in og:
            setattr(meta, attr, _absolute_url(og[key], base_url))

    meta.card = twitter.get("twitter:card")
    if meta.title is None:
        meta.title = twitter.get("twitter:title")
    if meta.description is None:
        meta.description = twitter.get("twitter:description")
    if meta.image_url is None and "twitter:image" in twitter:
        meta.image_url = _absolute_url(twitter["twitter:image"], base_url)
    if meta.title is None and twitter.get("twitter:creator"):
        meta.title = twitter["twitter:creator"].removeprefix("@")

    return meta


def select_media_url(meta: PageMetadata) -> Optional[str]:
    """Video, then audio, then image; text-only cards embed nothing."""
    if meta.card in ("summary", "tweet"):
        return None
    return meta.video_url or meta.audio_url or meta.image_url


async def fetch_page_metadata(
    client: httpx.AsyncClient, url: str, timeout_s: float
) -> Tuple[Optional[PageMetadata], bool]:
    """Fetch `url` and parse metadata when it serves HTML.

    Returns (metadata, is_html). Non-HTML responses are closed unread so the
    media pipeline can fetch them with its own limits.
    """

    async def _read() -> Tuple[Optional[PageMetadata], bool]:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            content_type = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
            if content_type not in HTML_TYPES:
                return None, False
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= MAX_PAGE_BYTES:
                    break
            encoding = response.encoding or "utf-8"
            html = bytes(body).decode(encoding, errors="replace")
            return parse_page_metadata(html, base_url=str(response.url)), True

    try:
        return await asyncio.wait_for(_read(), timeout=timeout_s)
    except (httpx.HTTPError, asyncio.TimeoutError) as e:
        logger.warning(f"⚠️ Failed to fetch metadata for {url}: {e}", extra={"subsys": "metadata"})
        return None, False

"""
Single-attempt, bounded download of a source reference. [REH][RM]

The transfer is aborted, never truncated, once it exceeds the size limit
or the wall-clock budget. Retries belong to the orchestrator.
"""
from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

import httpx

from ..exceptions import FetchTimeoutError, FetchTooLargeError, FetchUnreachableError
from ..utils.logging import get_logger
from .sniff import (
    SNIFF_PREFIX_BYTES,
    extension_for,
    extensions_for,
    normalize_mime,
    resolve_content_type,
    sniff_content_type,
    types_disagree,
)

logger = get_logger(__name__)

_FILENAME_RE = re.compile(r"""filename\*?=(?:UTF-8'')?\s*("?)([^";]+)\1""", re.IGNORECASE)


@dataclass(frozen=True)
class FetchLimits:
    max_bytes: int
    timeout_s: float


@dataclass
class FetchResult:
    """Fetched bytes plus the content-type evidence gathered on the way."""

    data: bytes
    content_type: str
    declared_type: Optional[str]
    sniffed_type: Optional[str]
    type_mismatch: bool
    final_url: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


def filename_from_disposition(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = _FILENAME_RE.search(header)
    if not match:
        return None
    name = unquote(match.group(2).strip())
    return os.path.basename(name) or None


def derive_filename(disposition: Optional[str], url: str, content_type: str) -> str:
    """Content-Disposition name, else the last URL segment, else "media";
    the extension always matches the resolved content type."""
    name = filename_from_disposition(disposition)
    if not name:
        segment = unquote(urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1])
        name = segment or None
    if not name:
        return f"media{extension_for(content_type)}"

    stem, ext = os.path.splitext(name)
    if ext.lower() in extensions_for(content_type):
        return name
    # Names like "photo.jpg:large" keep their stem but get a usable extension
    return f"{stem or 'media'}{extension_for(content_type)}"


class Fetcher:
    """Streams remote bytes with size and time bounds."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, source_reference: str, limits: FetchLimits) -> FetchResult:
        scheme = urlsplit(source_reference).scheme.lower()
        if scheme not in ("http", "https"):
            raise FetchUnreachableError(f"unsupported scheme: {scheme or '(none)'}", retryable=False)
        try:
            return await asyncio.wait_for(self._fetch(source_reference, limits), timeout=limits.timeout_s)
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"download exceeded {limits.timeout_s:.0f}s") from e
        except httpx.TimeoutException as e:
            if isinstance(e, httpx.ConnectTimeout):
                raise FetchUnreachableError(f"connect timeout: {e}") from e
            raise FetchTimeoutError(f"transfer timed out: {e}") from e
        except httpx.RequestError as e:
            raise FetchUnreachableError(f"{type(e).__name__}: {e}") from e

    async def _fetch(self, url: str, limits: FetchLimits) -> FetchResult:
        async with self.client.stream("GET", url) as response:
            if not response.is_success:
                raise FetchUnreachableError(f"HTTP {response.status_code} from {response.url.host}")

            declared_length = response.headers.get("content-length")
            if declared_length and declared_length.isdigit() and int(declared_length) > limits.max_bytes:
                raise FetchTooLargeError(f"Content-Length {declared_length} exceeds {limits.max_bytes}")

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > limits.max_bytes:
                    raise FetchTooLargeError(f"stream exceeded {limits.max_bytes} bytes")
                chunks.append(chunk)

            data = b"".join(chunks)
            final_url = str(response.url)
            declared = normalize_mime(response.headers.get("content-type"))
            disposition = response.headers.get("content-disposition")

        sniffed = sniff_content_type(data[:SNIFF_PREFIX_BYTES])
        content_type = resolve_content_type(declared, sniffed, urlsplit(final_url).path)
        mismatch = types_disagree(declared, sniffed)
        if mismatch:
            logger.info(
                f"🔎 Declared type {declared} disagrees with sniffed {sniffed}",
                extra={"subsys": "fetch", "detail": {"url": final_url}},
            )

        result = FetchResult(
            data=data,
            content_type=content_type,
            declared_type=declared,
            sniffed_type=sniffed,
            type_mismatch=mismatch,
            final_url=final_url,
            filename=derive_filename(disposition, final_url, content_type),
        )
        logger.debug(
            f"📥 Fetched {result.size} bytes ({content_type}) from {final_url}",
            extra={"subsys": "fetch"},
        )
        return result

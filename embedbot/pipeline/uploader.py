"""
Uploads finished variants to the Matrix media repository.

Single-attempt like the fetcher; the orchestrator owns retries and calls
this only from inside a Job, so one variant is never uploaded concurrently.
"""
from __future__ import annotations

from typing import Optional

import httpx

from ..exceptions import UploadRejectedError, UploadTransientError
from ..utils.logging import get_logger
from .types import MediaReference

logger = get_logger(__name__)

REJECT_STATUSES = {400, 401, 403, 404, 413, 415}


def _retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("retry_after_ms"), (int, float)):
        return body["retry_after_ms"] / 1000.0
    return None


def _errcode(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:120]
    if isinstance(body, dict):
        return f"{body.get('errcode', '')} {body.get('error', '')}".strip()
    return ""


class Uploader:
    """POSTs bytes to `/_matrix/media/v3/upload` and returns the mxc:// URI."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        homeserver_url: str,
        access_token: Optional[str],
        timeout_s: float = 60.0,
    ):
        self.client = client
        self.upload_url = f"{homeserver_url.rstrip('/')}/_matrix/media/v3/upload"
        self.access_token = access_token
        self.timeout_s = timeout_s

    async def upload(self, data: bytes, content_type: str, filename: Optional[str] = None) -> MediaReference:
        headers = {"Content-Type": content_type}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        params = {"filename": filename} if filename else None

        try:
            response = await self.client.post(
                self.upload_url,
                content=data,
                headers=headers,
                params=params,
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as e:
            raise UploadTransientError(f"upload timed out: {e}") from e
        except httpx.RequestError as e:
            raise UploadTransientError(f"{type(e).__name__}: {e}") from e

        if response.status_code in REJECT_STATUSES:
            raise UploadRejectedError(f"HTTP {response.status_code}: {_errcode(response)}")
        if response.status_code == 429 or response.status_code >= 500:
            raise UploadTransientError(
                f"HTTP {response.status_code}: {_errcode(response)}",
                retry_after_seconds=_retry_after(response),
            )
        if not response.is_success:
            raise UploadRejectedError(f"HTTP {response.status_code}: {_errcode(response)}")

        try:
            content_uri = response.json().get("content_uri")
        except (ValueError, AttributeError):
            content_uri = None
        if not content_uri or not str(content_uri).startswith("mxc://"):
            # Ambiguous success; a retry may upload twice, which the remote tolerates
            raise UploadTransientError("upload response missing content_uri")

        logger.debug(f"📤 Uploaded {len(data)} bytes -> {content_uri}", extra={"subsys": "upload"})
        return MediaReference(str(content_uri))

"""
Pytest configuration and shared fixtures for the media pipeline tests.

No test needs ffmpeg, libmagic or the network: external processes and
sniffing are patched at module boundaries, HTTP goes through
httpx.MockTransport.
"""

import os
from pathlib import Path
from unittest import mock
from unittest.mock import AsyncMock

import pytest

from embedbot.config import PipelineConfig
from embedbot.pipeline.cache_store import CacheStore
from embedbot.pipeline.fetcher import FetchResult
from embedbot.pipeline.types import MediaInfo, MediaReference, VariantOutput

# Keep stray log files out of the repo when a test initializes logging
os.environ.setdefault("LOG_JSONL_PATH", str(Path(os.getenv("TMPDIR", "/tmp")) / "embedbot-test.jsonl"))

VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 2_000_000
FAKE_BLURHASH = "LEHV6nWB2yk8pyo0adR*.7kCMdnj"


@pytest.fixture
def mocker(request):
    """
    Lightweight replacement for pytest-mock's `mocker` fixture.
    Provides:
    - mocker.patch(target, ...) -> started mock (auto-teardown on test end)
    - mocker.patch_object(obj, attr, ...) -> same, for attributes
    """

    class _SimpleMocker:
        def patch(self, target, *args, **kwargs):
            patcher = mock.patch(target, *args, **kwargs)
            started = patcher.start()
            request.addfinalizer(patcher.stop)
            return started

        def patch_object(self, obj, attr, *args, **kwargs):
            patcher = mock.patch.object(obj, attr, *args, **kwargs)
            started = patcher.start()
            request.addfinalizer(patcher.stop)
            return started

    return _SimpleMocker()


@pytest.fixture
def pipeline_config(tmp_path):
    """Default configuration with instant retries and a per-test cache dir."""
    return PipelineConfig(
        cache_dir=tmp_path / "cache",
        retry_base_delay_s=0.0,
        retry_max_delay_s=0.0,
        access_token="test-token",
        homeserver_url="https://hs.test",
    )


@pytest.fixture
def cache_store(tmp_path):
    store = CacheStore(tmp_path / "cache")
    yield store
    store.close()


def make_media_info(**overrides):
    values = dict(
        container="mov",
        video_codec="h264",
        audio_codec="aac",
        duration_seconds=12.5,
        width=1920,
        height=1080,
        has_audio=True,
        has_video=True,
    )
    values.update(overrides)
    return MediaInfo(**values)


def make_fetch_result(data=VIDEO_BYTES, url="https://x/video.mp4", **overrides):
    values = dict(
        data=data,
        content_type="video/mp4",
        declared_type="video/mp4",
        sniffed_type="video/mp4",
        type_mismatch=False,
        final_url=url,
        filename="video.mp4",
    )
    values.update(overrides)
    return FetchResult(**values)


def fake_variant_output(data, media_info, spec):
    """Stand-in for Transcoder.transcode producing a tiny artifact per kind."""
    if spec.kind == "thumbnail":
        return VariantOutput(spec.kind, b"jpeg-" + spec.kind.encode(), "image/jpeg", ".jpg", 600, 338,
                             blurhash=FAKE_BLURHASH)
    return VariantOutput(spec.kind, b"mp4-" + spec.kind.encode(), "video/mp4", ".mp4", 720, 404)


class StageMocks:
    """AsyncMock stand-ins for the four pipeline stages."""

    def __init__(self):
        self.fetcher = mock.Mock()
        self.fetcher.fetch = AsyncMock(return_value=make_fetch_result())
        self.prober = mock.Mock()
        self.prober.probe = AsyncMock(return_value=make_media_info())
        self.transcoder = mock.Mock()
        self.transcoder.transcode = AsyncMock(side_effect=fake_variant_output)
        self.uploader = mock.Mock()
        self._uploads = 0

        async def _upload(data, content_type, filename=None):
            self._uploads += 1
            return MediaReference(f"mxc://hs.test/media{self._uploads}")

        self.uploader.upload = AsyncMock(side_effect=_upload)


@pytest.fixture
def stages():
    return StageMocks()

"""
Tests for variant planning, ffmpeg argument derivation and the transcoder.
"""

import asyncio
import io
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from PIL import Image

from conftest import make_media_info
from embedbot.config import DEFAULT_VARIANTS
from embedbot.exceptions import ProbeUnsupportedError, TranscodeFailedError, TranscodeTimeoutError
from embedbot.pipeline.process import ProcessResult, ProcessTimeout
from embedbot.pipeline.transcoder import (
    Transcoder,
    build_ffmpeg_args,
    compute_blurhash,
    plan_variants,
    scaled_dimensions,
)
from embedbot.pipeline.types import PREVIEW_CLIP, THUMBNAIL, VariantSpec
from embedbot.pipeline.worker_pool import WorkerPool

THUMB_SPEC, CLIP_SPEC = DEFAULT_VARIANTS


def _jpeg(size=(32, 24), color=(200, 40, 40)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


class TestScaledDimensions:
    def test_landscape_downscale(self):
        assert scaled_dimensions(1920, 1080, 720) == (720, 404)

    def test_portrait_downscale(self):
        assert scaled_dimensions(1080, 1920, 600) == (338, 600)

    def test_never_upscales(self):
        assert scaled_dimensions(320, 240, 720) == (320, 240)

    def test_odd_sizes_become_even(self):
        w, h = scaled_dimensions(641, 359, 1000)
        assert w % 2 == 0 and h % 2 == 0


class TestPlanVariants:
    def test_video_gets_thumbnail_and_clip(self):
        planned = plan_variants(DEFAULT_VARIANTS, make_media_info())
        assert [s.kind for s in planned] == [THUMBNAIL, PREVIEW_CLIP]

    def test_audio_only_gets_clip_only(self):
        info = make_media_info(has_video=False, video_codec=None, width=None, height=None)
        assert [s.kind for s in plan_variants(DEFAULT_VARIANTS, info)] == [PREVIEW_CLIP]

    def test_still_image_gets_thumbnail_only(self):
        info = make_media_info(container="png_pipe", video_codec="png", has_audio=False,
                               audio_codec=None, duration_seconds=None)
        assert [s.kind for s in plan_variants(DEFAULT_VARIANTS, info)] == [THUMBNAIL]

    def test_nothing_applicable_is_unsupported(self):
        info = make_media_info(has_video=False, video_codec=None, width=None, height=None)
        with pytest.raises(ProbeUnsupportedError):
            plan_variants([THUMB_SPEC], info)


class TestBuildArgs:
    def test_arguments_are_deterministic(self):
        info = make_media_info()
        first = build_ffmpeg_args("ffmpeg", "in", "out", CLIP_SPEC, info)
        second = build_ffmpeg_args("ffmpeg", "in", "out", CLIP_SPEC, make_media_info())
        assert first == second

    def test_thumbnail_args(self):
        args, content_type, ext, dims = build_ffmpeg_args("ffmpeg", "in", "out", THUMB_SPEC, make_media_info())
        assert content_type == "image/jpeg"
        assert ext == ".jpg"
        assert dims == (600, 338)
        assert args[args.index("-frames:v") + 1] == "1"
        assert args[args.index("-c:v") + 1] == "mjpeg"
        assert args[-1] == "out"

    def test_clip_bounds_duration_and_bitrate(self):
        info = make_media_info(duration_seconds=120.0)
        args, content_type, ext, dims = build_ffmpeg_args("ffmpeg", "in", "out", CLIP_SPEC, info)
        assert content_type == "video/mp4"
        assert args[args.index("-t") + 1] == "30.000"
        assert args[args.index("-b:v") + 1] == "1500k"
        assert args[args.index("-c:v") + 1] == "libx264"
        assert "-an" not in args
        assert dims == (720, 404)

    def test_clip_without_audio_drops_audio(self):
        info = make_media_info(has_audio=False, audio_codec=None, duration_seconds=5.0)
        args, _, _, _ = build_ffmpeg_args("ffmpeg", "in", "out", CLIP_SPEC, info)
        assert "-an" in args
        assert args[args.index("-t") + 1] == "5.000"

    def test_audio_only_clip_is_m4a(self):
        info = make_media_info(has_video=False, video_codec=None, width=None, height=None)
        args, content_type, ext, dims = build_ffmpeg_args("ffmpeg", "in", "out", CLIP_SPEC, info)
        assert (content_type, ext, dims) == ("audio/mp4", ".m4a", None)
        assert "-vn" in args


class TestBlurhash:
    def test_jpeg_gets_placeholder(self):
        placeholder = compute_blurhash(_jpeg())
        # 4x3 components encode to 28 characters
        assert isinstance(placeholder, str)
        assert len(placeholder) == 28

    def test_same_image_same_placeholder(self):
        assert compute_blurhash(_jpeg()) == compute_blurhash(_jpeg())

    def test_unreadable_bytes_give_none(self):
        assert compute_blurhash(b"not an image") is None


class TestTranscoder:
    @pytest.fixture
    def run_process(self, mocker):
        return mocker.patch("embedbot.pipeline.transcoder.run_process", new_callable=AsyncMock)

    @staticmethod
    def _writes(output):
        async def fake(args, timeout):
            Path(args[-1]).write_bytes(output)
            return ProcessResult(0, b"", b"")
        return fake

    @pytest.mark.asyncio
    async def test_transcode_success(self, run_process):
        run_process.side_effect = self._writes(b"jpeg-data")
        pool = WorkerPool(1)

        out = await Transcoder(pool, "ffmpeg", timeout_s=9).transcode(b"src", make_media_info(), THUMB_SPEC)

        assert out.kind == THUMBNAIL
        assert out.data == b"jpeg-data"
        assert out.content_type == "image/jpeg"
        assert (out.width, out.height) == (600, 338)
        assert out.blurhash is None
        assert run_process.await_args.kwargs["timeout"] == 9
        assert not Path(run_process.await_args.args[0][-1]).parent.exists()
        assert pool.metrics.current_active == 0

    @pytest.mark.asyncio
    async def test_thumbnail_carries_blurhash(self, run_process):
        frame = _jpeg()
        run_process.side_effect = self._writes(frame)
        transcoder = Transcoder(WorkerPool(1), "ffmpeg", timeout_s=9)

        thumb = await transcoder.transcode(b"src", make_media_info(), THUMB_SPEC)
        assert thumb.data == frame
        assert thumb.blurhash == compute_blurhash(frame)
        assert thumb.blurhash is not None

        run_process.side_effect = self._writes(b"mp4-data")
        clip = await transcoder.transcode(b"src", make_media_info(), CLIP_SPEC)
        assert clip.blurhash is None

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, run_process):
        run_process.side_effect = ProcessTimeout("ffmpeg exceeded 60s")
        pool = WorkerPool(1)

        with pytest.raises(TranscodeTimeoutError) as exc_info:
            await Transcoder(pool).transcode(b"src", make_media_info(), CLIP_SPEC)
        assert exc_info.value.retryable is True
        assert pool.available == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failed(self, run_process):
        run_process.return_value = ProcessResult(1, b"", b"Conversion failed!")

        with pytest.raises(TranscodeFailedError) as exc_info:
            await Transcoder(WorkerPool(1)).transcode(b"src", make_media_info(), CLIP_SPEC)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_output_over_size_cap_is_failed(self, run_process):
        run_process.side_effect = self._writes(b"x" * 11)
        spec = VariantSpec(kind=PREVIEW_CLIP, codec="h264", max_dimension=720, max_bytes=10)

        with pytest.raises(TranscodeFailedError):
            await Transcoder(WorkerPool(1)).transcode(b"src", make_media_info(), spec)

    @pytest.mark.asyncio
    async def test_pool_bounds_concurrent_processes(self, run_process):
        active = 0
        peak = 0

        async def slow(args, timeout):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            Path(args[-1]).write_bytes(b"ok")
            active -= 1
            return ProcessResult(0, b"", b"")

        run_process.side_effect = slow
        transcoder = Transcoder(WorkerPool(2))

        await asyncio.gather(*(
            transcoder.transcode(b"src", make_media_info(), THUMB_SPEC) for _ in range(6)
        ))
        assert peak == 2

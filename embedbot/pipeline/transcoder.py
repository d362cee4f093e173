"""
Variant production via ffmpeg, fronted by the shared worker pool.

Arguments are derived only from the VariantSpec and MediaInfo, so the same
input and configuration always yield an equivalent artifact.
"""
from __future__ import annotations

import asyncio
import io
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import aiofiles
import blurhash
from PIL import Image

from ..exceptions import ProbeUnsupportedError, TranscodeFailedError, TranscodeTimeoutError
from ..utils.logging import get_logger
from .process import ProcessSpawnError, ProcessTimeout, run_process
from .types import PREVIEW_CLIP, THUMBNAIL, MediaInfo, VariantOutput, VariantSpec
from .worker_pool import WorkerPool

logger = get_logger(__name__)

AUDIO_BITRATE_KBPS = 128

# Component grid used for thumbnail placeholders
BLURHASH_COMPONENTS = (4, 3)


def _even(value: float) -> int:
    return max(2, int(value) // 2 * 2)


def scaled_dimensions(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Fit within max_dimension on the long side, keep aspect, never upscale, even sides."""
    longest = max(width, height)
    scale = min(1.0, max_dimension / float(longest))
    return _even(round(width * scale)), _even(round(height * scale))


def plan_variants(specs: Sequence[VariantSpec], info: MediaInfo) -> List[VariantSpec]:
    """Configured variants that apply to this source, in configuration order.

    Thumbnails need a video stream. Clips need moving pictures or audio.
    """
    planned = []
    for spec in specs:
        if spec.kind == THUMBNAIL and info.has_video:
            planned.append(spec)
        elif spec.kind == PREVIEW_CLIP and (info.has_audio or (info.has_video and not info.is_still_image)):
            planned.append(spec)
    if not planned:
        raise ProbeUnsupportedError("no configured variant applies to this media")
    return planned


def clip_duration(spec: VariantSpec, info: MediaInfo) -> Optional[float]:
    if spec.max_duration_s is None:
        return info.duration_seconds
    if info.duration_seconds is None:
        return spec.max_duration_s
    return min(spec.max_duration_s, info.duration_seconds)


def compute_blurhash(image_data: bytes) -> Optional[str]:
    """Compact placeholder for a thumbnail, or None when the image is unreadable."""
    x_components, y_components = BLURHASH_COMPONENTS
    try:
        with Image.open(io.BytesIO(image_data)) as img:
            return blurhash.encode(img.convert("RGB"), x_components=x_components, y_components=y_components)
    except (OSError, ValueError) as e:
        logger.warning(f"⚠️ Blurhash skipped: {e}", extra={"subsys": "transcode"})
        return None


def build_ffmpeg_args(
    ffmpeg_path: str,
    src: str,
    dst: str,
    spec: VariantSpec,
    info: MediaInfo,
) -> Tuple[List[str], str, str, Optional[Tuple[int, int]]]:
    """Return (argv, content_type, extension, output dimensions)."""
    base = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostdin", "-y"]

    if spec.kind == THUMBNAIL:
        w, h = scaled_dimensions(info.width or spec.max_dimension, info.height or spec.max_dimension, spec.max_dimension)
        args = base + [
            "-ss", "0",
            "-i", src,
            "-map", "0:v:0",
            "-frames:v", "1",
            "-vf", f"scale={w}:{h}",
            "-c:v", "mjpeg",
            "-q:v", "3",
            "-f", "image2",
            dst,
        ]
        return args, "image/jpeg", ".jpg", (w, h)

    duration = clip_duration(spec, info)
    limit = ["-t", f"{duration:.3f}"] if duration else []
    bitrate = spec.bitrate_kbps or 1500

    if not info.has_video:
        args = base + ["-i", src] + limit + [
            "-map", "0:a:0",
            "-vn",
            "-c:a", "aac",
            "-b:a", f"{AUDIO_BITRATE_KBPS}k",
            "-ac", "2",
            "-movflags", "+faststart",
            "-f", "ipod",
            dst,
        ]
        return args, "audio/mp4", ".m4a", None

    w, h = scaled_dimensions(info.width or spec.max_dimension, info.height or spec.max_dimension, spec.max_dimension)
    args = base + ["-i", src] + limit + [
        "-map", "0:v:0",
        "-vf", f"scale={w}:{h},format=yuv420p",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-profile:v", "main",
        "-b:v", f"{bitrate}k",
        "-maxrate", f"{bitrate}k",
        "-bufsize", f"{bitrate * 2}k",
    ]
    if info.has_audio:
        args += ["-map", "0:a:0", "-c:a", "aac", "-b:a", f"{AUDIO_BITRATE_KBPS}k", "-ac", "2"]
    else:
        args += ["-an"]
    args += ["-movflags", "+faststart", "-f", "mp4", dst]
    return args, "video/mp4", ".mp4", (w, h)


class Transcoder:
    """Produces one variant per call inside a worker-pool slot."""

    def __init__(self, pool: WorkerPool, ffmpeg_path: str = "ffmpeg", timeout_s: float = 60.0):
        self.pool = pool
        self.ffmpeg_path = ffmpeg_path
        self.timeout_s = timeout_s

    async def transcode(self, data: bytes, media_info: MediaInfo, spec: VariantSpec) -> VariantOutput:
        async with self.pool.slot():
            with tempfile.TemporaryDirectory(prefix="embedbot-transcode-") as tmp:
                src = Path(tmp) / "input"
                async with aiofiles.open(src, "wb") as f:
                    await f.write(data)

                # Muxer is forced with -f, so the output name needs no extension
                dst = Path(tmp) / "output"
                args, content_type, extension, dims = build_ffmpeg_args(
                    self.ffmpeg_path, str(src), str(dst), spec, media_info
                )
                try:
                    result = await run_process(args, timeout=self.timeout_s)
                except ProcessTimeout as e:
                    raise TranscodeTimeoutError(f"{spec.kind}: {e}") from e
                except ProcessSpawnError as e:
                    raise TranscodeFailedError(f"{spec.kind}: {e}") from e

                if not result.ok:
                    raise TranscodeFailedError(
                        f"{spec.kind}: ffmpeg exit {result.returncode}: {result.stderr_tail(200)}"
                    )
                if not dst.exists():
                    raise TranscodeFailedError(f"{spec.kind}: ffmpeg produced no output")

                async with aiofiles.open(dst, "rb") as f:
                    output = await f.read()

        if not output:
            raise TranscodeFailedError(f"{spec.kind}: empty output")
        if spec.max_bytes is not None and len(output) > spec.max_bytes:
            raise TranscodeFailedError(f"{spec.kind}: output {len(output)} bytes exceeds {spec.max_bytes}")

        placeholder = None
        if spec.kind == THUMBNAIL:
            placeholder = await asyncio.to_thread(compute_blurhash, output)

        logger.debug(
            f"🎞️ Produced {spec.kind} ({len(output)} bytes, {content_type})",
            extra={"subsys": "transcode"},
        )
        return VariantOutput(
            kind=spec.kind,
            data=output,
            content_type=content_type,
            extension=extension,
            width=dims[0] if dims else None,
            height=dims[1] if dims else None,
            blurhash=placeholder,
        )

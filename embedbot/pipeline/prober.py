"""
Media inspection via ffprobe.

Input bytes are written into a scoped temporary directory that is removed
on every exit path; the bytes themselves are never modified.
"""
from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from ..exceptions import ProbeFailedError, ProbeTimeoutError, ProbeUnsupportedError
from ..utils.logging import get_logger
from .process import ProcessSpawnError, ProcessTimeout, run_process
from .types import MediaInfo

logger = get_logger(__name__)

# Demuxers that accept text or subtitles as "video"
NON_MEDIA_CONTAINERS = {"tty", "srt", "ass", "webvtt", "subviewer", "subviewer1", "lrc", "jacosub"}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result >= 0 else None


def parse_ffprobe_output(payload: Dict[str, Any]) -> MediaInfo:
    """Build MediaInfo from `ffprobe -print_format json -show_format -show_streams`."""
    streams = payload.get("streams") or []
    fmt = payload.get("format") or {}

    video = next(
        (
            s for s in streams
            if s.get("codec_type") == "video"
            and not (s.get("disposition") or {}).get("attached_pic")
        ),
        None,
    )
    if video is None:
        # Cover art only: still treat as a picture source
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    duration = _as_float(fmt.get("duration"))
    if duration is None and video is not None:
        duration = _as_float(video.get("duration"))
    if duration is None and audio is not None:
        duration = _as_float(audio.get("duration"))

    container = fmt.get("format_name")
    if container:
        container = container.split(",")[0]

    return MediaInfo(
        container=container,
        video_codec=video.get("codec_name") if video else None,
        audio_codec=audio.get("codec_name") if audio else None,
        duration_seconds=duration,
        width=_as_int(video.get("width")) if video else None,
        height=_as_int(video.get("height")) if video else None,
        has_audio=audio is not None,
        has_video=video is not None,
    )


class Prober:
    """Extracts codec, duration and dimension metadata from fetched bytes."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: float = 20.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    async def probe(self, data: bytes) -> MediaInfo:
        if not data:
            raise ProbeUnsupportedError("empty input")

        with tempfile.TemporaryDirectory(prefix="embedbot-probe-") as tmp:
            src = Path(tmp) / "input"
            async with aiofiles.open(src, "wb") as f:
                await f.write(data)

            args = [
                self.ffprobe_path,
                "-v", "error",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                str(src),
            ]
            try:
                result = await run_process(args, timeout=self.timeout_s)
            except ProcessTimeout as e:
                raise ProbeTimeoutError(str(e)) from e
            except ProcessSpawnError as e:
                raise ProbeFailedError(str(e)) from e

        if not result.ok:
            # ffprobe rejects anything it cannot demux
            logger.debug(
                f"ffprobe exit {result.returncode}: {result.stderr_tail()}",
                extra={"subsys": "probe"},
            )
            raise ProbeUnsupportedError(f"not recognised as media ({result.stderr_tail(120)})")

        try:
            payload = json.loads(result.stdout.decode("utf-8", errors="replace") or "{}")
        except ValueError as e:
            raise ProbeFailedError(f"unparseable ffprobe output: {e}") from e

        info = parse_ffprobe_output(payload)
        if info.container in NON_MEDIA_CONTAINERS:
            raise ProbeUnsupportedError(f"{info.container} is not playable media")
        if not info.has_video and not info.has_audio:
            raise ProbeUnsupportedError("no audio or video streams")
        if info.has_video and not (info.width and info.height):
            raise ProbeUnsupportedError("video stream without dimensions")

        logger.debug(
            f"🔍 Probed {info.container} video={info.video_codec} audio={info.audio_codec} "
            f"{info.width}x{info.height} {info.duration_seconds}s",
            extra={"subsys": "probe"},
        )
        return info

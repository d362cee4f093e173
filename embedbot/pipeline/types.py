"""
Data model for the media pipeline.

Jobs are ephemeral coordination state owned by the orchestrator. Cache
entries are the durable record, serialized to JSON by the cache store. [CA]
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import CacheCorruptError, PipelineError

THUMBNAIL = "thumbnail"
PREVIEW_CLIP = "preview-clip"
VARIANT_KINDS = (THUMBNAIL, PREVIEW_CLIP)


@dataclass(frozen=True)
class Fingerprint:
    """Fixed-width identity. `kind` is "ref" (normalized URL) or "content" (bytes)."""

    kind: str
    digest: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.digest}"

    @property
    def short(self) -> str:
        return self.digest[:12]


@dataclass(frozen=True)
class MediaReference:
    """Opaque, stable identifier of uploaded media (an mxc:// URI)."""

    content_uri: str

    def __str__(self) -> str:
        return self.content_uri


@dataclass
class MediaInfo:
    """Structured metadata extracted by the prober."""

    container: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    has_audio: bool = False
    has_video: bool = False

    @property
    def is_still_image(self) -> bool:
        """A single-frame video stream with no audio, e.g. png/jpeg/webp."""
        if not self.has_video or self.has_audio:
            return False
        if self.video_codec in {"mjpeg", "png", "webp", "bmp", "tiff", "gif"} and not self.duration_seconds:
            return True
        return self.container in {"image2", "png_pipe", "jpeg_pipe", "webp_pipe", "bmp_pipe", "tiff_pipe"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container": self.container,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "duration_seconds": self.duration_seconds,
            "width": self.width,
            "height": self.height,
            "has_audio": self.has_audio,
            "has_video": self.has_video,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaInfo":
        return cls(
            container=data.get("container"),
            video_codec=data.get("video_codec"),
            audio_codec=data.get("audio_codec"),
            duration_seconds=data.get("duration_seconds"),
            width=data.get("width"),
            height=data.get("height"),
            has_audio=bool(data.get("has_audio", False)),
            has_video=bool(data.get("has_video", False)),
        )


@dataclass(frozen=True)
class VariantSpec:
    """Target for one output variant: fixed codec, bounded dimension/duration/bitrate."""

    kind: str
    codec: str
    max_dimension: int
    max_duration_s: Optional[float] = None
    bitrate_kbps: Optional[int] = None
    max_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "codec": self.codec,
            "max_dimension": self.max_dimension,
            "max_duration_s": self.max_duration_s,
            "bitrate_kbps": self.bitrate_kbps,
            "max_bytes": self.max_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariantSpec":
        return cls(
            kind=str(data["kind"]),
            codec=str(data["codec"]),
            max_dimension=int(data["max_dimension"]),
            max_duration_s=float(data["max_duration_s"]) if data.get("max_duration_s") is not None else None,
            bitrate_kbps=int(data["bitrate_kbps"]) if data.get("bitrate_kbps") is not None else None,
            max_bytes=int(data["max_bytes"]) if data.get("max_bytes") is not None else None,
        )


@dataclass
class VariantOutput:
    """Bytes produced by one transcode run, before upload."""

    kind: str
    data: bytes
    content_type: str
    extension: str
    width: Optional[int] = None
    height: Optional[int] = None
    blurhash: Optional[str] = None

    @property
    def byte_size(self) -> int:
        return len(self.data)


@dataclass
class Variant:
    """One published artifact inside a cache entry."""

    kind: str
    byte_size: int
    content_type: str
    storage_ref: Optional[str] = None
    media_reference: Optional[MediaReference] = None
    width: Optional[int] = None
    height: Optional[int] = None
    blurhash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "byte_size": self.byte_size,
            "content_type": self.content_type,
            "storage_ref": self.storage_ref,
            "media_reference": self.media_reference.content_uri if self.media_reference else None,
            "width": self.width,
            "height": self.height,
            "blurhash": self.blurhash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        ref = data.get("media_reference")
        return cls(
            kind=str(data["kind"]),
            byte_size=int(data["byte_size"]),
            content_type=str(data["content_type"]),
            storage_ref=data.get("storage_ref"),
            media_reference=MediaReference(ref) if ref else None,
            width=data.get("width"),
            height=data.get("height"),
            blurhash=data.get("blurhash"),
        )


@dataclass
class CacheEntry:
    """Durable record of a completed pipeline run, keyed by content fingerprint."""

    fingerprint: str
    variants: List[Variant]
    media_info: MediaInfo
    source_reference: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)

    @property
    def total_bytes(self) -> int:
        return sum(v.byte_size for v in self.variants)

    @property
    def variant_kinds(self) -> List[str]:
        return [v.kind for v in self.variants]

    def variant(self, kind: str) -> Optional[Variant]:
        for v in self.variants:
            if v.kind == kind:
                return v
        return None

    @property
    def primary_reference(self) -> Optional[MediaReference]:
        """The playable variant if one exists, else the first published one."""
        for v in self.variants:
            if v.kind != THUMBNAIL and v.media_reference:
                return v.media_reference
        for v in self.variants:
            if v.media_reference:
                return v.media_reference
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "variants": [v.to_dict() for v in self.variants],
            "media_info": self.media_info.to_dict(),
            "source_reference": self.source_reference,
            "created_at": self.created_at,
            "last_access": self.last_access,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry; any structural problem is reported as CacheCorruptError."""
        try:
            variants = [Variant.from_dict(v) for v in data["variants"]]
            if not variants:
                raise ValueError("entry has no variants")
            return cls(
                fingerprint=str(data["fingerprint"]),
                variants=variants,
                media_info=MediaInfo.from_dict(data.get("media_info") or {}),
                source_reference=data.get("source_reference"),
                created_at=float(data["created_at"]),
                last_access=float(data["last_access"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorruptError(f"malformed cache entry: {e}") from e


class JobState(Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    FETCHING = "fetching"
    PROBING = "probing"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    PUBLISHED = "published"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.PUBLISHED, JobState.FAILED)


# FAILED is reachable from every non-terminal state. FETCHING -> PUBLISHED is
# the content-dedup shortcut: fetched bytes already have a cache entry.
ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.FETCHING, JobState.FAILED},
    JobState.FETCHING: {JobState.PROBING, JobState.PUBLISHED, JobState.FAILED},
    JobState.PROBING: {JobState.TRANSCODING, JobState.FAILED},
    JobState.TRANSCODING: {JobState.UPLOADING, JobState.FAILED},
    JobState.UPLOADING: {JobState.PUBLISHED, JobState.FAILED},
    JobState.PUBLISHED: set(),
    JobState.FAILED: set(),
}


@dataclass
class PipelineResult:
    """Successful outcome handed to the chat layer."""

    fingerprint: str
    entry: CacheEntry
    cache_hit: bool = False

    @property
    def media_reference(self) -> Optional[MediaReference]:
        return self.entry.primary_reference

    @property
    def media_info(self) -> MediaInfo:
        return self.entry.media_info


@dataclass
class Job:
    """One in-progress pipeline run. Owned exclusively by the orchestrator."""

    fingerprint: Fingerprint
    source_reference: str
    request_id: str
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.PENDING
    attempts: int = 0
    stage_attempts: Dict[str, int] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    last_error: Optional[PipelineError] = None
    content_fingerprint: Optional[Fingerprint] = None
    waiters: Dict[str, List["asyncio.Future[PipelineResult]"]] = field(default_factory=dict)
    task: Optional["asyncio.Task[None]"] = None

    @property
    def waiter_count(self) -> int:
        return sum(len(v) for v in self.waiters.values())

    def record_attempt(self, stage: str) -> int:
        self.attempts += 1
        self.stage_attempts[stage] = self.stage_attempts.get(stage, 0) + 1
        return self.stage_attempts[stage]


@dataclass(frozen=True)
class EvictionPolicy:
    retention_seconds: float
    max_bytes: int


@dataclass
class EvictionReport:
    expired: List[str] = field(default_factory=list)
    over_cap: List[str] = field(default_factory=list)
    freed_bytes: int = 0
    orphans_removed: int = 0

    @property
    def evicted(self) -> List[str]:
        return self.expired + self.over_cap

"""
Pipeline configuration loaded from the environment (.env supported).

Values are read once by `load_config()` into a `PipelineConfig`, validated,
and then passed explicitly to every pipeline component. [CMV]
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .pipeline.types import PREVIEW_CLIP, THUMBNAIL, VARIANT_KINDS, EvictionPolicy, VariantSpec
from .retry_utils import RetryConfig
from .utils.env import get_float, get_int, get_str, read_secret
from .utils.logging import get_logger

logger = get_logger(__name__)

MIB = 1024 * 1024
GIB = 1024 * MIB

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; Discordbot/2.0; +https://discordapp.com)"
DEFAULT_IGNORED_TITLE_PATTERNS = [r"^(Image|Video|Audio) File$"]
DEFAULT_URL_REWRITES = [
    (r"^https?://(www\.)?x(cancel)?\.com/", "https://vxtwitter.com/"),
    (r"^https?://(www\.)?pixiv\.net/", "https://phixiv.net/"),
]

DEFAULT_VARIANTS = (
    VariantSpec(kind=THUMBNAIL, codec="mjpeg", max_dimension=600),
    VariantSpec(
        kind=PREVIEW_CLIP,
        codec="h264",
        max_dimension=720,
        max_duration_s=30.0,
        bitrate_kbps=1500,
        max_bytes=25 * MIB,
    ),
)

SUPPORTED_CODECS = {
    THUMBNAIL: {"mjpeg"},
    PREVIEW_CLIP: {"h264"},
}


def _to_python_replacement(replacement: str) -> str:
    """Accept `$1`/`${name}` group references in rewrite files."""
    replacement = re.sub(r"\$\{(\w+)\}", r"\\g<\1>", replacement)
    return re.sub(r"\$(\d+)", r"\\g<\1>", replacement)


@dataclass
class PipelineConfig:
    """Everything the media pipeline needs, with conservative defaults."""

    # Fetch
    max_file_size: int = 100 * MIB
    download_timeout_s: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    proxy_url: Optional[str] = None

    # External processes
    worker_pool_size: int = 2
    pool_acquire_timeout_s: float = 120.0
    probe_timeout_s: float = 20.0
    transcode_timeout_s: float = 60.0
    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"

    # Retries, per stage
    fetch_max_attempts: int = 3
    probe_max_attempts: int = 3
    transcode_max_attempts: int = 3
    upload_max_attempts: int = 3
    retry_base_delay_s: float = 0.2
    retry_max_delay_s: float = 5.0

    # Cache
    cache_dir: Path = field(default_factory=lambda: Path("state/media_cache"))
    cache_retention_days: float = 30.0
    cache_max_bytes: int = 2 * GIB

    # Variants
    variants: Tuple[VariantSpec, ...] = DEFAULT_VARIANTS

    # Media repository
    homeserver_url: str = "https://matrix.org"
    access_token: Optional[str] = None
    upload_timeout_s: float = 60.0

    # Link handling
    url_rewrites: List[Tuple[Pattern[str], str]] = field(
        default_factory=lambda: [(re.compile(p), r) for p, r in DEFAULT_URL_REWRITES]
    )
    ignored_title_patterns: List[Pattern[str]] = field(
        default_factory=lambda: [re.compile(p) for p in DEFAULT_IGNORED_TITLE_PATTERNS]
    )

    def validate(self) -> None:
        """Raise ConfigurationError on the first out-of-range value."""
        if self.max_file_size <= 0:
            raise ConfigurationError("MEDIA_MAX_FILE_SIZE must be positive")
        for name in ("download_timeout_s", "pool_acquire_timeout_s", "probe_timeout_s",
                     "transcode_timeout_s", "upload_timeout_s"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.worker_pool_size < 1:
            raise ConfigurationError("MEDIA_WORKER_POOL_SIZE must be >= 1")
        for name in ("fetch_max_attempts", "probe_max_attempts",
                     "transcode_max_attempts", "upload_max_attempts"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        if self.retry_base_delay_s < 0 or self.retry_max_delay_s < self.retry_base_delay_s:
            raise ConfigurationError("retry delays must satisfy 0 <= base <= max")
        if self.cache_retention_days <= 0 or self.cache_max_bytes <= 0:
            raise ConfigurationError("cache retention and size cap must be positive")
        if not self.variants:
            raise ConfigurationError("at least one media variant must be configured")
        seen = set()
        for spec in self.variants:
            if spec.kind not in VARIANT_KINDS:
                raise ConfigurationError(f"unknown variant kind: {spec.kind}")
            if spec.kind in seen:
                raise ConfigurationError(f"duplicate variant kind: {spec.kind}")
            seen.add(spec.kind)
            if spec.codec not in SUPPORTED_CODECS[spec.kind]:
                raise ConfigurationError(f"unsupported codec {spec.codec!r} for {spec.kind}")
            if spec.max_dimension < 16:
                raise ConfigurationError(f"{spec.kind}: max_dimension must be >= 16")
            if spec.max_duration_s is not None and spec.max_duration_s <= 0:
                raise ConfigurationError(f"{spec.kind}: max_duration_s must be positive")
            if spec.max_bytes is not None and spec.max_bytes <= 0:
                raise ConfigurationError(f"{spec.kind}: max_bytes must be positive")

    @property
    def eviction_policy(self) -> EvictionPolicy:
        return EvictionPolicy(
            retention_seconds=self.cache_retention_days * 86400.0,
            max_bytes=self.cache_max_bytes,
        )

    def retry_config(self, stage: str) -> RetryConfig:
        attempts = {
            "fetch": self.fetch_max_attempts,
            "probe": self.probe_max_attempts,
            "transcode": self.transcode_max_attempts,
            "upload": self.upload_max_attempts,
        }[stage]
        return RetryConfig(
            max_attempts=attempts,
            base_delay=self.retry_base_delay_s,
            max_delay=self.retry_max_delay_s,
        )

    def rewrite_url(self, url: str) -> str:
        """Apply the first rewrite rule that changes the URL into another http(s) URL."""
        for pattern, replacement in self.url_rewrites:
            if not pattern.search(url):
                continue
            rewritten = pattern.sub(replacement, url, count=1)
            if rewritten == url:
                continue
            parts = urlsplit(rewritten)
            if parts.scheme in ("http", "https") and parts.netloc:
                logger.debug(f"🔀 Rewrote {url} -> {rewritten}", extra={"subsys": "config"})
                return rewritten
            logger.warning(
                f"⚠️ Rewrite rule {pattern.pattern!r} produced an invalid URL: {rewritten}",
                extra={"subsys": "config"},
            )
        return url


def _load_variants(path: str) -> Tuple[VariantSpec, ...]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return tuple(VariantSpec.from_dict(item) for item in raw)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ConfigurationError(f"Invalid MEDIA_VARIANTS_FILE {path}: {e}") from e


def _load_rewrites(path: str) -> List[Tuple[Pattern[str], str]]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return [(re.compile(item["regex"]), _to_python_replacement(item["replacement"])) for item in raw]
    except (OSError, ValueError, KeyError, TypeError, re.error) as e:
        raise ConfigurationError(f"Invalid URL_REWRITES_FILE {path}: {e}") from e


def _load_title_patterns(raw: Optional[str]) -> List[Pattern[str]]:
    sources = [p.strip() for p in raw.split("||")] if raw else DEFAULT_IGNORED_TITLE_PATTERNS
    try:
        return [re.compile(p) for p in sources if p]
    except re.error as e:
        raise ConfigurationError(f"Invalid IGNORED_TITLE_PATTERNS: {e}") from e


def load_config(dotenv: bool = True) -> PipelineConfig:
    """
    Build a PipelineConfig from environment variables.

    Returns:
        A validated PipelineConfig

    Raises:
        ConfigurationError: a value is malformed or out of range
    """
    if dotenv:
        load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    variants_file = get_str("MEDIA_VARIANTS_FILE")
    rewrites_file = get_str("URL_REWRITES_FILE")

    try:
        access_token = read_secret("MATRIX_ACCESS_TOKEN", "MATRIX_ACCESS_TOKEN_FILE")
    except OSError as e:
        raise ConfigurationError(f"Cannot read MATRIX_ACCESS_TOKEN_FILE: {e}") from e

    defaults = PipelineConfig()
    config = PipelineConfig(
        max_file_size=get_int("MEDIA_MAX_FILE_SIZE", defaults.max_file_size),
        download_timeout_s=get_float("MEDIA_DOWNLOAD_TIMEOUT_S", defaults.download_timeout_s),
        user_agent=get_str("HTTP_USER_AGENT", DEFAULT_USER_AGENT),
        proxy_url=get_str("HTTP_PROXY_URL"),
        worker_pool_size=get_int("MEDIA_WORKER_POOL_SIZE", defaults.worker_pool_size),
        pool_acquire_timeout_s=get_float("MEDIA_POOL_ACQUIRE_TIMEOUT_S", defaults.pool_acquire_timeout_s),
        probe_timeout_s=get_float("MEDIA_PROBE_TIMEOUT_S", defaults.probe_timeout_s),
        transcode_timeout_s=get_float("MEDIA_TRANSCODE_TIMEOUT_S", defaults.transcode_timeout_s),
        ffprobe_path=get_str("FFPROBE_PATH", "ffprobe"),
        ffmpeg_path=get_str("FFMPEG_PATH", "ffmpeg"),
        fetch_max_attempts=get_int("MEDIA_FETCH_MAX_ATTEMPTS", 3),
        probe_max_attempts=get_int("MEDIA_PROBE_MAX_ATTEMPTS", 3),
        transcode_max_attempts=get_int("MEDIA_TRANSCODE_MAX_ATTEMPTS", 3),
        upload_max_attempts=get_int("MEDIA_UPLOAD_MAX_ATTEMPTS", 3),
        retry_base_delay_s=get_float("MEDIA_RETRY_BASE_DELAY_S", defaults.retry_base_delay_s),
        retry_max_delay_s=get_float("MEDIA_RETRY_MAX_DELAY_S", defaults.retry_max_delay_s),
        cache_dir=Path(get_str("MEDIA_CACHE_DIR", "state/media_cache")),
        cache_retention_days=get_float("MEDIA_CACHE_RETENTION_DAYS", defaults.cache_retention_days),
        cache_max_bytes=get_int("MEDIA_CACHE_MAX_BYTES", defaults.cache_max_bytes),
        variants=_load_variants(variants_file) if variants_file else DEFAULT_VARIANTS,
        homeserver_url=get_str("MATRIX_HOMESERVER_URL", "https://matrix.org").rstrip("/"),
        access_token=access_token,
        upload_timeout_s=get_float("MEDIA_UPLOAD_TIMEOUT_S", defaults.upload_timeout_s),
        ignored_title_patterns=_load_title_patterns(get_str("IGNORED_TITLE_PATTERNS")),
    )
    if rewrites_file:
        config.url_rewrites = _load_rewrites(rewrites_file)

    config.validate()
    logger.info(
        f"⚙️ Pipeline config loaded (pool={config.worker_pool_size}, "
        f"max_file_size={config.max_file_size}, variants={[v.kind for v in config.variants]})",
        extra={"subsys": "config"},
    )
    return config

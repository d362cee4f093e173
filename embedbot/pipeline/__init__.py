"""
Media pipeline: fetch -> probe -> transcode -> cache -> publish.

Components are wired by `embedbot.embed.EmbedService.create`; import them
from their modules (`embedbot.pipeline.orchestrator`, ...).
"""

from .types import (
    CacheEntry,
    Fingerprint,
    Job,
    JobState,
    MediaInfo,
    MediaReference,
    PipelineResult,
    Variant,
    VariantOutput,
    VariantSpec,
)

__all__ = [
    "CacheEntry",
    "Fingerprint",
    "Job",
    "JobState",
    "MediaInfo",
    "MediaReference",
    "PipelineResult",
    "Variant",
    "VariantOutput",
    "VariantSpec",
]

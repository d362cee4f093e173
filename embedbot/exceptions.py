"""
Custom exceptions for the embed bot, providing a structured error hierarchy.

Pipeline errors are classified by stage and kind. Each carries whether it
is retryable and a short, human-readable reason the chat layer can show.
"""
from typing import Optional


class EmbedBotError(Exception):
    """Base exception for all custom exceptions in this bot."""

    pass


class ConfigurationError(EmbedBotError):
    """Raised for errors in bot configuration, like missing keys or invalid values."""

    pass


class PipelineError(EmbedBotError):
    """Base for every classified failure of the fetch/probe/transcode/upload pipeline."""

    stage = "pipeline"
    kind = "failed"
    retryable = False
    user_message = "something went wrong"

    def __init__(
        self,
        message: str = "",
        *,
        retryable: Optional[bool] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message or self.user_message)
        if retryable is not None:
            self.retryable = retryable
        self.retry_after_seconds = retry_after_seconds

    @property
    def code(self) -> str:
        return f"{self.stage}.{self.kind}"


# Fetch


class FetchError(PipelineError):
    stage = "fetch"


class FetchUnreachableError(FetchError):
    """DNS failure, connection reset or a non-success status."""

    kind = "unreachable"
    retryable = True
    user_message = "source unreachable"


class FetchTooLargeError(FetchError):
    kind = "too_large"
    user_message = "source too large"


class FetchTimeoutError(FetchError):
    kind = "timeout"
    user_message = "source took too long to download"


# Probe


class ProbeError(PipelineError):
    stage = "probe"


class ProbeUnsupportedError(ProbeError):
    """Input is not media we can work with. Terminal."""

    kind = "unsupported"
    user_message = "unsupported media"


class ProbeTimeoutError(ProbeError):
    kind = "timeout"
    retryable = True
    user_message = "media inspection timed out"


class ProbeFailedError(ProbeError):
    kind = "failed"
    user_message = "media inspection failed"


# Transcode


class TranscodeError(PipelineError):
    stage = "transcode"


class TranscodeTimeoutError(TranscodeError):
    kind = "timeout"
    retryable = True
    user_message = "conversion timed out"


class TranscodeFailedError(TranscodeError):
    """Non-zero exit for reasons other than timeout; assumed deterministic."""

    kind = "failed"
    user_message = "conversion failed"


# Upload


class UploadError(PipelineError):
    stage = "upload"


class UploadTransientError(UploadError):
    kind = "transient"
    retryable = True
    user_message = "upload failed, try again later"


class UploadRejectedError(UploadError):
    kind = "rejected"
    user_message = "upload rejected by the media repository"


# Cache


class CacheError(PipelineError):
    stage = "cache"


class CacheCorruptError(CacheError):
    """An entry failed to deserialize. Readers treat this as a miss."""

    kind = "corrupt"
    user_message = "cache entry corrupt"


class CacheIOError(CacheError):
    kind = "io_failure"
    user_message = "could not record the converted media"


# Outcomes outside the stage taxonomy


class JobCancelledError(PipelineError):
    stage = "job"
    kind = "cancelled"
    user_message = "request cancelled"


class InternalPipelineError(PipelineError):
    """Wraps an unexpected exception so waiters still get a classified outcome."""

    stage = "job"
    kind = "internal"


def describe_failure(error: BaseException) -> str:
    """Human-readable failure reason for user-facing message composition."""
    if isinstance(error, PipelineError):
        return error.user_message
    return InternalPipelineError.user_message

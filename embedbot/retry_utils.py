"""
Retry utilities for handling transient errors with exponential backoff.
Retries live at the orchestrator level; stage primitives stay single-attempt.
"""
import asyncio
import logging
import random
from typing import Any, Callable, Optional

from .exceptions import PipelineError

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is retryable.

    Only classified pipeline errors flagged as transient are retried;
    anything unclassified propagates immediately.
    """
    return isinstance(error, PipelineError) and bool(error.retryable)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for exponential backoff with jitter.

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to prevent thundering herd
        jitter_range = delay * 0.1
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


async def retry_async(
    func: Callable,
    config: RetryConfig,
    *args,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    **kwargs,
) -> Any:
    """
    Execute an async function with retry logic.

    Args:
        func: Async function to execute
        config: Retry configuration
        on_retry: Called with (attempt, error, delay) before each backoff sleep
        *args: Arguments to pass to func
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result of successful function execution

    Raises:
        The last exception encountered if all retries fail
    """
    name = getattr(func, "__name__", repr(func))
    last_exception: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            logger.debug(f"🔄 Attempt {attempt + 1}/{config.max_attempts} for {name}")
            result = await func(*args, **kwargs)

            if attempt > 0:
                logger.info(f"✅ {name} succeeded on attempt {attempt + 1}")

            return result

        except Exception as e:
            last_exception = e

            if not is_retryable_error(e):
                logger.debug(f"❌ Non-retryable error in {name}: {e}")
                raise

            if attempt == config.max_attempts - 1:
                logger.warning(f"❌ All {config.max_attempts} attempts failed for {name}")
                break

            delay = calculate_delay(attempt, config)
            # Respect a Retry-After hint within bounds [REH]
            retry_after_hint = getattr(e, "retry_after_seconds", None)
            extra_note = ""
            if retry_after_hint is not None and retry_after_hint > 0:
                bounded_ra = min(float(retry_after_hint), config.max_delay)
                delay = max(delay, bounded_ra)
                extra_note = f" (respecting Retry-After={bounded_ra:.2f}s)"

            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            logger.warning(
                f"⚠️ Attempt {attempt + 1} failed for {name}: {e}. "
                f"Retrying in {delay:.2f}s...{extra_note}"
            )

            await asyncio.sleep(delay)

    # All retries exhausted
    assert last_exception is not None
    raise last_exception

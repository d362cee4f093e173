"""
Bounded slot pool for CPU-heavy external processes. [PA][RM]

Instantiated explicitly at process start and passed to the transcoder, so
tests can build independent pools. Acquisition is scoped: the slot is
released on every exit path, including cancellation.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from ..exceptions import TranscodeTimeoutError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class PoolAcquireTimeoutError(TranscodeTimeoutError):
    """No worker slot became free within the acquire budget."""

    user_message = "conversion queue is full, try again later"


@dataclass
class PoolMetrics:
    """Slot usage counters. [PA]"""

    acquired_total: int = 0
    current_active: int = 0
    max_active_seen: int = 0
    waiting: int = 0
    acquire_timeouts: int = 0


class WorkerPool:
    def __init__(self, size: int, acquire_timeout: float = 120.0):
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self.size = size
        self.acquire_timeout = acquire_timeout
        self._semaphore = asyncio.Semaphore(size)
        self.metrics = PoolMetrics()

    @property
    def available(self) -> int:
        return self.size - self.metrics.current_active

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block."""
        self.metrics.waiting += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError as e:
            self.metrics.acquire_timeouts += 1
            raise PoolAcquireTimeoutError(
                f"no transcode slot free after {self.acquire_timeout:.0f}s"
            ) from e
        finally:
            self.metrics.waiting -= 1

        self.metrics.acquired_total += 1
        self.metrics.current_active += 1
        self.metrics.max_active_seen = max(self.metrics.max_active_seen, self.metrics.current_active)
        try:
            yield
        finally:
            self.metrics.current_active -= 1
            self._semaphore.release()

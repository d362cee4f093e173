"""
Timeout-bounded, cancellable external process invocation. [RM][REH]

The external tool is opaque: we only start it, wait for it, and kill it.
Every exit path (timeout, cancellation) reaps the child before returning.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Sequence

from ..utils.logging import get_logger

logger = get_logger(__name__)


class ProcessTimeout(Exception):
    """The process exceeded its wall-clock budget and was killed."""


class ProcessSpawnError(Exception):
    """The executable could not be started."""


@dataclass
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, limit: int = 400) -> str:
        return self.stderr.decode("utf-8", errors="replace")[-limit:].strip()


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning(f"⚠️ Process {proc.pid} did not exit after SIGKILL", extra={"subsys": "process"})


async def run_process(
    args: Sequence[str],
    timeout: float,
    stdin_data: Optional[bytes] = None,
) -> ProcessResult:
    """Run `args`, returning its exit status and output.

    Raises ProcessTimeout when the budget is exceeded and ProcessSpawnError
    when the executable is missing. Task cancellation kills the child and
    re-raises.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessSpawnError(f"cannot start {args[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_data), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise ProcessTimeout(f"{args[0]} exceeded {timeout:.0f}s")
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    return ProcessResult(returncode=proc.returncode, stdout=stdout or b"", stderr=stderr or b"")

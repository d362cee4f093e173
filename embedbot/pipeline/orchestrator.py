"""
Job orchestration: cache check, single-flight admission, staged execution. [PA][REH]

For any reference fingerprint at most one Job is live; later requests attach
as waiters and receive the same terminal outcome. Each waiter owns a future
that the Job resolves exactly once. After the fetch, a second single-flight
on the content fingerprint lets different URLs with identical bytes share
one transcode/upload run.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ..config import PipelineConfig
from ..exceptions import (
    InternalPipelineError,
    JobCancelledError,
    PipelineError,
    ProbeUnsupportedError,
)
from ..retry_utils import retry_async
from ..utils.logging import get_logger
from .cache_store import CacheStore
from .fetcher import FetchLimits, FetchResult, Fetcher
from .fingerprint import fingerprint_content, fingerprint_reference
from .prober import Prober
from .sniff import is_executable_type
from .transcoder import Transcoder, plan_variants
from .types import (
    ALLOWED_TRANSITIONS,
    CacheEntry,
    Fingerprint,
    Job,
    JobState,
    PipelineResult,
    Variant,
    VariantOutput,
)
from .uploader import Uploader

logger = get_logger(__name__)


def _consume(future: "asyncio.Future[Any]") -> None:
    # Mark exceptions as retrieved when nobody is left to await them
    if not future.cancelled():
        future.exception()


class JobOrchestrator:
    """Ties Fetcher, Prober, Transcoder, Uploader and CacheStore together."""

    def __init__(
        self,
        config: PipelineConfig,
        fetcher: Fetcher,
        prober: Prober,
        transcoder: Transcoder,
        uploader: Uploader,
        cache: CacheStore,
    ):
        self.config = config
        self.fetcher = fetcher
        self.prober = prober
        self.transcoder = transcoder
        self.uploader = uploader
        self.cache = cache

        self._jobs: Dict[str, Job] = {}
        self._content_flights: Dict[str, "asyncio.Future[Optional[CacheEntry]]"] = {}
        self._requests: Dict[str, Set[str]] = {}

    # Introspection

    def live_job(self, source_reference: str) -> Optional[Job]:
        return self._jobs.get(fingerprint_reference(source_reference).digest)

    @property
    def live_jobs(self) -> List[Job]:
        return list(self._jobs.values())

    # Admission

    async def process(self, source_reference: str, request_id: str) -> PipelineResult:
        """Run or join the pipeline for `source_reference`.

        Returns the published result; raises a PipelineError subclass on
        failure (JobCancelledError when the request or job was cancelled).
        """
        ref_fp = fingerprint_reference(source_reference)
        job = self._live(ref_fp)

        if job is None:
            entry = await self.cache.lookup(ref_fp)
            if entry is not None:
                await self.cache.touch(entry.fingerprint)
                logger.info(
                    f"⚡ Cache hit for {source_reference}",
                    extra={
                        "subsys": "orchestrator",
                        "request_id": request_id,
                        "fingerprint": entry.fingerprint,
                        "event": "cache.hit",
                    },
                )
                return PipelineResult(fingerprint=entry.fingerprint, entry=entry, cache_hit=True)
            # Another request may have admitted a job while we were reading
            job = self._live(ref_fp)
            if job is None:
                job = self._admit(ref_fp, source_reference, request_id)

        future = self._attach(job, request_id)
        try:
            return await future
        except asyncio.CancelledError:
            self._detach(job, request_id, future)
            raise

    def _live(self, ref_fp: Fingerprint) -> Optional[Job]:
        job = self._jobs.get(ref_fp.digest)
        if job is None or job.state.is_terminal:
            return None
        return job

    def _admit(self, ref_fp: Fingerprint, source_reference: str, request_id: str) -> Job:
        job = Job(fingerprint=ref_fp, source_reference=source_reference, request_id=request_id)
        self._jobs[ref_fp.digest] = job
        job.task = asyncio.create_task(self._run(job), name=f"media-job-{job.job_id}")
        job.task.add_done_callback(lambda task: self._on_task_done(job, task))
        logger.info(
            f"🆕 Job admitted for {source_reference}",
            extra=self._extra(job, event="job.admitted"),
        )
        return job

    def _attach(self, job: Job, request_id: str) -> "asyncio.Future[PipelineResult]":
        future: "asyncio.Future[PipelineResult]" = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume)
        job.waiters.setdefault(request_id, []).append(future)
        self._requests.setdefault(request_id, set()).add(job.fingerprint.digest)
        if request_id != job.request_id or job.waiter_count > 1:
            logger.info(
                f"🔗 Request attached to live job ({job.waiter_count} waiters)",
                extra=self._extra(job, request_id=request_id, event="job.attached"),
            )
        return future

    def _detach(self, job: Job, request_id: str, future: "asyncio.Future[PipelineResult]") -> None:
        waiters = job.waiters.get(request_id, [])
        if future in waiters:
            waiters.remove(future)
        if not waiters:
            job.waiters.pop(request_id, None)

    # Cancellation

    def cancel(self, request_id: str, reason: str = "request retracted") -> int:
        """Cancel work for a retracted chat event.

        The owning request cancels its job (every waiter sees cancellation);
        an attached request only withdraws its own waiters. Returns the
        number of jobs affected.
        """
        affected = 0
        for digest in self._requests.pop(request_id, set()):
            job = self._jobs.get(digest)
            if job is None or job.state.is_terminal:
                continue
            affected += 1
            if job.request_id == request_id and job.task is not None:
                logger.info(f"🛑 Cancelling job: {reason}", extra=self._extra(job, event="job.cancel"))
                job.task.cancel()
            else:
                for future in job.waiters.pop(request_id, []):
                    if not future.done():
                        future.set_exception(JobCancelledError(reason))
        return affected

    async def shutdown(self) -> None:
        """Cancel every live job and wait for external processes to be reaped."""
        tasks = [job.task for job in self._jobs.values() if job.task is not None and not job.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"🛑 Orchestrator shut down ({len(tasks)} jobs cancelled)", extra={"subsys": "orchestrator"})

    # Execution

    async def _run(self, job: Job) -> None:
        try:
            entry = await self._execute(job)
        except PipelineError as e:
            self._fail(job, e)
        except Exception as e:
            logger.exception(
                f"❌ Unexpected error in job: {e}",
                extra=self._extra(job, event="job.internal_error"),
            )
            self._fail(job, InternalPipelineError(f"{type(e).__name__}: {e}"))
        else:
            self._publish(job, entry)

    def _on_task_done(self, job: Job, task: "asyncio.Task[None]") -> None:
        if task.cancelled() and not job.state.is_terminal:
            self._fail(job, JobCancelledError("request cancelled"))
        self._retire(job)
        if job.fingerprint.digest in self._jobs:
            # A newer job for this reference now owns the request index
            return
        for request_id in list(job.waiters) + [job.request_id]:
            digests = self._requests.get(request_id)
            if digests is not None:
                digests.discard(job.fingerprint.digest)
                if not digests:
                    self._requests.pop(request_id, None)

    async def _execute(self, job: Job) -> CacheEntry:
        cfg = self.config
        self._transition(job, JobState.FETCHING)

        # A job for this reference may have published since the caller looked
        entry = await self.cache.lookup(job.fingerprint)
        if entry is not None:
            return entry

        fetched: FetchResult = await self._with_retries(
            job,
            "fetch",
            self.fetcher.fetch,
            job.source_reference,
            FetchLimits(max_bytes=cfg.max_file_size, timeout_s=cfg.download_timeout_s),
        )
        content_fp = fingerprint_content(fetched.data)
        job.content_fingerprint = content_fp

        entry = await self._existing_content(job, content_fp)
        if entry is not None:
            return entry

        flight: "asyncio.Future[Optional[CacheEntry]]" = asyncio.get_running_loop().create_future()
        flight.add_done_callback(_consume)
        self._content_flights[content_fp.digest] = flight
        try:
            entry = await self._derive(job, fetched, content_fp)
        except PipelineError as e:
            flight.set_exception(e)
            raise
        except BaseException:
            # Cancelled or crashed owner: joined jobs derive on their own
            flight.set_result(None)
            raise
        else:
            flight.set_result(entry)
            return entry
        finally:
            if self._content_flights.get(content_fp.digest) is flight:
                del self._content_flights[content_fp.digest]

    async def _existing_content(self, job: Job, content_fp: Fingerprint) -> Optional[CacheEntry]:
        """Reuse a committed or in-flight result for identical bytes."""
        while True:
            entry = await self.cache.lookup(content_fp)
            if entry is not None:
                await self.cache.add_alias(job.fingerprint, content_fp)
                await self.cache.touch(content_fp)
                logger.info(
                    "♻️ Identical content already cached",
                    extra=self._extra(job, event="cache.content_hit"),
                )
                return entry

            flight = self._content_flights.get(content_fp.digest)
            if flight is None:
                return None
            logger.info(
                "🔗 Joining in-flight run for identical content",
                extra=self._extra(job, event="job.content_attached"),
            )
            entry = await asyncio.shield(flight)
            if entry is not None:
                await self.cache.add_alias(job.fingerprint, content_fp)
                return entry

    async def _derive(self, job: Job, fetched: FetchResult, content_fp: Fingerprint) -> CacheEntry:
        cfg = self.config
        self._transition(job, JobState.PROBING)
        if is_executable_type(fetched.sniffed_type):
            raise ProbeUnsupportedError(
                f"executable content ({fetched.sniffed_type}) declared as {fetched.declared_type}"
            )

        info = await self._with_retries(job, "probe", self.prober.probe, fetched.data)
        specs = plan_variants(cfg.variants, info)

        self._transition(job, JobState.TRANSCODING)
        outputs: Dict[str, VariantOutput] = {}
        for spec in specs:
            outputs[spec.kind] = await self._with_retries(
                job, "transcode", self.transcoder.transcode, fetched.data, info, spec
            )

        self._transition(job, JobState.UPLOADING)
        stem = Path(fetched.filename).stem or "media"
        variants = []
        for spec in specs:
            output = outputs[spec.kind]
            reference = await self._with_retries(
                job,
                "upload",
                self.uploader.upload,
                output.data,
                output.content_type,
                f"{stem}-{spec.kind}{output.extension}",
            )
            variants.append(
                Variant(
                    kind=spec.kind,
                    byte_size=output.byte_size,
                    content_type=output.content_type,
                    media_reference=reference,
                    width=output.width,
                    height=output.height,
                    blurhash=output.blurhash,
                )
            )

        entry = CacheEntry(
            fingerprint=content_fp.digest,
            variants=variants,
            media_info=info,
            source_reference=fetched.final_url,
        )
        return await self.cache.insert(content_fp, entry, outputs=outputs, alias=job.fingerprint)

    async def _with_retries(self, job: Job, stage: str, func: Callable, *args: Any) -> Any:
        async def _attempt(*call_args: Any) -> Any:
            job.record_attempt(stage)
            return await func(*call_args)

        _attempt.__name__ = f"{stage}[{job.job_id}]"

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            if isinstance(error, PipelineError):
                job.last_error = error
            logger.warning(
                f"🔁 {stage} attempt {attempt} failed ({error}); retrying in {delay:.2f}s",
                extra=self._extra(job, event="job.retry", detail={"stage": stage, "attempt": attempt}),
            )

        return await retry_async(_attempt, self.config.retry_config(stage), *args, on_retry=_on_retry)

    # Terminal states

    def _transition(self, job: Job, new_state: JobState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[job.state]:
            raise InternalPipelineError(f"illegal transition {job.state.value} -> {new_state.value}")
        old_state = job.state
        job.state = new_state
        logger.info(
            f"➡️ {old_state.value} -> {new_state.value}",
            extra=self._extra(
                job,
                event="job.transition",
                detail={"from": old_state.value, "to": new_state.value, "attempts": job.attempts},
            ),
        )

    def _publish(self, job: Job, entry: CacheEntry) -> None:
        self._transition(job, JobState.PUBLISHED)
        self._retire(job)
        result = PipelineResult(fingerprint=entry.fingerprint, entry=entry, cache_hit=False)
        for futures in job.waiters.values():
            for future in futures:
                if not future.done():
                    future.set_result(result)

    def _fail(self, job: Job, error: PipelineError) -> None:
        job.last_error = error
        if not job.state.is_terminal:
            self._transition(job, JobState.FAILED)
        self._retire(job)
        logger.warning(
            f"✖ Job failed: {error.code}: {error}",
            extra=self._extra(job, event="job.failed", detail={"code": error.code}),
        )
        for futures in job.waiters.values():
            for future in futures:
                if not future.done():
                    future.set_exception(error)

    def _retire(self, job: Job) -> None:
        # A terminal job must not accept new waiters
        if self._jobs.get(job.fingerprint.digest) is job:
            del self._jobs[job.fingerprint.digest]

    def _extra(self, job: Job, **extra: Any) -> Dict[str, Any]:
        record = {
            "subsys": "orchestrator",
            "request_id": job.request_id,
            "job_id": job.job_id,
            "fingerprint": str(job.content_fingerprint or job.fingerprint),
        }
        record.update(extra)
        return record

"""Job reconciliation engine.

Drives every non-terminal job towards a terminal state by asking the
extraction worker for its status and applying exactly one transition rule per
observation:

- worker reports completed, or progress 100: verify produced files and
  complete, or fail with "file retrieval failed"
- worker reports failed: fail with the worker's error verbatim
- worker reports processing: record monotonic progress, speed and phase
- worker does not know the job: after the grace window, infer completion
- worker rate limits us: never a transition
- any other error on a job still pending past the timeout: force completion
- anything else: leave the job untouched until the next sweep

The two inference rules trade precision for availability: the worker keeps no
durable ledger, so a job it finished and forgot would otherwise stay pending
forever. Both can be switched to ``mark_unknown``, which fails the job for
manual review instead.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

import structlog

from kapture.clients.base import JobWorkerClient, WorkerFile, WorkerStatus
from kapture.clients.exceptions import NotFoundUpstreamError, RateLimitedError
from kapture.core.circuit_breaker import CircuitOpenError
from kapture.core.logging import sweep_context
from kapture.core.metrics import MetricsCollector
from kapture.models.job import (
    FILE_RETRIEVAL_FAILED,
    UNRESOLVED_MESSAGE,
    CompletionReason,
    Job,
    JobStatus,
    RetainedArtifact,
    utcnow,
)
from kapture.models.progress import snapshot_from_sample
from kapture.models.reports import SweepReport
from kapture.services.job_locks import JobLockTable
from kapture.services.job_store import JobStore
from kapture.services.progress_cache import ProgressCache

logger = structlog.get_logger(__name__)

T = TypeVar("T")

COMPLETED = "completed"
FAILED = "failed"
PROCESSING = "processing"
UNCHANGED = "unchanged"
ERRORED = "errored"

POLICY_COMPLETE = "complete"
POLICY_MARK_UNKNOWN = "mark_unknown"

AUXILIARY_SUFFIXES = (".info.json", ".mhtml", ".description")
MEDIA_EXTENSIONS = (
    ".mp4",
    ".webm",
    ".mkv",
    ".mp3",
    ".m4a",
    ".ogg",
    ".wav",
    ".flac",
    ".jpg",
    ".jpeg",
    ".png",
    ".webp",
)

CompletionHook = Callable[[Job], Awaitable[Any]]


def select_media_file(files: Sequence[WorkerFile]) -> Optional[WorkerFile]:
    """Pick the retained file: the first non-auxiliary file with a media extension."""
    for entry in files:
        name = entry.name.lower()
        if not entry.is_media or name.endswith(AUXILIARY_SUFFIXES):
            continue
        if name.endswith(MEDIA_EXTENSIONS):
            return entry
    return None


def artifact_key(job_id: str, file_name: Optional[str] = None) -> str:
    if file_name:
        return f"downloads/{job_id}/{file_name}"
    return f"downloads/{job_id}"


def artifact_url(job_id: str) -> str:
    return f"/api/v1/downloads/{job_id}/file"


class AdaptiveLimiter:
    """Concurrency gate that halves on rate limits and creeps back up on success."""

    def __init__(self, max_limit: int, recovery_successes: int = 10) -> None:
        if max_limit < 1:
            raise ValueError("max_limit must be at least 1")
        self.max_limit = max_limit
        self.recovery_successes = recovery_successes
        self._limit = max_limit
        self._in_flight = 0
        self._success_streak = 0
        self._cond = asyncio.Condition()
        MetricsCollector.update_reconcile_concurrency(self._limit)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: self._in_flight < self._limit)
            self._in_flight += 1
        try:
            yield
        finally:
            async with self._cond:
                self._in_flight -= 1
                self._cond.notify_all()

    async def record_rate_limited(self) -> None:
        async with self._cond:
            self._success_streak = 0
            new_limit = max(1, self._limit // 2)
            if new_limit != self._limit:
                logger.warning(
                    "reconcile_concurrency_reduced",
                    old_limit=self._limit,
                    new_limit=new_limit,
                )
                self._limit = new_limit
                MetricsCollector.update_reconcile_concurrency(new_limit)

    async def record_success(self) -> None:
        async with self._cond:
            if self._limit >= self.max_limit:
                return
            self._success_streak += 1
            if self._success_streak >= self.recovery_successes:
                self._success_streak = 0
                self._limit += 1
                MetricsCollector.update_reconcile_concurrency(self._limit)
                logger.info("reconcile_concurrency_increased", new_limit=self._limit)
                self._cond.notify_all()


class JobReconciler:
    """Applies worker observations to persisted jobs, one job at a time per id."""

    def __init__(
        self,
        store: JobStore,
        worker: JobWorkerClient,
        locks: JobLockTable,
        progress_cache: ProgressCache,
        on_completed: Optional[CompletionHook] = None,
        not_found_grace: float = 300,
        pending_timeout: float = 600,
        stuck_job_policy: str = POLICY_COMPLETE,
        not_found_policy: str = POLICY_COMPLETE,
        batch_limit: int = 50,
        max_concurrency: int = 4,
        recovery_successes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Job persistence.
            worker: Extraction worker client.
            locks: Per-job lock table shared with cancel and retention.
            progress_cache: Cache receiving progress samples.
            on_completed: Awaited with the job after every transition to
                completed, outside the job lock (retention recompute).
            not_found_grace: Seconds after creation during which a
                "not found" answer is treated as a registration race.
            pending_timeout: Seconds after which a pending job whose status
                call keeps failing is resolved by the stuck-job policy.
            stuck_job_policy: 'complete' or 'mark_unknown'.
            not_found_policy: 'complete' or 'mark_unknown'.
            batch_limit: Default number of jobs per batch.
            max_concurrency: Upper bound on concurrent worker calls.
            recovery_successes: Successful calls needed to raise the
                concurrency limit by one after a rate limit.
            clock: Returns the current UTC time.
        """
        for policy in (stuck_job_policy, not_found_policy):
            if policy not in (POLICY_COMPLETE, POLICY_MARK_UNKNOWN):
                raise ValueError(f"Unknown completion policy: {policy}")

        self._store = store
        self._worker = worker
        self._locks = locks
        self._progress = progress_cache
        self._on_completed = on_completed
        self.not_found_grace = not_found_grace
        self.pending_timeout = pending_timeout
        self.stuck_job_policy = stuck_job_policy
        self.not_found_policy = not_found_policy
        self.batch_limit = batch_limit
        self._limiter = AdaptiveLimiter(max_concurrency, recovery_successes)
        self._clock = clock

    @property
    def limiter(self) -> AdaptiveLimiter:
        return self._limiter

    def set_completion_hook(self, hook: Optional[CompletionHook]) -> None:
        self._on_completed = hook

    async def reconcile_batch(self, limit: Optional[int] = None) -> SweepReport:
        """Reconcile up to ``limit`` non-terminal jobs, least recently updated first.

        A failure on one job is recorded in the report and never aborts the
        batch. Errors loading the batch itself propagate.
        """
        started = time.monotonic()

        with sweep_context("reconcile") as sweep_id:
            jobs = await self._store.find_active(limit or self.batch_limit)
            report = SweepReport(inspected=len(jobs))

            async def run(job: Job) -> None:
                try:
                    outcome = await self.reconcile(job)
                except Exception as e:
                    logger.error(
                        "job_reconcile_failed",
                        job_id=job.job_id,
                        error=str(e),
                        exc_info=True,
                    )
                    report.record(ERRORED)
                    report.errors.append({"job_id": job.job_id, "error": str(e)})
                    MetricsCollector.record_reconcile_outcome(ERRORED)
                    return
                report.record(outcome)
                MetricsCollector.record_reconcile_outcome(outcome)

            await asyncio.gather(*(run(job) for job in jobs))

            duration = time.monotonic() - started
            MetricsCollector.observe_reconcile_batch(duration)
            logger.info(
                "reconcile_batch_completed",
                sweep_id=sweep_id,
                duration_seconds=round(duration, 3),
                concurrency_limit=self._limiter.limit,
                **{k: v for k, v in report.to_dict().items() if k != "errors"},
            )
        return report

    async def reconcile(self, job: Job) -> str:
        """Reconcile one job and return the outcome label.

        The stored record is re-read under the job lock, so a stale copy from
        the batch query (or a concurrent cancel) is never overwritten.
        """
        async with self._locks.hold(job.job_id):
            current = await self._store.get(job.job_id)
            if current is None or current.is_terminal():
                return UNCHANGED
            outcome, completed = await self._reconcile_locked(current)

        if completed is not None:
            await self._notify_completed(completed)
        return outcome

    async def _reconcile_locked(self, job: Job) -> Tuple[str, Optional[Job]]:
        now = self._clock()
        age = job.age_seconds(now)

        try:
            status = await self._limited(self._worker.status, job.job_id)
        except RateLimitedError as e:
            logger.info("job_reconcile_rate_limited", job_id=job.job_id, retry_after=e.retry_after)
            return ERRORED, None
        except NotFoundUpstreamError:
            if age > self.not_found_grace:
                return await self._resolve_not_found(job, now)
            logger.debug("job_not_yet_registered", job_id=job.job_id, age_seconds=round(age, 1))
            return UNCHANGED, None
        except Exception as e:
            if job.status is JobStatus.PENDING and age > self.pending_timeout:
                return await self._resolve_stuck(job, now, e)
            logger.warning(
                "job_status_unavailable",
                job_id=job.job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ERRORED, None

        return await self._apply_status(job, status, now)

    async def _apply_status(
        self, job: Job, status: WorkerStatus, now: datetime
    ) -> Tuple[str, Optional[Job]]:
        if status.state == "completed" or status.progress >= 100:
            return await self._complete_verified(job, status, now)
        if status.state == "failed":
            return await self._fail(job, status.error or "download failed", now)
        if status.state == "processing":
            return await self._record_progress(job, status, now)

        # Still queued on the worker side
        if status.title and status.title != job.metadata.title:
            job.metadata = job.metadata.merged(title=status.title, thumbnail=status.thumbnail)
            job.updated_at = now
            await self._store.update(job)
        return UNCHANGED, None

    async def _record_progress(
        self, job: Job, status: WorkerStatus, now: datetime
    ) -> Tuple[str, Optional[Job]]:
        job.status = JobStatus.PROCESSING
        job.progress = max(job.progress, status.progress)
        job.metadata = job.metadata.merged(
            title=status.title,
            thumbnail=status.thumbnail,
            phase=status.phase,
            speed=status.speed,
            eta=status.eta,
        )
        job.updated_at = now
        await self._store.update(job)

        self._progress.merge_authoritative(
            job.job_id,
            snapshot_from_sample(job.progress, status.phase, status.speed, status.eta),
        )
        logger.debug("job_progress_recorded", job_id=job.job_id, progress=job.progress)
        return PROCESSING, None

    async def _complete_verified(
        self, job: Job, status: WorkerStatus, now: datetime
    ) -> Tuple[str, Optional[Job]]:
        try:
            files: List[WorkerFile] = await self._limited(self._worker.list_files, job.job_id)
        except (RateLimitedError, CircuitOpenError) as e:
            # Nothing was observed about the files; try again next sweep
            logger.info("job_file_listing_deferred", job_id=job.job_id, error=str(e))
            return ERRORED, None
        except Exception as e:
            logger.warning("job_file_listing_failed", job_id=job.job_id, error=str(e))
            return await self._fail(job, FILE_RETRIEVAL_FAILED, now)

        chosen = select_media_file(files)
        if chosen is None:
            logger.warning(
                "job_has_no_media_files",
                job_id=job.job_id,
                files=[f.name for f in files],
            )
            return await self._fail(job, FILE_RETRIEVAL_FAILED, now)

        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.completed_at = now
        job.updated_at = now
        job.metadata = job.metadata.merged(
            title=status.title,
            thumbnail=status.thumbnail,
            phase="Complete",
            file_name=chosen.name,
            completion_reason=CompletionReason.VERIFIED,
        )
        job.artifact = RetainedArtifact(
            storage_key=artifact_key(job.job_id, chosen.name),
            size=chosen.size,
            url=artifact_url(job.job_id),
        )
        await self._store.update(job)
        self._progress.evict(job.job_id)

        logger.info(
            "job_completed",
            job_id=job.job_id,
            user_id=job.user_id,
            file_name=chosen.name,
            size=chosen.size,
        )
        return COMPLETED, job

    async def _complete_inferred(
        self, job: Job, now: datetime, reason: CompletionReason
    ) -> Tuple[str, Optional[Job]]:
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.completed_at = now
        job.updated_at = now
        job.metadata = job.metadata.merged(phase="Complete", completion_reason=reason)
        job.artifact = RetainedArtifact(
            storage_key=artifact_key(job.job_id),
            size=0,
            url=artifact_url(job.job_id),
        )
        await self._store.update(job)
        self._progress.evict(job.job_id)

        logger.warning(
            "job_completion_inferred",
            job_id=job.job_id,
            user_id=job.user_id,
            reason=reason.value,
            age_seconds=round(job.age_seconds(now), 1),
        )
        return COMPLETED, job

    async def _fail(self, job: Job, message: str, now: datetime) -> Tuple[str, Optional[Job]]:
        job.status = JobStatus.FAILED
        job.updated_at = now
        job.metadata = job.metadata.merged(error=message)
        await self._store.update(job)
        self._progress.evict(job.job_id)

        logger.info("job_failed", job_id=job.job_id, error=message)
        return FAILED, None

    async def _resolve_not_found(self, job: Job, now: datetime) -> Tuple[str, Optional[Job]]:
        if self.not_found_policy == POLICY_MARK_UNKNOWN:
            return await self._fail(job, UNRESOLVED_MESSAGE, now)
        return await self._complete_inferred(job, now, CompletionReason.INFERRED)

    async def _resolve_stuck(
        self, job: Job, now: datetime, error: Exception
    ) -> Tuple[str, Optional[Job]]:
        logger.warning(
            "job_stuck_pending",
            job_id=job.job_id,
            error=str(error),
            policy=self.stuck_job_policy,
        )
        if self.stuck_job_policy == POLICY_MARK_UNKNOWN:
            return await self._fail(job, UNRESOLVED_MESSAGE, now)
        return await self._complete_inferred(job, now, CompletionReason.FORCED_TIMEOUT)

    async def _limited(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        async with self._limiter.slot():
            try:
                result = await func(*args)
            except RateLimitedError:
                await self._limiter.record_rate_limited()
                raise
        await self._limiter.record_success()
        return result

    async def _notify_completed(self, job: Job) -> None:
        if self._on_completed is None:
            return
        try:
            await self._on_completed(job)
        except Exception as e:
            # The periodic quota sweep restores retention later
            logger.error(
                "completion_hook_failed",
                job_id=job.job_id,
                user_id=job.user_id,
                error=str(e),
                exc_info=True,
            )

"""Retention and cleanup engine.

Each user keeps their ``keep_count`` most recent non-archived completed
downloads. Older ones are stamped with a scheduled deletion ``cleanup_delay``
in the future, which gives the user a window to archive them, and a batch
sweep later deletes the bytes once that time has passed. Archived artifacts are
outside the count and no cleanup path ever deletes them.

Every write takes the job's lock and re-reads the record first, so a
concurrent archive cannot be overwritten by a stale retention decision.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Set

import structlog

from kapture.clients.base import ObjectStorage
from kapture.core.logging import sweep_context
from kapture.core.metrics import MetricsCollector
from kapture.models.job import Job, JobStatus, RetainedArtifact, utcnow
from kapture.models.reports import CleanupRun, CleanupStats, QuotaMaintenanceReport, RetentionResult
from kapture.services.exceptions import InvariantViolation, JobNotFoundError, JobStateError
from kapture.services.job_locks import JobLockTable
from kapture.services.job_store import JobStore

logger = structlog.get_logger(__name__)


class RetentionService:
    """Keep-N retention, archive overrides and batched artifact deletion."""

    def __init__(
        self,
        store: JobStore,
        storage: ObjectStorage,
        locks: JobLockTable,
        keep_count: int = 5,
        cleanup_delay: float = 3600,
        batch_size: int = 50,
        max_iterations: int = 20,
        iteration_pause: float = 0.1,
        quota_concurrency: int = 5,
        emergency_older_than_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            store: Job persistence.
            storage: Object store holding the artifacts.
            locks: Per-job lock table shared with reconciliation.
            keep_count: Regular completed downloads kept per user (N).
            cleanup_delay: Seconds between scheduling and deletion.
            batch_size: Default rows per cleanup query.
            max_iterations: Cap on cleanup query rounds per run.
            iteration_pause: Pause in seconds between cleanup rounds.
            quota_concurrency: Users recomputed concurrently by the quota sweep.
            emergency_older_than_days: Default age cutoff of the emergency sweep.
            clock: Returns the current UTC time.
            sleep: Awaitable sleep, injectable for tests.
        """
        if keep_count < 1:
            raise ValueError("keep_count must be at least 1")

        self._store = store
        self._storage = storage
        self._locks = locks
        self.keep_count = keep_count
        self.cleanup_delay = timedelta(seconds=cleanup_delay)
        self.batch_size = batch_size
        self.max_iterations = max_iterations
        self.iteration_pause = iteration_pause
        self.quota_concurrency = quota_concurrency
        self.emergency_older_than_days = emergency_older_than_days
        self._clock = clock
        self._sleep = sleep

    async def recompute_retention(self, user_id: str) -> RetentionResult:
        """Restore the keep-N invariant for one user.

        Idempotent: rows already in the right state are not written, and a
        row that is already scheduled keeps its original deadline.

        Returns:
            RetentionResult with the number of rows newly scheduled.
        """
        completed = await self._store.find_completed_for_user(user_id)
        regular = [j for j in completed if not j.is_archived and j.artifact is not None]
        result = RetentionResult(user_id=user_id, retained=min(len(regular), self.keep_count))

        if len(regular) <= self.keep_count:
            # Nothing is over quota, but earlier schedules may now be stale
            # (for example after an archive freed a slot)
            for job in regular:
                await self._set_retained(job.job_id)
            return result

        now = self._clock()
        deletion_at = now + self.cleanup_delay

        for job in regular[: self.keep_count]:
            await self._set_retained(job.job_id)

        for job in regular[self.keep_count :]:
            if await self._schedule(job.job_id, deletion_at):
                result.marked_for_cleanup += 1

        MetricsCollector.record_retention_marked(result.marked_for_cleanup)
        if result.marked_for_cleanup:
            logger.info(
                "retention_recomputed",
                user_id=user_id,
                marked_for_cleanup=result.marked_for_cleanup,
                scheduled_for=deletion_at.isoformat(),
            )
        return result

    async def run_batch_cleanup(self, batch_size: Optional[int] = None) -> CleanupRun:
        """Delete artifacts whose scheduled deletion has passed.

        Each row is attempted at most once per run: later rounds query past
        the rows already tried, so failures at the head of the order never
        hide the due rows behind them. Rounds continue until a query comes
        back short or the iteration cap is hit. A failed delete is recorded
        and the row left as is, so the next sweep retries it.
        """
        batch_size = batch_size or self.batch_size
        run = CleanupRun()
        attempted: Set[str] = set()

        with sweep_context("cleanup") as sweep_id:
            for iteration in range(self.max_iterations):
                now = self._clock()
                batch = await self._store.find_due_for_cleanup(now, batch_size, exclude=attempted)
                if not batch:
                    break

                for job in batch:
                    attempted.add(job.job_id)
                    await self._delete_artifact(job.job_id, run, due_before=now)

                if len(batch) < batch_size:
                    break
                if iteration < self.max_iterations - 1:
                    await self._sleep(self.iteration_pause)

            MetricsCollector.record_cleanup(
                "scheduled", run.cleaned_files, run.bytes_freed, len(run.errors)
            )
            logger.info("batch_cleanup_completed", sweep_id=sweep_id, **self._run_summary(run))
        return run

    async def emergency_cleanup(self, older_than_days: Optional[int] = None) -> CleanupRun:
        """Delete every regular artifact older than ``older_than_days``.

        Ignores scheduled deletion times. Archived artifacts are never touched.
        Like the scheduled sweep, each row is attempted at most once per run
        and failed rows never block the rows queued behind them.
        """
        if older_than_days is None:
            older_than_days = self.emergency_older_than_days
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")

        cutoff = self._clock() - timedelta(days=older_than_days)
        run = CleanupRun()
        attempted: Set[str] = set()

        with sweep_context("emergency") as sweep_id:
            for iteration in range(self.max_iterations):
                batch = await self._store.find_completed_older_than(
                    cutoff, self.batch_size, exclude=attempted
                )
                if not batch:
                    break

                for job in batch:
                    attempted.add(job.job_id)
                    await self._delete_artifact(job.job_id, run, created_before=cutoff)

                if len(batch) < self.batch_size:
                    break
                if iteration < self.max_iterations - 1:
                    await self._sleep(self.iteration_pause)

            MetricsCollector.record_cleanup(
                "emergency", run.cleaned_files, run.bytes_freed, len(run.errors)
            )
            logger.warning(
                "emergency_cleanup_completed",
                sweep_id=sweep_id,
                older_than_days=older_than_days,
                **self._run_summary(run),
            )
        return run

    async def maintain_all_user_quotas(self, concurrency: Optional[int] = None) -> QuotaMaintenanceReport:
        """Recompute retention for every user over quota.

        Users are processed in groups of ``concurrency``; one user's failure
        is recorded and does not block the others.
        """
        concurrency = concurrency or self.quota_concurrency
        report = QuotaMaintenanceReport()

        with sweep_context("quota") as sweep_id:
            user_ids = await self._store.users_over_quota(self.keep_count)

            for start in range(0, len(user_ids), concurrency):
                group = user_ids[start : start + concurrency]
                outcomes = await asyncio.gather(
                    *(self.recompute_retention(user_id) for user_id in group),
                    return_exceptions=True,
                )
                for user_id, outcome in zip(group, outcomes):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    if isinstance(outcome, BaseException):
                        logger.warning(
                            "quota_maintenance_failed", user_id=user_id, error=str(outcome)
                        )
                        report.errors.append({"user_id": user_id, "error": str(outcome)})
                        continue
                    report.users_processed += 1
                    report.total_marked += outcome.marked_for_cleanup
                    report.results.append(outcome)

            logger.info(
                "quota_maintenance_completed",
                sweep_id=sweep_id,
                users_over_quota=len(user_ids),
                users_processed=report.users_processed,
                total_marked=report.total_marked,
                errors=len(report.errors),
            )
        return report

    async def archive(self, job_id: str, user_id: str) -> Job:
        """Pin a completed download so it is never deleted automatically.

        Raises:
            JobNotFoundError: Unknown job or owned by another user.
            JobStateError: Job not completed or its file is already gone.
        """
        async with self._locks.hold(job_id):
            job = await self._owned(job_id, user_id)
            if job.status is not JobStatus.COMPLETED or job.artifact is None:
                raise JobStateError("Only completed downloads can be archived")
            if not job.artifact.has_file:
                raise JobStateError("The file for this download has already been cleaned up")

            if not job.artifact.archived:
                job.artifact.archived = True
                job.artifact.archived_at = self._clock()
                job.artifact.scheduled_deletion = None
                job.updated_at = self._clock()
                job = await self._store.update(job)
                logger.info("download_archived", job_id=job_id, user_id=user_id)

        # The archived job left the regular set; a newer one may be safe again
        await self.recompute_retention(user_id)
        return job

    async def unarchive(self, job_id: str, user_id: str) -> Job:
        """Return an archived download to normal retention.

        Raises:
            JobNotFoundError: Unknown job or owned by another user.
            JobStateError: Job is not completed.
        """
        async with self._locks.hold(job_id):
            job = await self._owned(job_id, user_id)
            if job.status is not JobStatus.COMPLETED or job.artifact is None:
                raise JobStateError("Only completed downloads can be unarchived")

            if job.artifact.archived:
                job.artifact.archived = False
                job.artifact.archived_at = None
                job.updated_at = self._clock()
                await self._store.update(job)
                logger.info("download_unarchived", job_id=job_id, user_id=user_id)

        await self.recompute_retention(user_id)
        refreshed = await self._store.get(job_id)
        if refreshed is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return refreshed

    async def get_cleanup_stats(self, user_id: Optional[str] = None) -> CleanupStats:
        return await self._store.cleanup_stats(self._clock(), user_id)

    async def _owned(self, job_id: str, user_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def _set_retained(self, job_id: str) -> bool:
        async with self._locks.hold(job_id):
            job = await self._store.get(job_id)
            if job is None or job.artifact is None or job.artifact.archived:
                return False
            if job.artifact.scheduled_deletion is None:
                return False
            job.artifact.scheduled_deletion = None
            await self._store.update(job)
            return True

    async def _schedule(self, job_id: str, deletion_at: datetime) -> bool:
        async with self._locks.hold(job_id):
            job = await self._store.get(job_id)
            if job is None or job.artifact is None or not job.artifact.has_file:
                return False
            if job.artifact.archived:
                # Archived between the query and this write; leave it alone
                return False
            if job.artifact.scheduled_deletion is not None:
                return False
            schedule_deletion(job.artifact, deletion_at)
            await self._store.update(job)
            return True

    async def _delete_artifact(
        self,
        job_id: str,
        run: CleanupRun,
        due_before: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> None:
        async with self._locks.hold(job_id):
            job = await self._store.get(job_id)
            # Re-check eligibility on the fresh row
            if job is None or job.artifact is None or not job.artifact.has_file:
                return
            artifact = job.artifact
            if artifact.archived:
                return
            if due_before is not None and (
                artifact.scheduled_deletion is None or artifact.scheduled_deletion > due_before
            ):
                return
            if created_before is not None and job.created_at >= created_before:
                return

            run.processed_downloads += 1
            key = artifact.storage_key
            try:
                await self._storage.delete(key)  # type: ignore[arg-type]
            except Exception as e:
                logger.warning("cleanup_item_failed", job_id=job_id, key=key, error=str(e))
                run.errors.append({"job_id": job_id, "error": str(e)})
                return

            run.cleaned_files += 1
            run.bytes_freed += artifact.size
            artifact.storage_key = None
            artifact.url = None
            artifact.size = 0
            artifact.files_cleaned_at = self._clock()
            await self._store.update(job)

            logger.info("artifact_deleted", job_id=job_id, key=key, user_id=job.user_id)

    @staticmethod
    def _run_summary(run: CleanupRun) -> Dict[str, int]:
        return {
            "processed_downloads": run.processed_downloads,
            "cleaned_files": run.cleaned_files,
            "bytes_freed": run.bytes_freed,
            "errors": len(run.errors),
        }


def schedule_deletion(artifact: RetainedArtifact, deletion_at: datetime) -> None:
    """Stamp a scheduled deletion on an artifact.

    Raises:
        InvariantViolation: If the artifact is archived.
    """
    if artifact.archived:
        raise InvariantViolation("Refusing to schedule deletion of an archived artifact")
    artifact.scheduled_deletion = deletion_at

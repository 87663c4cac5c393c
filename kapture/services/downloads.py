"""Download job façade.

The surface API handlers call: submit, cancel, retry, read, delete and stream
downloads. Writes that race with reconciliation take the same per-job lock.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Tuple

import structlog

from kapture.clients.base import JobWorkerClient, ObjectStorage
from kapture.core.metrics import MetricsCollector
from kapture.core.validation import URLValidator, get_format_spec, sanitize_filename
from kapture.models.job import (
    CANCELLED_MESSAGE,
    FileKind,
    Job,
    JobMetadata,
    JobStatus,
    QualityTier,
    utcnow,
)
from kapture.models.progress import ProgressSnapshot, snapshot_from_sample
from kapture.services.exceptions import InvalidURLError, JobNotFoundError, JobStateError
from kapture.services.job_locks import JobLockTable
from kapture.services.job_store import JobStore
from kapture.services.progress_cache import ProgressCache
from kapture.services.reconciler import JobReconciler

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DownloadRequest:
    """A user's request to acquire one piece of media."""

    user_id: str
    url: str
    file_kind: FileKind = FileKind.VIDEO
    quality: QualityTier = QualityTier.HIGHEST


class DownloadService:
    """Job lifecycle operations on behalf of a user."""

    def __init__(
        self,
        store: JobStore,
        worker: JobWorkerClient,
        storage: ObjectStorage,
        locks: JobLockTable,
        progress_cache: ProgressCache,
        reconciler: JobReconciler,
        url_validator: Optional[URLValidator] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._worker = worker
        self._storage = storage
        self._locks = locks
        self._progress = progress_cache
        self._reconciler = reconciler
        self._url_validator = url_validator or URLValidator()
        self._clock = clock

    async def submit_download(self, request: DownloadRequest, retry_of: Optional[str] = None) -> Job:
        """Validate a request, hand it to the worker and persist a pending job.

        Raises:
            InvalidURLError: URL malformed or from an unsupported platform.
            TransientDependencyError: Worker unreachable or circuit open.
            TerminalJobFailure: Worker rejected the request.
        """
        validation = self._url_validator.validate(request.url)
        if not validation.is_valid:
            raise InvalidURLError(validation.error_message or "Invalid URL")

        url = validation.sanitized_value or request.url
        format_spec = get_format_spec(request.file_kind, request.quality)
        job_id = await self._worker.submit(url, format_spec, request.user_id)

        now = self._clock()
        job = Job(
            job_id=job_id,
            user_id=request.user_id,
            url=url,
            file_kind=request.file_kind,
            quality=request.quality,
            metadata=JobMetadata(platform=validation.platform),
            created_at=now,
            updated_at=now,
            retry_of=retry_of,
        )
        job = await self._store.insert(job)

        MetricsCollector.record_submission(validation.platform or "unknown", request.file_kind.value)
        logger.info(
            "download_submitted",
            job_id=job_id,
            user_id=request.user_id,
            platform=validation.platform,
            file_kind=request.file_kind.value,
            quality=request.quality.value,
            retry_of=retry_of,
        )
        return job

    async def cancel(self, job_id: str, user_id: str) -> Job:
        """Cancel an active job.

        Raises:
            JobNotFoundError: Unknown job or owned by another user.
            JobStateError: Job already completed or failed.
        """
        async with self._locks.hold(job_id):
            job = await self._owned(job_id, user_id)
            if job.is_terminal():
                raise JobStateError(f"Cannot cancel a job that is {job.status.value}")

            try:
                await self._worker.cancel(job_id)
            except Exception as e:
                # The local record is authoritative for cancellation
                logger.warning("worker_cancel_failed", job_id=job_id, error=str(e))

            job.status = JobStatus.FAILED
            job.metadata = job.metadata.merged(error=CANCELLED_MESSAGE)
            job.updated_at = self._clock()
            job = await self._store.update(job)
            self._progress.evict(job_id)

        logger.info("download_cancelled", job_id=job_id, user_id=user_id)
        return job

    async def retry(self, job_id: str, user_id: str) -> Job:
        """Submit a failed job again as a brand-new job.

        Raises:
            JobNotFoundError: Unknown job or owned by another user.
            JobStateError: Job is not failed.
        """
        job = await self._owned(job_id, user_id)
        if job.status is not JobStatus.FAILED:
            raise JobStateError("Only failed downloads can be retried")

        return await self.submit_download(
            DownloadRequest(
                user_id=user_id,
                url=job.url,
                file_kind=job.file_kind,
                quality=job.quality,
            ),
            retry_of=job_id,
        )

    async def get_job(self, job_id: str, user_id: str, refresh: bool = False) -> Job:
        """Fetch a job, optionally reconciling it against the worker first."""
        job = await self._owned(job_id, user_id)
        if refresh and not job.is_terminal():
            await self._reconciler.reconcile(job)
            job = await self._owned(job_id, user_id)
        return job

    async def list_jobs(
        self, user_id: str, status: Optional[JobStatus] = None, limit: int = 50
    ) -> List[Job]:
        return await self._store.list_for_user(user_id, status=status, limit=limit)

    async def get_progress(self, job_id: str, user_id: str) -> Tuple[Job, ProgressSnapshot]:
        """Return the job with its best known progress snapshot."""
        job = await self._owned(job_id, user_id)

        if job.is_terminal():
            return job, self._progress.with_fallback(job_id, job.status)

        cached = self._progress.get(job_id)
        if cached is not None and cached.percentage >= job.progress:
            return job, cached
        if job.status is JobStatus.PROCESSING:
            snapshot = snapshot_from_sample(
                job.progress, job.metadata.phase, job.metadata.speed, job.metadata.eta
            )
            return job, self._progress.merge_authoritative(job_id, snapshot)
        return job, self._progress.with_fallback(job_id, job.status)

    async def delete_download(self, job_id: str, user_id: str) -> None:
        """Remove a download and its stored file.

        Allowed for archived downloads, since this is an explicit user action.
        An active job is cancelled on the worker first.

        Raises:
            JobNotFoundError: Unknown job or owned by another user.
            StorageOperationError: The stored file could not be removed.
        """
        async with self._locks.hold(job_id):
            job = await self._owned(job_id, user_id)

            if not job.is_terminal():
                try:
                    await self._worker.cancel(job_id)
                except Exception as e:
                    logger.warning("worker_cancel_failed", job_id=job_id, error=str(e))

            if job.artifact is not None and job.artifact.storage_key:
                await self._storage.delete(job.artifact.storage_key)

            await self._store.delete(job_id)
            self._progress.evict(job_id)

        logger.info(
            "download_deleted",
            job_id=job_id,
            user_id=user_id,
            archived=job.is_archived,
        )

    async def open_file(self, job_id: str, user_id: str) -> Tuple[str, AsyncIterator[bytes]]:
        """Return the file name and a byte stream of a completed download.

        Raises:
            JobNotFoundError: Unknown job or owned by another user.
            JobStateError: Job not completed, its file is gone, or its name is unknown.
        """
        job = await self._owned(job_id, user_id)
        if job.status is not JobStatus.COMPLETED or job.artifact is None:
            raise JobStateError("Download is not completed")
        if not job.artifact.has_file:
            raise JobStateError("The file for this download has been cleaned up")
        if not job.metadata.file_name:
            raise JobStateError("The file for this download was never verified")

        name = job.metadata.file_name
        logger.debug("download_file_opened", job_id=job_id, file_name=name)
        return sanitize_filename(name), self._worker.fetch_file(job_id, name)

    async def _owned(self, job_id: str, user_id: str) -> Job:
        # Another user's job looks exactly like a missing one
        job = await self._store.get(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

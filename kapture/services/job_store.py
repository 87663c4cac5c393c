"""Job persistence.

``JobStore`` is the contract the engines depend on: plain CRUD plus the
handful of queries reconciliation and retention need. ``InMemoryJobStore``
keeps records in a dict and hands out copies, so callers only change stored
state through ``update``.
"""

import copy
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import AbstractSet, Dict, List, Optional

import structlog

from kapture.models.job import ACTIVE_STATUSES, Job, JobStatus
from kapture.models.reports import CleanupStats
from kapture.services.exceptions import JobNotFoundError

logger = structlog.get_logger(__name__)


class JobStore(ABC):
    """Persistence contract for job records."""

    @abstractmethod
    async def insert(self, job: Job) -> Job:
        """Persist a new job. Raises ValueError if the id already exists."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Fetch one job, or None."""

    @abstractmethod
    async def update(self, job: Job) -> Job:
        """Replace a stored job. Raises JobNotFoundError if it does not exist."""

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Remove a job row. Returns False if it did not exist."""

    @abstractmethod
    async def list_for_user(
        self, user_id: str, status: Optional[JobStatus] = None, limit: int = 100
    ) -> List[Job]:
        """A user's jobs, newest first."""

    @abstractmethod
    async def find_active(self, limit: int) -> List[Job]:
        """Non-terminal jobs, least recently updated first."""

    @abstractmethod
    async def find_completed_for_user(self, user_id: str) -> List[Job]:
        """A user's completed jobs, newest first (archived included)."""

    @abstractmethod
    async def find_due_for_cleanup(
        self, now: datetime, limit: int, exclude: Optional[AbstractSet[str]] = None
    ) -> List[Job]:
        """Completed, non-archived jobs still holding a file whose deletion is due.

        Ordered by scheduled deletion, earliest first. Ids in ``exclude`` are
        skipped before ``limit`` applies.
        """

    @abstractmethod
    async def find_completed_older_than(
        self, cutoff: datetime, limit: int, exclude: Optional[AbstractSet[str]] = None
    ) -> List[Job]:
        """Completed, non-archived jobs still holding a file, created before ``cutoff``.

        Oldest first. Ids in ``exclude`` are skipped before ``limit`` applies.
        """

    @abstractmethod
    async def users_over_quota(self, keep_count: int) -> List[str]:
        """Users having more than ``keep_count`` completed non-archived jobs."""

    @abstractmethod
    async def cleanup_stats(self, now: datetime, user_id: Optional[str] = None) -> CleanupStats:
        """Aggregate retention counters, optionally for one user."""


class InMemoryJobStore(JobStore):
    """Dict-backed JobStore for single-process deployments and tests."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

        logger.debug("job_store_initialized", backend="memory")

    def __len__(self) -> int:
        return len(self._jobs)

    async def insert(self, job: Job) -> Job:
        if job.job_id in self._jobs:
            raise ValueError(f"Job already exists: {job.job_id}")
        self._jobs[job.job_id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def update(self, job: Job) -> Job:
        if job.job_id not in self._jobs:
            raise JobNotFoundError(f"Job not found: {job.job_id}")
        self._jobs[job.job_id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def list_for_user(
        self, user_id: str, status: Optional[JobStatus] = None, limit: int = 100
    ) -> List[Job]:
        jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def find_active(self, limit: int) -> List[Job]:
        jobs = [j for j in self._jobs.values() if j.status in ACTIVE_STATUSES]
        jobs.sort(key=lambda j: j.updated_at)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def find_completed_for_user(self, user_id: str) -> List[Job]:
        jobs = [
            j
            for j in self._jobs.values()
            if j.user_id == user_id and j.status == JobStatus.COMPLETED
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs]

    async def find_due_for_cleanup(
        self, now: datetime, limit: int, exclude: Optional[AbstractSet[str]] = None
    ) -> List[Job]:
        jobs = [
            j
            for j in self._completed_with_files(exclude)
            if j.artifact is not None
            and j.artifact.scheduled_deletion is not None
            and j.artifact.scheduled_deletion <= now
        ]
        jobs.sort(key=lambda j: j.artifact.scheduled_deletion)  # type: ignore[union-attr]
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def find_completed_older_than(
        self, cutoff: datetime, limit: int, exclude: Optional[AbstractSet[str]] = None
    ) -> List[Job]:
        jobs = [j for j in self._completed_with_files(exclude) if j.created_at < cutoff]
        jobs.sort(key=lambda j: j.created_at)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def users_over_quota(self, keep_count: int) -> List[str]:
        counts = Counter(
            j.user_id
            for j in self._jobs.values()
            if j.status == JobStatus.COMPLETED and not j.is_archived
        )
        return sorted(user_id for user_id, count in counts.items() if count > keep_count)

    async def cleanup_stats(self, now: datetime, user_id: Optional[str] = None) -> CleanupStats:
        stats = CleanupStats()
        for job in self._jobs.values():
            if job.status != JobStatus.COMPLETED:
                continue
            if user_id is not None and job.user_id != user_id:
                continue

            stats.total_downloads += 1
            artifact = job.artifact
            if artifact is None or not artifact.has_file:
                continue

            stats.active_files += 1
            if artifact.archived:
                stats.archived_files += 1
            elif artifact.scheduled_deletion is not None:
                stats.pending_cleanup += 1
                if artifact.scheduled_deletion <= now:
                    stats.due_now += 1
        return stats

    def _completed_with_files(self, exclude: Optional[AbstractSet[str]] = None) -> List[Job]:
        skip = exclude or frozenset()
        return [
            j
            for j in self._jobs.values()
            if j.job_id not in skip
            and j.status == JobStatus.COMPLETED
            and j.artifact is not None
            and j.artifact.has_file
            and not j.artifact.archived
        ]

"""Per-job progress cache with monotonic merge semantics.

Holds the latest progress snapshot for each job so consumers still get a
sensible answer while the worker is unreachable or rate limiting us. Entries
expire a fixed time after their last write.
"""

import time
from typing import Callable, Optional

import structlog
from cachetools import TTLCache

from kapture.core.metrics import MetricsCollector
from kapture.models.job import JobStatus
from kapture.models.progress import ProgressSnapshot, fallback_snapshot

logger = structlog.get_logger(__name__)


class ProgressCache:
    """Injectable progress cache keyed by job id."""

    def __init__(
        self,
        ttl: float = 86400,
        max_entries: int = 10000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl: Seconds an entry lives after its last write (default 24h).
            max_entries: Upper bound on cached jobs; least recently used go first.
            timer: Clock used for expiry, injectable for tests.
        """
        self.ttl = ttl
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl, timer=timer)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, job_id: str) -> Optional[ProgressSnapshot]:
        """Return the cached snapshot, or None if absent or expired."""
        return self._entries.get(job_id)

    def set(self, job_id: str, snapshot: ProgressSnapshot) -> None:
        """Store a snapshot unconditionally and restart its expiry."""
        self._entries[job_id] = snapshot
        MetricsCollector.update_progress_cache_size(len(self._entries))

    def merge_authoritative(self, job_id: str, snapshot: ProgressSnapshot) -> ProgressSnapshot:
        """Adopt a worker-reported snapshot unless it would move progress backwards.

        Returns:
            The snapshot now visible for the job.
        """
        cached = self.get(job_id)
        if cached is None or snapshot.percentage >= cached.percentage:
            self.set(job_id, snapshot)
            return snapshot

        logger.debug(
            "progress_regression_ignored",
            job_id=job_id,
            cached=cached.percentage,
            reported=snapshot.percentage,
        )
        return cached

    def with_fallback(self, job_id: str, status: JobStatus) -> ProgressSnapshot:
        """Return the cached snapshot, or a default five-phase structure for ``status``."""
        cached = self.get(job_id)
        if cached is not None:
            return cached
        return fallback_snapshot(status)

    def evict(self, job_id: str) -> None:
        """Drop the entry for a job that reached a terminal state."""
        if self._entries.pop(job_id, None) is not None:
            MetricsCollector.update_progress_cache_size(len(self._entries))

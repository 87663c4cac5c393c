"""Per-job-id mutual exclusion.

Reconciliation, cancel, archive and retention writes on one job all take the
same lock, so at most one of them touches a given job at any time. Locks for
different ids are independent.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class JobLockTable:
    """Lazily created asyncio locks keyed by job id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, job_id: str) -> bool:
        lock = self._locks.get(job_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, job_id: str) -> AsyncIterator[None]:
        """Hold the lock for ``job_id`` for the duration of the block."""
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._waiters[job_id] = self._waiters.get(job_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            # Forget the lock once nobody holds or awaits it
            remaining = self._waiters[job_id] - 1
            if remaining:
                self._waiters[job_id] = remaining
            else:
                del self._waiters[job_id]
                del self._locks[job_id]

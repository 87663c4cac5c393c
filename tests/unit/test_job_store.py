"""Tests for the in-memory job store and the per-job lock table."""

import asyncio
from datetime import timedelta

import pytest

from kapture.models.job import JobStatus
from kapture.services.exceptions import JobNotFoundError
from kapture.services.job_locks import JobLockTable
from kapture.services.job_store import InMemoryJobStore
from tests.fakes import START, active_job, completed_job


class TestInMemoryJobStore:
    """Tests for CRUD and the engine queries."""

    @pytest.fixture
    def store(self) -> InMemoryJobStore:
        return InMemoryJobStore()

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store: InMemoryJobStore) -> None:
        """Test a stored job can be read back."""
        await store.insert(active_job("job-1"))

        job = await store.get("job-1")

        assert job is not None
        assert job.job_id == "job-1"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_insert_duplicate_rejected(self, store: InMemoryJobStore) -> None:
        """Test an id can only be inserted once."""
        await store.insert(active_job("job-1"))
        with pytest.raises(ValueError):
            await store.insert(active_job("job-1"))

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store: InMemoryJobStore) -> None:
        """Test mutating a returned job does not change stored state."""
        await store.insert(active_job("job-1"))

        job = await store.get("job-1")
        assert job is not None
        job.progress = 90

        stored = await store.get("job-1")
        assert stored is not None
        assert stored.progress == 0

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store: InMemoryJobStore) -> None:
        """Test updating an unknown job raises."""
        with pytest.raises(JobNotFoundError):
            await store.update(active_job("ghost"))

    @pytest.mark.asyncio
    async def test_delete(self, store: InMemoryJobStore) -> None:
        """Test delete reports whether a row existed."""
        await store.insert(active_job("job-1"))

        assert await store.delete("job-1") is True
        assert await store.delete("job-1") is False
        assert await store.get("job-1") is None

    @pytest.mark.asyncio
    async def test_list_for_user_newest_first(self, store: InMemoryJobStore) -> None:
        """Test a user's jobs are listed newest first and filtered by status."""
        await store.insert(active_job("old", created_at=START))
        await store.insert(completed_job("new", created_at=START + timedelta(minutes=5)))
        await store.insert(active_job("other", user_id="user-2"))

        jobs = await store.list_for_user("user-1")
        completed = await store.list_for_user("user-1", status=JobStatus.COMPLETED)

        assert [j.job_id for j in jobs] == ["new", "old"]
        assert [j.job_id for j in completed] == ["new"]

    @pytest.mark.asyncio
    async def test_find_active_least_recently_updated_first(
        self, store: InMemoryJobStore
    ) -> None:
        """Test only non-terminal jobs are returned, stalest first."""
        await store.insert(active_job("b", created_at=START + timedelta(seconds=10)))
        await store.insert(active_job("a", created_at=START))
        await store.insert(completed_job("done"))

        jobs = await store.find_active(limit=10)

        assert [j.job_id for j in jobs] == ["a", "b"]
        assert [j.job_id for j in await store.find_active(limit=1)] == ["a"]

    @pytest.mark.asyncio
    async def test_find_due_for_cleanup(self, store: InMemoryJobStore) -> None:
        """Test due rows exclude archived, unscheduled and future rows."""
        now = START + timedelta(hours=2)
        await store.insert(completed_job("due", scheduled_deletion=START))
        await store.insert(completed_job("future", scheduled_deletion=now + timedelta(hours=1)))
        await store.insert(completed_job("unscheduled"))
        await store.insert(completed_job("archived", archived=True))

        jobs = await store.find_due_for_cleanup(now, limit=10)

        assert [j.job_id for j in jobs] == ["due"]

    @pytest.mark.asyncio
    async def test_find_due_for_cleanup_skips_excluded_before_limit(
        self, store: InMemoryJobStore
    ) -> None:
        """Test excluded ids do not use up the limit."""
        now = START + timedelta(hours=2)
        for i in range(4):
            await store.insert(
                completed_job(f"d{i}", scheduled_deletion=START + timedelta(minutes=i))
            )

        jobs = await store.find_due_for_cleanup(now, limit=2, exclude={"d0", "d1"})

        assert [j.job_id for j in jobs] == ["d2", "d3"]

    @pytest.mark.asyncio
    async def test_find_completed_older_than_skips_excluded(
        self, store: InMemoryJobStore
    ) -> None:
        """Test the age query is oldest first and honours exclusions."""
        for i in range(3):
            await store.insert(completed_job(f"o{i}", created_at=START + timedelta(minutes=i)))
        cutoff = START + timedelta(hours=1)

        assert [j.job_id for j in await store.find_completed_older_than(cutoff, limit=2)] == [
            "o0",
            "o1",
        ]
        jobs = await store.find_completed_older_than(cutoff, limit=2, exclude={"o0"})
        assert [j.job_id for j in jobs] == ["o1", "o2"]

    @pytest.mark.asyncio
    async def test_users_over_quota_ignores_archived(self, store: InMemoryJobStore) -> None:
        """Test archived downloads do not count toward the quota."""
        for i in range(3):
            await store.insert(completed_job(f"a{i}", user_id="alice"))
        for i in range(3):
            await store.insert(completed_job(f"b{i}", user_id="bob", archived=i > 0))

        assert await store.users_over_quota(2) == ["alice"]

    @pytest.mark.asyncio
    async def test_cleanup_stats(self, store: InMemoryJobStore) -> None:
        """Test aggregate counters per user and overall."""
        now = START + timedelta(hours=2)
        await store.insert(completed_job("due", scheduled_deletion=START))
        await store.insert(completed_job("later", scheduled_deletion=now + timedelta(hours=1)))
        await store.insert(completed_job("kept"))
        await store.insert(completed_job("pinned", archived=True))
        await store.insert(completed_job("other", user_id="user-2"))

        stats = await store.cleanup_stats(now, user_id="user-1")

        assert stats.total_downloads == 4
        assert stats.active_files == 4
        assert stats.archived_files == 1
        assert stats.pending_cleanup == 2
        assert stats.due_now == 1
        assert (await store.cleanup_stats(now)).total_downloads == 5


class TestJobLockTable:
    """Tests for per-job mutual exclusion."""

    @pytest.mark.asyncio
    async def test_same_id_is_serialized(self) -> None:
        """Test two holders of one id never overlap."""
        locks = JobLockTable()
        events = []

        async def worker(name: str) -> None:
            async with locks.hold("job-1"):
                events.append(f"{name}-start")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                events.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_ids_run_concurrently(self) -> None:
        """Test locks for different ids are independent."""
        locks = JobLockTable()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("job-1"):
                await inside.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)

        async with locks.hold("job-2"):
            assert locks.is_locked("job-1")
            inside.set()

        await task

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self) -> None:
        """Test an exception inside the block releases and forgets the lock."""
        locks = JobLockTable()

        with pytest.raises(RuntimeError):
            async with locks.hold("job-1"):
                raise RuntimeError("boom")

        assert not locks.is_locked("job-1")
        assert len(locks) == 0

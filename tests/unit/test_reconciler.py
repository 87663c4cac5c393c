"""Tests for the job reconciliation engine."""

import asyncio
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from kapture.clients.base import WorkerFile, WorkerStatus
from kapture.clients.exceptions import RateLimitedError, TransientDependencyError
from kapture.core.circuit_breaker import CircuitOpenError
from kapture.models.job import (
    FILE_RETRIEVAL_FAILED,
    UNRESOLVED_MESSAGE,
    CompletionReason,
    Job,
    JobStatus,
)
from kapture.models.progress import snapshot_from_sample
from kapture.services.job_locks import JobLockTable
from kapture.services.job_store import InMemoryJobStore
from kapture.services.progress_cache import ProgressCache
from kapture.services.reconciler import (
    AdaptiveLimiter,
    JobReconciler,
    artifact_key,
    artifact_url,
    select_media_file,
)
from tests.fakes import FakeClock, FakeWorkerClient, active_job, completed_job


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def worker() -> FakeWorkerClient:
    return FakeWorkerClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache() -> ProgressCache:
    return ProgressCache()


@pytest.fixture
def hook() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def locks() -> JobLockTable:
    return JobLockTable()


def make_reconciler(
    store: InMemoryJobStore,
    worker: FakeWorkerClient,
    locks: JobLockTable,
    cache: ProgressCache,
    clock: FakeClock,
    hook: AsyncMock,
    **kwargs: Any,
) -> JobReconciler:
    return JobReconciler(store, worker, locks, cache, on_completed=hook, clock=clock, **kwargs)


@pytest.fixture
def reconciler(
    store: InMemoryJobStore,
    worker: FakeWorkerClient,
    locks: JobLockTable,
    cache: ProgressCache,
    clock: FakeClock,
    hook: AsyncMock,
) -> JobReconciler:
    return make_reconciler(store, worker, locks, cache, clock, hook)


async def reconcile_stored(reconciler: JobReconciler, store: InMemoryJobStore, job: Job) -> str:
    await store.insert(job)
    return await reconciler.reconcile(job)


async def reload(store: InMemoryJobStore, job_id: str) -> Job:
    job = await store.get(job_id)
    assert job is not None
    return job


class TestMediaSelection:
    """Tests for picking the retained file from a worker listing."""

    def test_skips_auxiliary_files(self) -> None:
        """Test info, archive and description files are never chosen."""
        files = [
            WorkerFile("video.info.json", 10),
            WorkerFile("page.mhtml", 10),
            WorkerFile("video.description", 10),
            WorkerFile("video.mp4", 5000),
        ]
        chosen = select_media_file(files)
        assert chosen is not None
        assert chosen.name == "video.mp4"

    def test_skips_entries_flagged_non_media(self) -> None:
        """Test entries the worker flags as non-media are skipped."""
        files = [WorkerFile("thumb.jpg", 10, is_media=False), WorkerFile("song.mp3", 300)]
        chosen = select_media_file(files)
        assert chosen is not None
        assert chosen.name == "song.mp3"

    def test_first_media_file_in_listing_order(self) -> None:
        """Test the first media file wins."""
        files = [WorkerFile("a.webm", 1), WorkerFile("b.mp4", 2)]
        assert select_media_file(files).name == "a.webm"  # type: ignore[union-attr]

    def test_no_media_file(self) -> None:
        """Test unknown extensions and empty listings yield nothing."""
        assert select_media_file([WorkerFile("notes.txt", 1)]) is None
        assert select_media_file([]) is None

    def test_artifact_pointer_conventions(self) -> None:
        """Test storage key and URL formats."""
        assert artifact_key("job-1", "video.mp4") == "downloads/job-1/video.mp4"
        assert artifact_key("job-1") == "downloads/job-1"
        assert artifact_url("job-1") == "/api/v1/downloads/job-1/file"


class TestWorkerReportsCompleted:
    """Tests for the verified completion path."""

    @pytest.mark.asyncio
    async def test_completes_with_verified_file(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        hook: AsyncMock,
    ) -> None:
        """Test a completed worker job with a media file completes locally."""
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100, title="Clip")
        worker.files["job-1"] = [WorkerFile("clip.info.json", 5), WorkerFile("clip.mp4", 4096)]

        outcome = await reconcile_stored(reconciler, store, active_job("job-1"))

        job = await reload(store, "job-1")
        assert outcome == "completed"
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.completed_at is not None
        assert job.metadata.title == "Clip"
        assert job.metadata.file_name == "clip.mp4"
        assert job.metadata.completion_reason == CompletionReason.VERIFIED
        assert job.artifact is not None
        assert job.artifact.storage_key == "downloads/job-1/clip.mp4"
        assert job.artifact.size == 4096
        assert job.artifact.url == "/api/v1/downloads/job-1/file"
        hook.assert_awaited_once()
        assert hook.await_args.args[0].job_id == "job-1"

    @pytest.mark.asyncio
    async def test_progress_100_counts_as_completed(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test a processing report at 100% takes the completion path."""
        worker.statuses["job-1"] = WorkerStatus(state="processing", progress=100)
        worker.files["job-1"] = [WorkerFile("clip.mp4", 10)]

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "completed"

    @pytest.mark.asyncio
    async def test_no_media_files_fails(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        hook: AsyncMock,
    ) -> None:
        """Test a completion without media files fails the job."""
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = [WorkerFile("clip.info.json", 5)]

        outcome = await reconcile_stored(reconciler, store, active_job("job-1"))

        job = await reload(store, "job-1")
        assert outcome == "failed"
        assert job.status == JobStatus.FAILED
        assert job.error_message == FILE_RETRIEVAL_FAILED
        hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listing_error_fails(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test a failed file listing fails the job."""
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = TransientDependencyError("500", "worker")

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "failed"
        assert (await reload(store, "job-1")).error_message == FILE_RETRIEVAL_FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [RateLimitedError("slow down", "worker"), CircuitOpenError("worker", retry_after=30)],
    )
    async def test_listing_deferred_when_throttled(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        error: Exception,
    ) -> None:
        """Test a throttled listing leaves the job for the next sweep."""
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = error

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "errored"
        assert (await reload(store, "job-1")).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_progress_cache_evicted(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        cache: ProgressCache,
    ) -> None:
        """Test the cache entry is dropped once the job is terminal."""
        cache.set("job-1", snapshot_from_sample(80))
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = [WorkerFile("clip.mp4", 10)]

        await reconcile_stored(reconciler, store, active_job("job-1"))

        assert cache.get("job-1") is None


class TestWorkerReportsFailedOrProcessing:
    """Tests for failure and progress observations."""

    @pytest.mark.asyncio
    async def test_failed_stores_error_verbatim(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test the worker's error text is kept as is."""
        worker.statuses["job-1"] = WorkerStatus(state="failed", error="Video unavailable")

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "failed"
        assert (await reload(store, "job-1")).error_message == "Video unavailable"

    @pytest.mark.asyncio
    async def test_processing_records_progress(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        cache: ProgressCache,
        clock: FakeClock,
    ) -> None:
        """Test progress, speed and phase are recorded."""
        worker.statuses["job-1"] = WorkerStatus(
            state="processing", progress=42, phase="Download", speed="2MiB/s", eta="00:10"
        )
        clock.advance(30)

        outcome = await reconcile_stored(reconciler, store, active_job("job-1"))

        job = await reload(store, "job-1")
        assert outcome == "processing"
        assert job.status == JobStatus.PROCESSING
        assert job.progress == 42
        assert job.metadata.speed == "2MiB/s"
        assert job.updated_at == clock.now
        snapshot = cache.get("job-1")
        assert snapshot is not None
        assert snapshot.percentage == 42
        assert snapshot.current_phase == "Download"

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        cache: ProgressCache,
    ) -> None:
        """Test a lower report never moves stored progress backwards."""
        worker.statuses["job-1"] = WorkerStatus(state="processing", progress=30)

        await reconcile_stored(
            reconciler,
            store,
            active_job("job-1", status=JobStatus.PROCESSING, progress=50),
        )

        assert (await reload(store, "job-1")).progress == 50
        assert cache.get("job-1").percentage == 50  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_metadata_merge_keeps_existing_fields(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test a partial update does not drop the platform."""
        job = active_job("job-1")
        job.metadata = job.metadata.merged(platform="youtube", title="Old")
        worker.statuses["job-1"] = WorkerStatus(state="processing", progress=10, title="New")

        await reconcile_stored(reconciler, store, job)

        stored = await reload(store, "job-1")
        assert stored.metadata.platform == "youtube"
        assert stored.metadata.title == "New"

    @pytest.mark.asyncio
    async def test_worker_pending_updates_title_only(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test a still-queued job stays pending but learns its title."""
        worker.statuses["job-1"] = WorkerStatus(state="pending", title="Queued clip")

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "unchanged"

        job = await reload(store, "job-1")
        assert job.status == JobStatus.PENDING
        assert job.metadata.title == "Queued clip"


class TestWorkerDoesNotKnowJob:
    """Tests for the not-found inference rule."""

    @pytest.mark.asyncio
    async def test_old_job_is_inferred_completed(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        clock: FakeClock,
        hook: AsyncMock,
    ) -> None:
        """Test a six-minute-old unknown job is completed by inference."""
        clock.advance(6 * 60)

        outcome = await reconcile_stored(reconciler, store, active_job("ghost"))

        job = await reload(store, "ghost")
        assert outcome == "completed"
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.metadata.completion_reason == CompletionReason.INFERRED
        assert job.artifact is not None
        assert job.artifact.storage_key == "downloads/ghost"
        assert job.artifact.size == 0
        hook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_young_job_is_left_alone(
        self, reconciler: JobReconciler, store: InMemoryJobStore, clock: FakeClock
    ) -> None:
        """Test a two-minute-old unknown job is inside the grace window."""
        clock.advance(2 * 60)

        assert await reconcile_stored(reconciler, store, active_job("ghost")) == "unchanged"
        assert (await reload(store, "ghost")).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_mark_unknown_policy(
        self,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        locks: JobLockTable,
        cache: ProgressCache,
        clock: FakeClock,
        hook: AsyncMock,
    ) -> None:
        """Test the conservative policy fails the job for review."""
        reconciler = make_reconciler(
            store, worker, locks, cache, clock, hook, not_found_policy="mark_unknown"
        )
        clock.advance(6 * 60)

        assert await reconcile_stored(reconciler, store, active_job("ghost")) == "failed"

        job = await reload(store, "ghost")
        assert job.error_message == UNRESOLVED_MESSAGE
        assert job.metadata.completion_reason is None
        hook.assert_not_awaited()


class TestStatusUnavailable:
    """Tests for rate limits and transient errors."""

    @pytest.mark.asyncio
    async def test_rate_limited_never_transitions(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        clock: FakeClock,
    ) -> None:
        """Test a 429 leaves even an old pending job untouched."""
        worker.statuses["job-1"] = RateLimitedError("slow down", "worker", retry_after=5)
        clock.advance(60 * 60)

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "errored"
        assert (await reload(store, "job-1")).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_old_pending_job_is_forced_completed(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        clock: FakeClock,
    ) -> None:
        """Test a pending job past the timeout is force-completed on error."""
        worker.statuses["job-1"] = TransientDependencyError("timeout", "worker")
        clock.advance(11 * 60)

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "completed"

        job = await reload(store, "job-1")
        assert job.metadata.completion_reason == CompletionReason.FORCED_TIMEOUT
        assert job.artifact is not None
        assert job.artifact.storage_key == "downloads/job-1"

    @pytest.mark.asyncio
    async def test_recent_pending_job_is_left_alone(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        clock: FakeClock,
    ) -> None:
        """Test a transient error on a young job changes nothing."""
        worker.statuses["job-1"] = TransientDependencyError("timeout", "worker")
        clock.advance(5 * 60)

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "errored"
        assert (await reload(store, "job-1")).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_processing_job_is_never_forced(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        clock: FakeClock,
    ) -> None:
        """Test the stuck-job rule only applies to pending jobs."""
        worker.statuses["job-1"] = TransientDependencyError("timeout", "worker")
        clock.advance(60 * 60)

        job = active_job("job-1", status=JobStatus.PROCESSING, progress=40)
        assert await reconcile_stored(reconciler, store, job) == "errored"
        assert (await reload(store, "job-1")).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stuck_policy_mark_unknown(
        self,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        locks: JobLockTable,
        cache: ProgressCache,
        clock: FakeClock,
        hook: AsyncMock,
    ) -> None:
        """Test the conservative stuck-job policy fails the job."""
        reconciler = make_reconciler(
            store, worker, locks, cache, clock, hook, stuck_job_policy="mark_unknown"
        )
        worker.statuses["job-1"] = TransientDependencyError("timeout", "worker")
        clock.advance(11 * 60)

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "failed"
        assert (await reload(store, "job-1")).error_message == UNRESOLVED_MESSAGE

    def test_unknown_policy_rejected(
        self,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        locks: JobLockTable,
        cache: ProgressCache,
        clock: FakeClock,
        hook: AsyncMock,
    ) -> None:
        """Test policy names are validated."""
        with pytest.raises(ValueError):
            make_reconciler(store, worker, locks, cache, clock, hook, stuck_job_policy="guess")


class TestReconcileGuards:
    """Tests for terminal jobs, hooks and locking."""

    @pytest.mark.asyncio
    async def test_terminal_job_not_queried(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test a job that became terminal is skipped without a worker call."""
        assert await reconcile_stored(reconciler, store, completed_job("done")) == "unchanged"
        assert worker.status_calls == []

    @pytest.mark.asyncio
    async def test_stale_copy_is_reread(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test the stored record, not the caller's copy, decides."""
        stale = active_job("job-1")
        await store.insert(completed_job("job-1"))

        assert await reconciler.reconcile(stale) == "unchanged"
        assert worker.status_calls == []

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_break_reconcile(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        hook: AsyncMock,
    ) -> None:
        """Test a failing completion hook is logged, not raised."""
        hook.side_effect = RuntimeError("retention down")
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = [WorkerFile("clip.mp4", 10)]

        assert await reconcile_stored(reconciler, store, active_job("job-1")) == "completed"

    @pytest.mark.asyncio
    async def test_hook_runs_after_lock_release(
        self,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        locks: JobLockTable,
        cache: ProgressCache,
        clock: FakeClock,
    ) -> None:
        """Test the job lock is free when the completion hook runs."""
        seen: Dict[str, bool] = {}

        async def hook(job: Job) -> None:
            seen["locked"] = locks.is_locked(job.job_id)

        reconciler = JobReconciler(store, worker, locks, cache, on_completed=hook, clock=clock)
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = [WorkerFile("clip.mp4", 10)]

        await reconcile_stored(reconciler, store, active_job("job-1"))

        assert seen == {"locked": False}

    @pytest.mark.asyncio
    async def test_concurrent_reconciles_of_one_job_serialize(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test only the first of two concurrent reconciles transitions the job."""
        worker.statuses["job-1"] = WorkerStatus(state="completed", progress=100)
        worker.files["job-1"] = [WorkerFile("clip.mp4", 10)]
        job = active_job("job-1")
        await store.insert(job)

        outcomes = await asyncio.gather(reconciler.reconcile(job), reconciler.reconcile(job))

        assert sorted(outcomes) == ["completed", "unchanged"]
        assert worker.status_calls == ["job-1"]


class TestReconcileBatch:
    """Tests for batch sweeps."""

    @pytest.mark.asyncio
    async def test_batch_report_counts(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
        clock: FakeClock,
    ) -> None:
        """Test every outcome is tallied."""
        await store.insert(active_job("done"))
        await store.insert(active_job("broken"))
        await store.insert(active_job("running"))
        await store.insert(active_job("queued"))
        await store.insert(active_job("throttled"))
        worker.statuses["done"] = WorkerStatus(state="completed", progress=100)
        worker.files["done"] = [WorkerFile("a.mp4", 1)]
        worker.statuses["broken"] = WorkerStatus(state="failed", error="nope")
        worker.statuses["running"] = WorkerStatus(state="processing", progress=20)
        worker.statuses["queued"] = WorkerStatus(state="pending")
        worker.statuses["throttled"] = RateLimitedError("slow", "worker")

        report = await reconciler.reconcile_batch()

        assert report.inspected == 5
        assert report.completed == 1
        assert report.failed == 1
        assert report.processing == 1
        assert report.unchanged == 1
        assert report.errored == 1
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_one_job_error_does_not_abort_batch(
        self,
        reconciler: JobReconciler,
        store: InMemoryJobStore,
        worker: FakeWorkerClient,
    ) -> None:
        """Test an unexpected exception is recorded per job."""
        await store.insert(active_job("ok"))
        await store.insert(active_job("bad"))
        worker.statuses["ok"] = WorkerStatus(state="failed", error="nope")
        worker.statuses["bad"] = WorkerStatus(state="completed", progress=100)
        worker.files["bad"] = [WorkerFile("a.mp4", 1)]

        original_update = store.update

        async def flaky_update(job: Job) -> Job:
            if job.job_id == "bad":
                raise RuntimeError("disk full")
            return await original_update(job)

        store.update = flaky_update  # type: ignore[method-assign]

        report = await reconciler.reconcile_batch()

        assert report.failed == 1
        assert report.errored == 1
        assert report.errors == [{"job_id": "bad", "error": "disk full"}]

    @pytest.mark.asyncio
    async def test_batch_respects_limit(
        self, reconciler: JobReconciler, store: InMemoryJobStore
    ) -> None:
        """Test the limit caps how many jobs are inspected."""
        for i in range(5):
            await store.insert(active_job(f"job-{i}"))

        report = await reconciler.reconcile_batch(limit=2)

        assert report.inspected == 2


class TestAdaptiveLimiter:
    """Tests for the AIMD concurrency limiter."""

    @pytest.mark.asyncio
    async def test_rate_limit_halves_with_floor(self) -> None:
        """Test each rate limit halves the limit down to one."""
        limiter = AdaptiveLimiter(max_limit=8)

        await limiter.record_rate_limited()
        assert limiter.limit == 4
        await limiter.record_rate_limited()
        await limiter.record_rate_limited()
        await limiter.record_rate_limited()
        assert limiter.limit == 1

    @pytest.mark.asyncio
    async def test_successes_recover_additively(self) -> None:
        """Test a streak of successes raises the limit by one, up to the max."""
        limiter = AdaptiveLimiter(max_limit=4, recovery_successes=3)
        await limiter.record_rate_limited()
        assert limiter.limit == 2

        for _ in range(3):
            await limiter.record_success()
        assert limiter.limit == 3

        for _ in range(30):
            await limiter.record_success()
        assert limiter.limit == 4

    @pytest.mark.asyncio
    async def test_slots_bound_concurrency(self) -> None:
        """Test no more than ``limit`` holders run at once."""
        limiter = AdaptiveLimiter(max_limit=2)
        peak = 0
        running = 0

        async def task() -> None:
            nonlocal peak, running
            async with limiter.slot():
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0)
                running -= 1

        await asyncio.gather(*(task() for _ in range(6)))

        assert peak == 2
        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_reconciler_backs_off_on_rate_limit(
        self, reconciler: JobReconciler, store: InMemoryJobStore, worker: FakeWorkerClient
    ) -> None:
        """Test a 429 from the worker lowers the reconciler's concurrency."""
        worker.statuses["job-1"] = RateLimitedError("slow", "worker")

        await reconcile_stored(reconciler, store, active_job("job-1"))

        assert reconciler.limiter.limit == 2

    def test_rejects_zero_limit(self) -> None:
        """Test a limiter needs at least one slot."""
        with pytest.raises(ValueError):
            AdaptiveLimiter(max_limit=0)

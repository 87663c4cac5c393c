"""Periodic background sweeps.

Three independent loops: reconciliation of active jobs, deletion of due
artifacts, and the quota sweep that restores keep-N retention for every user.
A failing iteration is logged and the loop carries on at its next tick.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from kapture.models.reports import CleanupRun, QuotaMaintenanceReport, SweepReport
from kapture.services.reconciler import JobReconciler
from kapture.services.retention import RetentionService

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


async def _run_periodic(
    name: str,
    interval: float,
    sweep: Callable[[], Awaitable[Any]],
    run_once: bool,
    sleep: Sleep,
) -> Optional[Any]:
    logger.info(f"{name}_scheduler_started", interval_seconds=interval)

    while True:
        await sleep(interval)

        try:
            result = await sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{name}_sweep_error", error=str(e), exc_info=True)
            result = None

        if run_once:
            return result


async def reconcile_scheduler(
    reconciler: JobReconciler,
    interval: float = 30,
    run_once: bool = False,
    sleep: Sleep = asyncio.sleep,
) -> Optional[SweepReport]:
    """Run the reconciliation sweep every ``interval`` seconds.

    Args:
        reconciler: JobReconciler to drive.
        interval: Seconds between sweeps.
        run_once: If True, run only one sweep (for testing).
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The SweepReport if run_once is True, None otherwise.
    """
    return await _run_periodic("reconcile", interval, reconciler.reconcile_batch, run_once, sleep)


async def cleanup_scheduler(
    retention: RetentionService,
    interval: float = 3600,
    run_once: bool = False,
    sleep: Sleep = asyncio.sleep,
) -> Optional[CleanupRun]:
    """Delete due artifacts every ``interval`` seconds."""
    return await _run_periodic("cleanup", interval, retention.run_batch_cleanup, run_once, sleep)


async def quota_scheduler(
    retention: RetentionService,
    interval: float = 3600,
    run_once: bool = False,
    sleep: Sleep = asyncio.sleep,
) -> Optional[QuotaMaintenanceReport]:
    """Recompute retention for users over quota every ``interval`` seconds.

    Catches users whose completion hook failed or who crossed the quota
    through an unarchive.
    """
    return await _run_periodic("quota", interval, retention.maintain_all_user_quotas, run_once, sleep)

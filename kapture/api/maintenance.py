"""Maintenance endpoints for external cron triggers.

The same sweeps run in-process on a timer; these routes let an operator or an
external scheduler run them on demand.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query

from kapture.middleware.auth import require_api_key
from kapture.services.reconciler import JobReconciler
from kapture.services.retention import RetentionService

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_api_key)],
)


# Dependency placeholders (to be configured in main app)
async def get_reconciler() -> JobReconciler:
    """Get reconciler instance."""
    raise NotImplementedError("Reconciler dependency not configured")


async def get_retention_service() -> RetentionService:
    """Get retention service instance."""
    raise NotImplementedError("Retention service dependency not configured")


@router.post("/reconcile")
async def run_reconcile(
    limit: Optional[int] = Query(None, ge=1, le=500),  # noqa: B008
    reconciler: JobReconciler = Depends(get_reconciler),  # noqa: B008
) -> Dict[str, Any]:
    """Reconcile up to `limit` active jobs now."""
    logger.info("maintenance_reconcile_requested", limit=limit)
    report = await reconciler.reconcile_batch(limit)
    return report.to_dict()


@router.post("/cleanup")
async def run_cleanup(
    batch_size: Optional[int] = Query(None, ge=1, le=1000),  # noqa: B008
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> Dict[str, Any]:
    """Delete every artifact whose scheduled deletion has passed."""
    logger.info("maintenance_cleanup_requested", batch_size=batch_size)
    run = await retention.run_batch_cleanup(batch_size)
    return run.to_dict()


@router.post("/quotas")
async def run_quota_maintenance(
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> Dict[str, Any]:
    """Recompute retention for every user over quota."""
    report = await retention.maintain_all_user_quotas()
    return report.to_dict()


@router.post("/emergency-cleanup")
async def run_emergency_cleanup(
    older_than_days: Optional[int] = Query(None, ge=0),  # noqa: B008
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> Dict[str, Any]:
    """
    Delete all non-archived files older than `older_than_days`.

    Ignores scheduled deletion times. Archived downloads are never touched.
    """
    logger.warning("maintenance_emergency_cleanup_requested", older_than_days=older_than_days)
    run = await retention.emergency_cleanup(older_than_days)
    return run.to_dict()


@router.post("/retention/{user_id}")
async def recompute_user_retention(
    user_id: str,
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> Dict[str, Any]:
    result = await retention.recompute_retention(user_id)
    return result.to_dict()


@router.get("/stats")
async def cleanup_stats(
    user_id: Optional[str] = Query(None),  # noqa: B008
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> Dict[str, Any]:
    stats = await retention.get_cleanup_stats(user_id)
    return stats.to_dict()

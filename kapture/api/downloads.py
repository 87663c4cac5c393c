"""Download job endpoints.

- POST   /api/v1/downloads                 submit
- GET    /api/v1/downloads                 list the caller's jobs
- GET    /api/v1/downloads/{id}            status, optionally refreshed
- GET    /api/v1/downloads/{id}/progress   progress snapshot
- GET    /api/v1/downloads/{id}/file       stream the retained file
- POST   /api/v1/downloads/{id}/cancel
- POST   /api/v1/downloads/{id}/retry
- POST   /api/v1/downloads/{id}/archive
- DELETE /api/v1/downloads/{id}/archive
- DELETE /api/v1/downloads/{id}
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import StreamingResponse

from kapture.api.schemas import (
    DownloadCreateRequest,
    JobListResponse,
    JobResponse,
    ProgressResponse,
)
from kapture.middleware.auth import get_current_user, require_api_key
from kapture.models.job import JobStatus
from kapture.services.downloads import DownloadRequest, DownloadService
from kapture.services.retention import RetentionService

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/downloads",
    tags=["downloads"],
    dependencies=[Depends(require_api_key)],
)

_ERROR_RESPONSES = {
    400: {"description": "Invalid request"},
    404: {"description": "Download not found"},
    409: {"description": "Not allowed in the current state"},
    503: {"description": "Worker or storage unavailable"},
}


# Dependency placeholders (to be configured in main app)
async def get_download_service() -> DownloadService:
    """Get download service instance."""
    raise NotImplementedError("Download service dependency not configured")


async def get_retention_service() -> RetentionService:
    """Get retention service instance."""
    raise NotImplementedError("Retention service dependency not configured")


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
)
async def submit_download(
    request: DownloadCreateRequest,
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> JobResponse:
    """
    Submit a media download.

    The job is created in `pending` and driven to completion by the
    reconciliation sweep. Poll `GET /downloads/{id}` or `/progress`.
    """
    logger.info(
        "download_requested",
        user_id=user_id,
        url=request.url,
        file_kind=request.file_kind.value,
        quality=request.quality.value,
    )
    job = await service.submit_download(
        DownloadRequest(
            user_id=user_id,
            url=request.url,
            file_kind=request.file_kind,
            quality=request.quality,
        )
    )
    return JobResponse.from_job(job)


@router.get("", response_model=JobListResponse)
async def list_downloads(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),  # noqa: B008
    limit: int = Query(50, ge=1, le=200),  # noqa: B008
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> JobListResponse:
    jobs = await service.list_jobs(user_id, status=status_filter, limit=limit)
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs], count=len(jobs))


@router.get("/{job_id}", response_model=JobResponse, responses=_ERROR_RESPONSES)
async def get_download(
    job_id: str,
    refresh: bool = Query(False, description="Reconcile with the worker before answering"),  # noqa: B008
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> JobResponse:
    job = await service.get_job(job_id, user_id, refresh=refresh)
    return JobResponse.from_job(job)


@router.get("/{job_id}/progress", response_model=ProgressResponse, responses=_ERROR_RESPONSES)
async def get_download_progress(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> ProgressResponse:
    job, snapshot = await service.get_progress(job_id, user_id)
    return ProgressResponse.from_snapshot(job, snapshot)


@router.get(
    "/{job_id}/file",
    response_class=StreamingResponse,
    responses={200: {"description": "Media bytes"}, **_ERROR_RESPONSES},
)
async def download_file(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> StreamingResponse:
    """Stream the retained file of a completed download."""
    file_name, stream = await service.open_file(job_id, user_id)
    return StreamingResponse(
        stream,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.post("/{job_id}/cancel", response_model=JobResponse, responses=_ERROR_RESPONSES)
async def cancel_download(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> JobResponse:
    job = await service.cancel(job_id, user_id)
    return JobResponse.from_job(job)


@router.post(
    "/{job_id}/retry",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
)
async def retry_download(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> JobResponse:
    """Submit a failed download again. Returns the new job."""
    job = await service.retry(job_id, user_id)
    return JobResponse.from_job(job)


@router.post("/{job_id}/archive", response_model=JobResponse, responses=_ERROR_RESPONSES)
async def archive_download(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> JobResponse:
    """Pin a completed download so automatic cleanup never deletes it."""
    job = await retention.archive(job_id, user_id)
    return JobResponse.from_job(job)


@router.delete("/{job_id}/archive", response_model=JobResponse, responses=_ERROR_RESPONSES)
async def unarchive_download(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    retention: RetentionService = Depends(get_retention_service),  # noqa: B008
) -> JobResponse:
    job = await retention.unarchive(job_id, user_id)
    return JobResponse.from_job(job)


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses=_ERROR_RESPONSES,
)
async def delete_download(
    job_id: str,
    user_id: str = Depends(get_current_user),  # noqa: B008
    service: DownloadService = Depends(get_download_service),  # noqa: B008
) -> Response:
    await service.delete_download(job_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

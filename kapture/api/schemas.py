"""Request and response schemas for API endpoints.

Pydantic models for request validation and response serialization with
OpenAPI examples.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from kapture.models.job import FileKind, Job, QualityTier
from kapture.models.progress import ProgressSnapshot, state_label


class DownloadCreateRequest(BaseModel):
    """Request body for submitting a download."""

    url: str = Field(
        ...,
        description="Source media URL",
        examples=["https://www.youtube.com/watch?v=dQw4w9WgXcQ"],
    )
    file_kind: FileKind = Field(FileKind.VIDEO, description="Requested output kind")
    quality: QualityTier = Field(QualityTier.HIGHEST, description="Requested quality tier")

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("URL must not be empty")
        return v


class JobResponse(BaseModel):
    """One download job."""

    job_id: str = Field(..., examples=["a1b2c3d4"])
    status: str = Field(..., examples=["pending", "processing", "completed", "failed"])
    state_label: str = Field(..., examples=["Queued", "Processing", "Completed", "Failed"])
    url: str = Field(..., examples=["https://www.youtube.com/watch?v=dQw4w9WgXcQ"])
    file_kind: str = Field(..., examples=["video"])
    quality: str = Field(..., examples=["highest"])
    progress: int = Field(..., description="Progress percentage (0-100)", examples=[75])
    error_message: Optional[str] = Field(None, examples=["cancelled by user"])
    title: Optional[str] = Field(None, examples=["Rick Astley - Never Gonna Give You Up"])
    thumbnail: Optional[str] = None
    platform: Optional[str] = Field(None, examples=["youtube"])
    completion_reason: Optional[str] = Field(None, examples=["completed and files verified"])
    file_name: Optional[str] = Field(None, examples=["video.mp4"])
    file_size: Optional[int] = Field(None, examples=[52428800])
    download_url: Optional[str] = Field(None, examples=["/api/v1/downloads/a1b2c3d4/file"])
    archived: bool = False
    scheduled_deletion: Optional[str] = Field(None, examples=["2025-12-25T11:30:00+00:00"])
    files_cleaned_at: Optional[str] = None
    created_at: str = Field(..., examples=["2025-12-25T10:30:00+00:00"])
    updated_at: str = Field(..., examples=["2025-12-25T10:31:00+00:00"])
    completed_at: Optional[str] = None
    retry_of: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        artifact = job.artifact
        reason = job.metadata.completion_reason
        return cls(
            job_id=job.job_id,
            status=job.status.value,
            state_label=state_label(job.status),
            url=job.url,
            file_kind=job.file_kind.value,
            quality=job.quality.value,
            progress=job.progress,
            error_message=job.error_message,
            title=job.metadata.title,
            thumbnail=job.metadata.thumbnail,
            platform=job.metadata.platform,
            completion_reason=reason.value if reason else None,
            file_name=job.metadata.file_name,
            file_size=artifact.size if artifact and artifact.has_file else None,
            download_url=artifact.url if artifact and artifact.has_file else None,
            archived=job.is_archived,
            scheduled_deletion=(
                artifact.scheduled_deletion.isoformat()
                if artifact and artifact.scheduled_deletion
                else None
            ),
            files_cleaned_at=(
                artifact.files_cleaned_at.isoformat()
                if artifact and artifact.files_cleaned_at
                else None
            ),
            created_at=job.created_at.isoformat(),
            updated_at=job.updated_at.isoformat(),
            completed_at=job.completed_at.isoformat() if job.completed_at else None,
            retry_of=job.retry_of,
        )


class JobListResponse(BaseModel):
    """A user's jobs, newest first."""

    jobs: List[JobResponse]
    count: int = Field(..., examples=[3])


class PhaseResponse(BaseModel):
    name: str = Field(..., examples=["Download"])
    status: Literal["pending", "active", "completed", "failed"] = Field(..., examples=["active"])


class ProgressResponse(BaseModel):
    """Progress of one job, from the progress cache or a synthesized fallback."""

    job_id: str = Field(..., examples=["a1b2c3d4"])
    status: str = Field(..., examples=["processing"])
    state_label: str = Field(..., examples=["Processing"])
    percentage: int = Field(..., examples=[42])
    current_phase: str = Field(..., examples=["Download"])
    phases: List[PhaseResponse]
    speed: Optional[str] = Field(None, examples=["1.2MiB/s"])
    eta: Optional[str] = Field(None, examples=["00:42"])
    observed_at: str = Field(..., examples=["2025-12-25T10:30:00+00:00"])

    @classmethod
    def from_snapshot(cls, job: Job, snapshot: ProgressSnapshot) -> "ProgressResponse":
        return cls(
            job_id=job.job_id,
            status=job.status.value,
            state_label=state_label(job.status),
            percentage=snapshot.percentage,
            current_phase=snapshot.current_phase,
            phases=[PhaseResponse(name=p.name, status=p.status.value) for p in snapshot.phases],
            speed=snapshot.speed,
            eta=snapshot.eta,
            observed_at=snapshot.observed_at.isoformat(),
        )


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., examples=["healthy"])
    details: Optional[Dict[str, Any]] = Field(default=None, examples=[{"state": "closed"}])


class HealthResponse(BaseModel):
    """Detailed health check response."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., examples=["healthy"])
    timestamp: str = Field(..., examples=["2025-12-25T10:30:00Z"])
    version: str = Field(..., examples=["0.1.0"])
    uptime_seconds: float = Field(..., examples=[3600.5])
    components: Dict[str, ComponentHealth]


class LivenessResponse(BaseModel):
    """Simple liveness check response for container orchestration."""

    status: Literal["alive"] = Field(..., examples=["alive"])


class ReadinessResponse(BaseModel):
    """Readiness check response for load balancer integration."""

    status: Literal["ready", "not_ready"] = Field(..., examples=["ready"])
    ready: bool = Field(..., examples=[True])
    message: Optional[str] = Field(default=None, examples=["Storage not writable"])


class ErrorDetail(BaseModel):
    """Structured error response.

    All API errors follow this format with machine-readable error codes
    and optional suggestions for resolution.
    """

    error_code: str = Field(
        ...,
        description="Machine-readable error code",
        examples=["INVALID_URL", "JOB_NOT_FOUND", "WORKER_UNAVAILABLE"],
    )
    message: str = Field(..., description="Human-readable error message")
    details: Optional[str] = Field(None, description="Additional error context")
    timestamp: str = Field(..., examples=["2025-12-25T10:30:00Z"])
    request_id: Optional[str] = Field(None, description="Request ID for tracing")
    suggestion: Optional[str] = Field(None, description="Suggested action to resolve the error")

"""Job data models for download reconciliation and retention."""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Status of a download job.

    State transitions:
    - PENDING -> PROCESSING: worker reports progress
    - PENDING/PROCESSING -> COMPLETED: worker reports completion, or completion is inferred
    - PENDING/PROCESSING -> FAILED: worker reports failure, or the user cancels

    COMPLETED and FAILED are terminal. A retry creates a new job.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class FileKind(str, Enum):
    """Requested output kind."""

    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


class QualityTier(str, Enum):
    """Requested quality tier."""

    HIGHEST = "highest"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CompletionReason(str, Enum):
    """How a job came to be marked completed."""

    VERIFIED = "completed and files verified"
    INFERRED = "inferred completion, source not re-verified"
    FORCED_TIMEOUT = "forced completion after timeout"


CANCELLED_MESSAGE = "cancelled by user"
UNRESOLVED_MESSAGE = "unresolved after timeout, manual review required"
FILE_RETRIEVAL_FAILED = "file retrieval failed"


@dataclass(frozen=True)
class JobMetadata:
    """Typed job metadata.

    Replaces a free-form map. Updates go through ``merged`` so a partial
    update never drops fields it does not mention.
    """

    title: Optional[str] = None
    thumbnail: Optional[str] = None
    platform: Optional[str] = None
    phase: Optional[str] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    error: Optional[str] = None
    completion_reason: Optional[CompletionReason] = None
    file_name: Optional[str] = None
    version: int = 1

    def merged(self, **changes: Any) -> "JobMetadata":
        """Return a copy with every non-None keyword applied."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown metadata fields: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail,
            "platform": self.platform,
            "phase": self.phase,
            "speed": self.speed,
            "eta": self.eta,
            "error": self.error,
            "completion_reason": self.completion_reason.value if self.completion_reason else None,
            "file_name": self.file_name,
            "version": self.version,
        }


@dataclass
class RetainedArtifact:
    """The kept file of a completed job.

    ``storage_key`` is None once the bytes have been cleaned up; the artifact
    stays on the job as history.
    """

    storage_key: Optional[str]
    size: int = 0
    url: Optional[str] = None
    archived: bool = False
    archived_at: Optional[datetime] = None
    scheduled_deletion: Optional[datetime] = None
    files_cleaned_at: Optional[datetime] = None

    @property
    def has_file(self) -> bool:
        return self.storage_key is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storage_key": self.storage_key,
            "size": self.size,
            "url": self.url,
            "archived": self.archived,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "scheduled_deletion": (
                self.scheduled_deletion.isoformat() if self.scheduled_deletion else None
            ),
            "files_cleaned_at": (
                self.files_cleaned_at.isoformat() if self.files_cleaned_at else None
            ),
        }


@dataclass
class Job:
    """One requested media acquisition.

    ``job_id`` is the id the extraction worker assigned at submission, so
    local and remote records correlate without a lookup table.
    """

    job_id: str
    user_id: str
    url: str
    file_kind: FileKind = FileKind.VIDEO
    quality: QualityTier = QualityTier.HIGHEST
    status: JobStatus = JobStatus.PENDING
    progress: int = 0  # 0-100 percentage
    metadata: JobMetadata = field(default_factory=JobMetadata)
    artifact: Optional[RetainedArtifact] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    retry_of: Optional[str] = None

    def is_terminal(self) -> bool:
        """Check if the job is in a terminal state (completed or failed)."""
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_archived(self) -> bool:
        return self.artifact is not None and self.artifact.archived

    @property
    def error_message(self) -> Optional[str]:
        return self.metadata.error

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for API responses."""
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "url": self.url,
            "file_kind": self.file_kind.value,
            "quality": self.quality.value,
            "status": self.status.value,
            "progress": self.progress,
            "error_message": self.error_message,
            "metadata": self.metadata.to_dict(),
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retry_of": self.retry_of,
        }

"""Data models for the application."""

from kapture.models.job import (
    CompletionReason,
    FileKind,
    Job,
    JobMetadata,
    JobStatus,
    QualityTier,
    RetainedArtifact,
)
from kapture.models.progress import PhaseState, PhaseStatus, ProgressSnapshot
from kapture.models.reports import (
    CleanupRun,
    CleanupStats,
    QuotaMaintenanceReport,
    RetentionResult,
    SweepReport,
)

__all__ = [
    "CleanupRun",
    "CleanupStats",
    "CompletionReason",
    "FileKind",
    "Job",
    "JobMetadata",
    "JobStatus",
    "PhaseState",
    "PhaseStatus",
    "ProgressSnapshot",
    "QualityTier",
    "QuotaMaintenanceReport",
    "RetainedArtifact",
    "RetentionResult",
    "SweepReport",
]

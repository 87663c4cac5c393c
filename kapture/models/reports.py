"""Result records returned by the batch operations.

None of these are persisted; they are handed back to the caller (cron
endpoint, scheduler loop) and logged.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class SweepReport:
    """Outcome counts of one reconciliation batch."""

    inspected: int = 0
    completed: int = 0
    failed: int = 0
    processing: int = 0
    unchanged: int = 0
    errored: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inspected": self.inspected,
            "completed": self.completed,
            "failed": self.failed,
            "processing": self.processing,
            "unchanged": self.unchanged,
            "errored": self.errored,
            "errors": list(self.errors),
        }


@dataclass
class CleanupRun:
    """Accounting for one cleanup sweep.

    ``bytes_freed`` only counts deletions the object store confirmed.
    """

    processed_downloads: int = 0
    cleaned_files: int = 0
    bytes_freed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processedDownloads": self.processed_downloads,
            "cleanedFiles": self.cleaned_files,
            "bytesFreed": self.bytes_freed,
            "errors": list(self.errors),
        }


@dataclass
class RetentionResult:
    user_id: str
    marked_for_cleanup: int = 0
    retained: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "markedForCleanup": self.marked_for_cleanup,
            "retained": self.retained,
        }


@dataclass
class QuotaMaintenanceReport:
    users_processed: int = 0
    total_marked: int = 0
    results: List[RetentionResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usersProcessed": self.users_processed,
            "totalMarked": self.total_marked,
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
        }


@dataclass
class CleanupStats:
    pending_cleanup: int = 0
    due_now: int = 0
    total_downloads: int = 0
    active_files: int = 0
    archived_files: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pendingCleanup": self.pending_cleanup,
            "dueNow": self.due_now,
            "totalDownloads": self.total_downloads,
            "activeFiles": self.active_files,
            "archivedFiles": self.archived_files,
        }

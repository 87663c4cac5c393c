"""Abstract contracts for the external collaborators.

The reconciliation and retention engines only ever see these interfaces; the
concrete HTTP worker client and object store live beside them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, List, Optional


@dataclass(frozen=True)
class WorkerStatus:
    """Normalized status of one job as reported by the extraction worker."""

    state: str  # pending, processing, completed, failed
    progress: int = 0
    error: Optional[str] = None
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    phase: Optional[str] = None
    speed: Optional[str] = None
    eta: Optional[str] = None


@dataclass(frozen=True)
class WorkerFile:
    """One file the worker produced for a job."""

    name: str
    size: int = 0
    display_name: Optional[str] = None
    is_media: bool = True


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str
    size: int


@dataclass(frozen=True)
class ObjectMetadata:
    size: int
    content_type: str
    last_modified: datetime


@dataclass(frozen=True)
class UploadOptions:
    content_type: str = "application/octet-stream"
    folder: str = "media"
    tags: List[str] = field(default_factory=list)


class JobWorkerClient(ABC):
    """Client for the external media-extraction worker."""

    @abstractmethod
    async def submit(self, url: str, format_spec: str, user_id: Optional[str] = None) -> str:
        """
        Submit a download and return the worker-assigned job id.

        Raises:
            TransientDependencyError: Worker unreachable or failing
            RateLimitedError: Worker answered 429
            TerminalJobFailure: Worker rejected the request outright
        """

    @abstractmethod
    async def status(self, job_id: str) -> WorkerStatus:
        """
        Fetch the current status of a job.

        Raises:
            NotFoundUpstreamError: Worker does not know the job
            RateLimitedError: Worker answered 429
            TransientDependencyError: Any other transport or server failure
        """

    @abstractmethod
    async def cancel(self, job_id: str) -> None:
        """Ask the worker to stop a job."""

    @abstractmethod
    async def list_files(self, job_id: str) -> List[WorkerFile]:
        """List the files produced for a job."""

    @abstractmethod
    def fetch_file(self, job_id: str, name: str) -> AsyncIterator[bytes]:
        """Stream one produced file."""


class ObjectStorage(ABC):
    """Object store holding retained artifacts."""

    @abstractmethod
    async def upload(
        self,
        owner_id: str,
        data: bytes,
        name: str,
        options: Optional[UploadOptions] = None,
    ) -> StoredObject:
        """Store bytes for an owner and return the generated key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Delete an object. Deleting a missing key is not an error.

        Raises:
            StorageOperationError: If the backend fails
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether an object exists."""

    @abstractmethod
    async def head(self, key: str) -> Optional[ObjectMetadata]:
        """Return size, content type and modification time, or None if missing."""

"""Errors raised by the external dependency clients."""

from typing import Optional


class DependencyError(Exception):
    """Base exception for failures talking to an external dependency."""

    def __init__(self, message: str, dependency: str = "unknown") -> None:
        self.dependency = dependency
        super().__init__(message)


class TransientDependencyError(DependencyError):
    """Network failure, timeout or 5xx. Retried on the next sweep, never changes job state."""

    pass


class RateLimitedError(TransientDependencyError):
    """The dependency answered 429."""

    def __init__(
        self,
        message: str,
        dependency: str = "unknown",
        retry_after: Optional[float] = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, dependency)


class NotFoundUpstreamError(DependencyError):
    """The worker does not know the job id (never registered, or already garbage-collected)."""

    pass


class TerminalJobFailure(DependencyError):
    """The worker explicitly reported the job as failed."""

    pass


class StorageOperationError(DependencyError):
    """An upload, delete or head call against the object store failed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message, dependency="storage")

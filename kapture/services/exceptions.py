"""Service-layer exceptions."""


class JobNotFoundError(Exception):
    """Raised when a job does not exist or belongs to another user."""

    pass


class JobStateError(Exception):
    """Raised when an action is not allowed in the job's current state."""

    pass


class InvalidURLError(Exception):
    """Raised when a submitted source URL is malformed or unsupported."""

    pass


class InvariantViolation(Exception):
    """Raised when a write would break a retention invariant.

    The main case is scheduling deletion of an archived artifact.
    """

    pass

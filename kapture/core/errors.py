"""Centralized error handling for the API.

Maps domain and dependency exceptions to stable error codes, HTTP statuses
and a single JSON error shape.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type

import structlog
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_429_TOO_MANY_REQUESTS,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from kapture.clients.exceptions import (
    RateLimitedError,
    StorageOperationError,
    TerminalJobFailure,
    TransientDependencyError,
)
from kapture.core.logging import get_request_id
from kapture.core.metrics import MetricsCollector
from kapture.services.exceptions import (
    InvalidURLError,
    InvariantViolation,
    JobNotFoundError,
    JobStateError,
)

logger = structlog.get_logger(__name__)


class ErrorCode:
    """Machine-readable error codes returned in every error response."""

    # Client Errors (4xx)
    INVALID_URL = "INVALID_URL"
    INVALID_REQUEST = "INVALID_REQUEST"
    AUTH_FAILED = "AUTH_FAILED"
    MISSING_USER = "MISSING_USER"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    INVALID_JOB_STATE = "INVALID_JOB_STATE"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    DOWNLOAD_REJECTED = "DOWNLOAD_REJECTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Server Errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    WORKER_UNAVAILABLE = "WORKER_UNAVAILABLE"
    STORAGE_ERROR = "STORAGE_ERROR"
    COMPONENT_UNAVAILABLE = "COMPONENT_UNAVAILABLE"


ERROR_CODE_TO_STATUS: Dict[str, int] = {
    ErrorCode.INVALID_URL: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_REQUEST: HTTP_400_BAD_REQUEST,
    ErrorCode.MISSING_USER: HTTP_400_BAD_REQUEST,
    ErrorCode.AUTH_FAILED: HTTP_401_UNAUTHORIZED,
    ErrorCode.JOB_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_JOB_STATE: HTTP_409_CONFLICT,
    ErrorCode.INVARIANT_VIOLATION: HTTP_409_CONFLICT,
    ErrorCode.DOWNLOAD_REJECTED: 422,
    ErrorCode.RATE_LIMIT_EXCEEDED: HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.INTERNAL_ERROR: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.WORKER_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.STORAGE_ERROR: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.COMPONENT_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
}


ERROR_SUGGESTIONS: Dict[str, str] = {
    ErrorCode.INVALID_URL: (
        "Use an http(s) URL from a supported platform "
        "(YouTube, TikTok, Instagram, Twitter/X, Facebook, Vimeo, Reddit)"
    ),
    ErrorCode.INVALID_REQUEST: "Check the request body against the API schema at /docs",
    ErrorCode.MISSING_USER: "Send the acting user id in the X-User-Id header",
    ErrorCode.AUTH_FAILED: "Provide a valid API key in the X-API-Key header",
    ErrorCode.JOB_NOT_FOUND: "The download does not exist or belongs to another user",
    ErrorCode.INVALID_JOB_STATE: "Check the download status before retrying this action",
    ErrorCode.INVARIANT_VIOLATION: "Archived downloads cannot be scheduled for deletion",
    ErrorCode.DOWNLOAD_REJECTED: "The extraction worker refused this URL. Try a different source",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Wait for the Retry-After period before making more requests",
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred. Contact administrator if the issue persists",
    ErrorCode.WORKER_UNAVAILABLE: "The extraction worker is unavailable. Try again shortly",
    ErrorCode.STORAGE_ERROR: "The storage backend is unavailable. Try again shortly",
    ErrorCode.COMPONENT_UNAVAILABLE: "A required component is unavailable. Check /health for status",
}


# Order matters: subclasses must come before their base classes
EXCEPTION_TO_ERROR_CODE: Dict[Type[Exception], str] = {
    InvalidURLError: ErrorCode.INVALID_URL,
    JobNotFoundError: ErrorCode.JOB_NOT_FOUND,
    JobStateError: ErrorCode.INVALID_JOB_STATE,
    InvariantViolation: ErrorCode.INVARIANT_VIOLATION,
    TerminalJobFailure: ErrorCode.DOWNLOAD_REJECTED,
    RateLimitedError: ErrorCode.RATE_LIMIT_EXCEEDED,
    StorageOperationError: ErrorCode.STORAGE_ERROR,
    # TransientDependencyError must come after RateLimitedError
    TransientDependencyError: ErrorCode.WORKER_UNAVAILABLE,
}


class APIError(Exception):
    """Structured API error converted to the standard error body by the handler."""

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        """Initialize an API error.

        Args:
            error_code: Machine-readable error code from ErrorCode class.
            message: Human-readable error message.
            details: Optional additional details about the error.
            suggestion: Optional suggestion for resolution. Defaults to the
                        suggestion registered for the error code.
        """
        self.error_code = error_code
        self.message = message
        self.details = details
        self.suggestion = suggestion or ERROR_SUGGESTIONS.get(error_code)
        super().__init__(message)


def map_exception_to_api_error(exc: Exception) -> APIError:
    """Map a domain or dependency exception to an APIError.

    Args:
        exc: The exception to map.

    Returns:
        An APIError with the matching error code, or INTERNAL_ERROR.
    """
    for exc_type, error_code in EXCEPTION_TO_ERROR_CODE.items():
        if isinstance(exc, exc_type):
            return APIError(error_code, str(exc))
    return APIError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


def _build_error_response(
    error_code: str,
    message: str,
    details: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the standard error body."""
    request_id = get_request_id()

    response: Dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if details:
        response["details"] = details
    if request_id:
        response["request_id"] = request_id
    if suggestion:
        response["suggestion"] = suggestion

    return response


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert any exception into the standard error response.

    Args:
        request: The FastAPI request object.
        exc: The exception that was raised.

    Returns:
        JSONResponse with the error body and matching status code.
    """
    headers: Dict[str, str] = {}

    if isinstance(exc, APIError):
        api_error = exc
        logger.warning(
            "api_error",
            error_code=exc.error_code,
            message=exc.message,
            path=request.url.path,
        )

    elif isinstance(exc, HTTPException):
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            error_code = exc.detail["error_code"]
            message = exc.detail.get("message", str(exc.detail))
            details = exc.detail.get("details")
        else:
            error_code = _status_to_error_code(exc.status_code)
            message = str(exc.detail) if exc.detail else "An error occurred"
            details = None

        response = _build_error_response(
            error_code=error_code,
            message=message,
            details=details,
            suggestion=ERROR_SUGGESTIONS.get(error_code),
        )
        MetricsCollector.record_error(error_code, request.url.path)
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            error_code=error_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response,
            headers=getattr(exc, "headers", None),
        )

    elif isinstance(exc, tuple(EXCEPTION_TO_ERROR_CODE)):
        api_error = map_exception_to_api_error(exc)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(max(1, int(retry_after)))
        logger.warning(
            "domain_error",
            error_code=api_error.error_code,
            error_type=type(exc).__name__,
            message=str(exc),
            path=request.url.path,
        )

    else:
        api_error = APIError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")
        logger.error(
            "unhandled_exception",
            error_type=type(exc).__name__,
            error=str(exc),
            path=request.url.path,
            exc_info=True,
        )

    status_code = ERROR_CODE_TO_STATUS.get(api_error.error_code, HTTP_500_INTERNAL_SERVER_ERROR)
    MetricsCollector.record_error(api_error.error_code, request.url.path)
    response = _build_error_response(
        error_code=api_error.error_code,
        message=api_error.message,
        details=api_error.details,
        suggestion=api_error.suggestion,
    )
    return JSONResponse(status_code=status_code, content=response, headers=headers or None)


def _status_to_error_code(status_code: int) -> str:
    """Infer an error code from a bare HTTP status code."""
    if status_code == HTTP_400_BAD_REQUEST:
        return ErrorCode.INVALID_REQUEST
    elif status_code == HTTP_401_UNAUTHORIZED:
        return ErrorCode.AUTH_FAILED
    elif status_code == HTTP_404_NOT_FOUND:
        return ErrorCode.JOB_NOT_FOUND
    elif status_code == HTTP_409_CONFLICT:
        return ErrorCode.INVALID_JOB_STATE
    elif status_code == HTTP_429_TOO_MANY_REQUESTS:
        return ErrorCode.RATE_LIMIT_EXCEEDED
    elif status_code == HTTP_503_SERVICE_UNAVAILABLE:
        return ErrorCode.COMPONENT_UNAVAILABLE
    else:
        return ErrorCode.INTERNAL_ERROR

"""API key authentication and caller identity dependencies.

API keys authenticate the calling application. The acting user is asserted
by that application in the ``X-User-Id`` header; user identity itself is
managed by an external provider.
"""

import re
from typing import Callable, FrozenSet, List, Optional, Set

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from kapture.core.errors import APIError, ErrorCode
from kapture.core.logging import hash_api_key

logger = structlog.get_logger(__name__)

# Header name for API key
API_KEY_HEADER_NAME = "X-API-Key"
USER_ID_HEADER_NAME = "X-User-Id"

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:@-]{1,128}$")

# FastAPI security scheme for OpenAPI docs
api_key_header = APIKeyHeader(name=API_KEY_HEADER_NAME, auto_error=False)


class APIKeyAuth:
    """API key authentication handler.

    Validates API keys against a configured set. An empty set disables
    authentication (degraded start).
    """

    # Paths that don't require authentication
    DEFAULT_EXCLUDED_PATHS: FrozenSet[str] = frozenset(
        {
            "/health",
            "/liveness",
            "/readiness",
            "/docs",
            "/redoc",
            "/openapi.json",
            "/metrics",
        }
    )

    def __init__(
        self,
        api_keys: Optional[List[str]] = None,
        excluded_paths: Optional[Set[str]] = None,
    ):
        """
        Initialize API key authentication.

        Args:
            api_keys: List of valid API keys. Empty list allows all requests.
            excluded_paths: Paths that don't require authentication.
        """
        self._api_keys: Set[str] = set(api_keys) if api_keys else set()
        self._excluded_paths = excluded_paths or self.DEFAULT_EXCLUDED_PATHS
        self._allow_all = len(self._api_keys) == 0

        if self._allow_all:
            logger.warning("auth_disabled", reason="no_api_keys_configured")
        else:
            logger.info("auth_initialized", num_keys=len(self._api_keys))

    @property
    def allow_all(self) -> bool:
        """Check if authentication is disabled."""
        return self._allow_all

    def is_path_excluded(self, path: str) -> bool:
        """
        Check whether a path skips authentication.

        Args:
            path: Request path, with or without a trailing slash

        Returns:
            True if the path or one of its parents is excluded
        """
        path = path.rstrip("/") or "/"

        # Exact or sub-path match only, so /metrics does not cover /metrics_admin
        for excluded in self._excluded_paths:
            if path == excluded or path.startswith(excluded + "/"):
                return True
        return False

    def validate_api_key(self, api_key: Optional[str]) -> bool:
        """
        Check an API key against the configured set.

        Args:
            api_key: Key taken from the request header, if any

        Returns:
            True if the key is known or authentication is disabled
        """
        if self._allow_all:
            return True
        if not api_key:
            return False
        return api_key in self._api_keys

    def authenticate(self, request: Request, api_key: Optional[str]) -> bool:
        """
        Authenticate a request.

        Args:
            request: The incoming request
            api_key: Key taken from the X-API-Key header, if any

        Returns:
            True when the path is excluded or the key is valid

        Raises:
            HTTPException: If authentication fails
        """
        path = request.url.path

        if self.is_path_excluded(path):
            return True

        if self.validate_api_key(api_key):
            logger.debug(
                "auth_succeeded",
                path=path,
                key_hash=hash_api_key(api_key) if api_key else "none",
            )
            return True

        logger.warning(
            "auth_failed",
            path=path,
            key_hash=hash_api_key(api_key) if api_key else "none",
            client_ip=request.client.host if request.client else "unknown",
        )

        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# Global auth instance (configured at startup)
_auth_instance: Optional[APIKeyAuth] = None


def configure_auth(api_keys: Optional[List[str]] = None) -> APIKeyAuth:
    """
    Configure the global auth instance.

    Args:
        api_keys: Accepted API keys; empty or None disables authentication

    Returns:
        The configured APIKeyAuth instance
    """
    global _auth_instance
    _auth_instance = APIKeyAuth(api_keys=api_keys)
    return _auth_instance


def get_auth() -> APIKeyAuth:
    """
    Get the global auth instance.

    Returns:
        The configured instance, or a permissive default before startup
    """
    if _auth_instance is None:
        return APIKeyAuth()
    return _auth_instance


async def get_api_key(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),  # noqa: B008
) -> Optional[str]:
    """Extract and validate the API key from the request.

    Args:
        request: The incoming request
        api_key: Key from the X-API-Key header (injected by FastAPI)

    Returns:
        The validated API key, or None when authentication is disabled

    Raises:
        HTTPException: If authentication fails
    """
    get_auth().authenticate(request, api_key)
    return api_key


def require_api_key(
    api_key: Optional[str] = Depends(get_api_key),  # noqa: B008
) -> str:
    """Require a valid API key for the route.

    Args:
        api_key: The key already validated by get_api_key

    Returns:
        The API key, or an empty string when authentication is disabled

    Raises:
        HTTPException: If no API key provided while authentication is enabled
    """
    if api_key is None:
        if get_auth().allow_all:
            return ""
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key is required",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return api_key


async def get_current_user(
    user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER_NAME),  # noqa: B008
) -> str:
    """Return the acting user id from the ``X-User-Id`` header.

    Args:
        user_id: Raw header value (injected by FastAPI)

    Returns:
        The user id, unchanged

    Raises:
        APIError: If the header is missing or malformed
    """
    if not user_id or not _USER_ID_PATTERN.match(user_id):
        raise APIError(
            error_code=ErrorCode.MISSING_USER,
            message=f"A valid {USER_ID_HEADER_NAME} header is required",
        )
    return user_id


def create_auth_dependency(
    api_keys: List[str],
    excluded_paths: Optional[Set[str]] = None,
) -> Callable:
    """Create an isolated auth dependency with its own key set.

    Args:
        api_keys: Accepted API keys
        excluded_paths: Paths that skip authentication

    Returns:
        A FastAPI dependency function
    """
    auth = APIKeyAuth(api_keys=api_keys, excluded_paths=excluded_paths)

    async def dependency(
        request: Request,
        api_key: Optional[str] = Depends(api_key_header),  # noqa: B008
    ) -> Optional[str]:
        auth.authenticate(request, api_key)
        return api_key

    return dependency

"""Middleware package for the API."""

from kapture.middleware.auth import APIKeyAuth, get_api_key, get_current_user, require_api_key

__all__ = [
    "APIKeyAuth",
    "get_api_key",
    "get_current_user",
    "require_api_key",
]

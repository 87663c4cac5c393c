"""API endpoints."""

from kapture.api import downloads, health, maintenance, metrics

__all__ = [
    "downloads",
    "health",
    "maintenance",
    "metrics",
]

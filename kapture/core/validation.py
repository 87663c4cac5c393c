"""Input validation for submitted downloads.

Covers source URL checks, platform detection, worker format strings and
storage-safe file names.
"""

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple
from urllib.parse import urlparse

import structlog

from kapture.models.job import FileKind, QualityTier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Result of a validation operation."""

    is_valid: bool
    error_message: Optional[str] = None
    sanitized_value: Optional[str] = None
    platform: Optional[str] = None


# Platform name -> registrable domains it is served from
PLATFORM_DOMAINS: Dict[str, Tuple[str, ...]] = {
    "youtube": ("youtube.com", "youtu.be"),
    "tiktok": ("tiktok.com",),
    "instagram": ("instagram.com",),
    "twitter": ("twitter.com", "x.com"),
    "facebook": ("facebook.com", "fb.watch"),
    "vimeo": ("vimeo.com",),
    "reddit": ("reddit.com", "redd.it"),
}

FORMAT_SPECS: Dict[FileKind, Dict[QualityTier, str]] = {
    FileKind.VIDEO: {
        QualityTier.HIGHEST: "bv*",
        QualityTier.HIGH: "bv*",
        QualityTier.MEDIUM: "bv*[height<=720]",
        QualityTier.LOW: "bv*[height<=480]",
    },
    FileKind.AUDIO: {
        QualityTier.HIGHEST: "bestaudio[ext=mp3]/bestaudio",
        QualityTier.HIGH: "bestaudio[abr<=320][ext=mp3]/bestaudio[abr<=320]",
        QualityTier.MEDIUM: "bestaudio[abr<=192][ext=mp3]/bestaudio[abr<=192]",
        QualityTier.LOW: "bestaudio[abr<=128][ext=mp3]/bestaudio[abr<=128]",
    },
    FileKind.IMAGE: {tier: "best" for tier in QualityTier},
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class URLValidator:
    """Validates source URLs and detects which platform they belong to."""

    ALLOWED_SCHEMES: FrozenSet[str] = frozenset({"http", "https"})
    MAX_URL_LENGTH = 2048

    def __init__(self, platforms: Optional[Dict[str, Tuple[str, ...]]] = None):
        self.platforms = platforms or PLATFORM_DOMAINS

    def detect_platform(self, host: str) -> Optional[str]:
        """Return the platform serving ``host``, matching the domain or any subdomain."""
        host = host.lower().rstrip(".")
        for platform, domains in self.platforms.items():
            for domain in domains:
                if host == domain or host.endswith("." + domain):
                    return platform
        return None

    def validate(self, url: str) -> ValidationResult:
        """Validate a URL and detect its platform.

        Args:
            url: URL to validate

        Returns:
            ValidationResult carrying the stripped URL and platform when valid
        """
        if not url or not isinstance(url, str):
            return ValidationResult(
                is_valid=False, error_message="URL is required and must be a string"
            )

        url = url.strip()
        if not url:
            return ValidationResult(is_valid=False, error_message="URL cannot be empty")

        if len(url) > self.MAX_URL_LENGTH:
            return ValidationResult(is_valid=False, error_message="URL is too long")

        try:
            parsed = urlparse(url)
        except ValueError as e:
            logger.warning("url_parse_failed", url=url, error=str(e))
            return ValidationResult(is_valid=False, error_message="Invalid URL format")

        scheme = parsed.scheme.lower()
        if scheme not in self.ALLOWED_SCHEMES:
            return ValidationResult(
                is_valid=False, error_message="URL must use http or https scheme"
            )

        host = parsed.hostname or ""
        if not host:
            return ValidationResult(is_valid=False, error_message="URL must include a valid domain")

        platform = self.detect_platform(host)
        if platform is None:
            logger.debug("url_platform_unsupported", url=url, host=host)
            supported = ", ".join(sorted(self.platforms))
            return ValidationResult(
                is_valid=False,
                error_message=f"Unsupported platform. Supported platforms: {supported}",
            )

        return ValidationResult(is_valid=True, sanitized_value=url, platform=platform)


def get_format_spec(file_kind: FileKind, quality: QualityTier) -> str:
    """Map a requested kind and quality to the worker's format selector."""
    return FORMAT_SPECS[file_kind][quality]


def sanitize_filename(name: str, max_length: int = 120) -> str:
    """Reduce a file name to a storage-key-safe form."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    if not cleaned:
        return "file"
    return cleaned[:max_length]

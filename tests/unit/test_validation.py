"""Tests for input validation"""

import pytest

from kapture.core.validation import URLValidator, get_format_spec, sanitize_filename
from kapture.models.job import FileKind, QualityTier


class TestURLValidator:
    """Test URL validation and platform detection"""

    @pytest.fixture
    def validator(self) -> URLValidator:
        return URLValidator()

    @pytest.mark.parametrize(
        "url, platform",
        [
            ("https://www.youtube.com/watch?v=abc", "youtube"),
            ("https://youtu.be/abc", "youtube"),
            ("https://m.youtube.com/watch?v=abc", "youtube"),
            ("https://www.tiktok.com/@u/video/1", "tiktok"),
            ("https://x.com/u/status/1", "twitter"),
            ("https://fb.watch/abc", "facebook"),
            ("http://vimeo.com/1", "vimeo"),
            ("https://old.reddit.com/r/a/comments/1", "reddit"),
        ],
    )
    def test_supported_platforms(self, validator: URLValidator, url: str, platform: str) -> None:
        """Test supported URLs are valid and tagged with their platform"""
        result = validator.validate(url)

        assert result.is_valid
        assert result.platform == platform
        assert result.sanitized_value == url

    def test_strips_whitespace(self, validator: URLValidator) -> None:
        """Test surrounding whitespace is removed"""
        result = validator.validate("  https://youtu.be/abc\n")

        assert result.sanitized_value == "https://youtu.be/abc"

    @pytest.mark.parametrize(
        "url, message",
        [
            ("", "required"),
            ("   ", "empty"),
            ("javascript:alert(1)", "http or https"),
            ("https://", "domain"),
            ("https://example.com/video", "Unsupported platform"),
            ("https://notyoutube.com/watch", "Unsupported platform"),
        ],
    )
    def test_invalid_urls(self, validator: URLValidator, url: str, message: str) -> None:
        """Test invalid URLs are rejected with a reason"""
        result = validator.validate(url)

        assert not result.is_valid
        assert message in (result.error_message or "")

    def test_url_too_long(self, validator: URLValidator) -> None:
        """Test overly long URLs are rejected"""
        result = validator.validate("https://youtu.be/" + "a" * 3000)

        assert not result.is_valid

    def test_custom_platforms(self) -> None:
        """Test the platform table is injectable"""
        validator = URLValidator({"example": ("example.com",)})

        assert validator.validate("https://cdn.example.com/v").platform == "example"
        assert not validator.validate("https://youtu.be/abc").is_valid


class TestFormatSpec:
    """Test worker format selectors"""

    def test_video_tiers(self) -> None:
        assert get_format_spec(FileKind.VIDEO, QualityTier.HIGHEST) == "bv*"
        assert get_format_spec(FileKind.VIDEO, QualityTier.MEDIUM) == "bv*[height<=720]"
        assert get_format_spec(FileKind.VIDEO, QualityTier.LOW) == "bv*[height<=480]"

    def test_audio_prefers_mp3(self) -> None:
        assert get_format_spec(FileKind.AUDIO, QualityTier.HIGHEST) == "bestaudio[ext=mp3]/bestaudio"

    def test_image_ignores_quality(self) -> None:
        assert {get_format_spec(FileKind.IMAGE, q) for q in QualityTier} == {"best"}


class TestSanitizeFilename:
    """Test storage-safe file names"""

    def test_replaces_unsafe_characters(self) -> None:
        assert sanitize_filename("my video (1).mp4") == "my_video_1_.mp4"

    def test_blocks_traversal(self) -> None:
        assert "/" not in sanitize_filename("../../etc/passwd")

    def test_empty_becomes_placeholder(self) -> None:
        assert sanitize_filename("...") == "file"

    def test_truncates(self) -> None:
        assert len(sanitize_filename("a" * 500)) == 120

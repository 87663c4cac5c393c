"""Pytest configuration and shared fixtures"""

import os

import pytest


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset environment variables before each test"""
    # Clear any KAPTURE_ prefixed environment variables
    for key in list(os.environ.keys()):
        if key.startswith("KAPTURE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop any globally configured auth instance between tests"""
    monkeypatch.setattr("kapture.middleware.auth._auth_instance", None)

"""Pytest configuration and fixtures for pdf-service tests."""

from collections.abc import Iterator

import pytest

from pdf_service import browser_manager as browser_manager_module
from pdf_service.settings import get_settings

TEST_API_KEY = "test-secret-key-0123456789"


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    """Keep every test independent of the host environment and of cached settings."""
    monkeypatch.setenv("METRICS_SERVER_ENABLED", "false")
    monkeypatch.setenv("PDF_SERVICE_CONFIG_FILE", str(tmp_path / "missing-appsettings.json"))
    for name in ("API_KEY", "REQUEST_TIMEOUT", "OVERLAY_READY_TIMEOUT", "MAX_CONCURRENT_SESSIONS", "BROWSER_EAGER_START"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(browser_manager_module, "_browser_manager", None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def api_key(monkeypatch: pytest.MonkeyPatch) -> str:
    """Configure the shared secret through the environment."""
    monkeypatch.setenv("API_KEY", TEST_API_KEY)
    get_settings.cache_clear()
    return TEST_API_KEY

"""Tests for the PDF generator HTTP API."""

import asyncio
import re
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pdf_service import browser_manager as browser_manager_module
from pdf_service import pdf_controller
from pdf_service.api_key_gate import API_KEY_HEADER
from pdf_service.browser_manager import BrowserManager
from pdf_service.overlay_injector import STAMP_ELEMENT_ID, WATERMARK_ELEMENT_ID
from pdf_service.pdf_controller import app, is_docs_enabled
from pdf_service.settings import SOURCE_ENVIRONMENT, ServiceSettings, get_settings
from tests.browser_doubles import FAKE_PDF, make_browser, make_running_manager

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01"


def _use_manager(monkeypatch: pytest.MonkeyPatch, manager: BrowserManager) -> BrowserManager:
    monkeypatch.setattr(browser_manager_module, "_browser_manager", manager)
    return manager


@pytest.fixture
def browser() -> MagicMock:
    return make_browser()


@pytest.fixture
def manager(monkeypatch: pytest.MonkeyPatch, browser: MagicMock) -> BrowserManager:
    return _use_manager(monkeypatch, make_running_manager(browser))


@pytest.fixture
def client(api_key: str, manager: BrowserManager) -> Iterator[TestClient]:  # noqa: ARG001
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth(api_key: str) -> dict[str, str]:
    return {API_KEY_HEADER: api_key}


@pytest.fixture
def short_deadline(api_key: str) -> Iterator[None]:
    app.dependency_overrides[get_settings] = lambda: ServiceSettings.model_construct(api_key=api_key, configuration_source=SOURCE_ENVIRONMENT, request_timeout=1)
    yield
    app.dependency_overrides.clear()


def _evaluate_args(page: MagicMock) -> list[dict]:
    return [call.args[1] for call in page.evaluate.await_args_list]


# ---------- PDF endpoints ----------


def test_from_html_returns_pdf(client: TestClient, auth: dict[str, str], browser: MagicMock):
    html = "<html><body><h1>Hello</h1></body></html>"

    response = client.post("/api/pdf/from-html", data={"htmlContent": html}, headers=auth)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == "attachment; filename=generated.pdf"
    assert re.fullmatch(r"[0-9a-f]{32}", response.headers["x-request-id"])
    assert response.content == FAKE_PDF

    page = browser.created_pages[0]
    page.set_content.assert_awaited_once()
    assert page.set_content.await_args.args[0] == html
    page.goto.assert_not_awaited()
    page.evaluate.assert_not_awaited()
    page.wait_for_function.assert_not_awaited()


def test_from_url_returns_pdf(client: TestClient, auth: dict[str, str], browser: MagicMock):
    response = client.post("/api/pdf/from-url", data={"url": "https://example.com/report"}, headers=auth)

    assert response.status_code == 200
    assert response.content.startswith(b"%PDF")

    page = browser.created_pages[0]
    page.goto.assert_awaited_once()
    assert page.goto.await_args.args[0] == "https://example.com/report"
    assert page.goto.await_args.kwargs["wait_until"] == "networkidle"
    assert page.goto.await_args.kwargs["timeout"] == 60000


def test_from_url_reads_query_parameters(client: TestClient, auth: dict[str, str], browser: MagicMock):
    response = client.post("/api/pdf/from-url", params={"url": "https://example.com", "watermarkText": "DRAFT"}, headers=auth)

    assert response.status_code == 200
    page = browser.created_pages[0]
    assert page.goto.await_args.args[0] == "https://example.com"
    assert _evaluate_args(page)[0]["text"] == "DRAFT"


def test_from_url_with_watermark_and_stamp(client: TestClient, auth: dict[str, str], browser: MagicMock):
    response = client.post(
        "/api/pdf/from-url",
        data={"url": "https://example.com", "watermarkText": "CONFIDENTIAL"},
        files=[("stampImageFile", ("stamp.png", PNG_BYTES, "image/png"))],
        headers=auth,
    )

    assert response.status_code == 200
    page = browser.created_pages[0]
    watermark_arg, stamp_arg = _evaluate_args(page)
    assert watermark_arg["text"] == "CONFIDENTIAL"
    assert stamp_arg["sizePx"] == 150
    assert stamp_arg["src"].startswith("data:image/png;base64,")
    assert page.wait_for_function.await_args.kwargs["arg"] == [WATERMARK_ELEMENT_ID, STAMP_ELEMENT_ID]
    assert page.wait_for_function.await_args.kwargs["timeout"] == 5000
    page.pdf.assert_awaited_once()


def test_from_html_stamp_is_larger(client: TestClient, auth: dict[str, str], browser: MagicMock):
    response = client.post(
        "/api/pdf/from-html",
        data={"htmlContent": "<p>Signed</p>"},
        files=[("stampImageFile", ("stamp.png", PNG_BYTES, "image/png"))],
        headers=auth,
    )

    assert response.status_code == 200
    page = browser.created_pages[0]
    (stamp_arg,) = _evaluate_args(page)
    assert stamp_arg["sizePx"] == 180
    assert page.wait_for_function.await_args.kwargs["arg"] == [STAMP_ELEMENT_ID]


def test_overlays_are_applied_after_loading_and_before_printing(client: TestClient, auth: dict[str, str], browser: MagicMock):
    client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>", "watermarkText": "COPY"}, headers=auth)

    page = browser.created_pages[0]
    call_names = [name for name, _, _ in page.mock_calls if name in ("set_content", "evaluate", "wait_for_function", "pdf")]
    assert call_names == ["set_content", "evaluate", "wait_for_function", "pdf"]


def test_session_is_closed_after_success(client: TestClient, auth: dict[str, str], browser: MagicMock, manager: BrowserManager):
    client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>"}, headers=auth)

    browser.created_pages[0].close.assert_awaited_once()
    browser.created_contexts[0].close.assert_awaited_once()
    assert manager.metrics.total_pdf_generations == 1
    assert manager.metrics.active_sessions == 0


@pytest.mark.parametrize(
    "path,field",
    [("/api/pdf/from-url", "url"), ("/api/pdf/from-html", "htmlContent")],
)
def test_missing_source_is_bad_request(client: TestClient, auth: dict[str, str], browser: MagicMock, path: str, field: str):
    response = client.post(path, data={"watermarkText": "DRAFT"}, headers=auth)

    assert response.status_code == 400
    assert response.headers["content-type"] == "application/problem+json"
    problem = response.json()
    assert problem["status"] == 400
    assert field in problem["title"]
    assert problem["requestId"]
    browser.new_context.assert_not_awaited()


def test_render_failure_returns_generic_error(api_key: str, monkeypatch: pytest.MonkeyPatch):
    def fail_print(page: MagicMock) -> None:
        page.pdf.side_effect = RuntimeError("Protocol error (Page.printToPDF): internal detail /tmp/secret")

    browser = make_browser(on_new_page=fail_print)
    manager = _use_manager(monkeypatch, make_running_manager(browser))

    with TestClient(app) as client:
        response = client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>"}, headers={API_KEY_HEADER: api_key})

    assert response.status_code == 500
    assert response.headers["content-type"] == "application/problem+json"
    assert response.json()["title"] == "Unexpected error while generating the PDF"
    assert "internal detail" not in response.text
    assert "Protocol error" not in response.text
    browser.created_pages[0].close.assert_awaited_once()
    browser.created_contexts[0].close.assert_awaited_once()
    assert manager.metrics.failed_pdf_generations == 1


def test_navigation_error_returns_generic_error(api_key: str, monkeypatch: pytest.MonkeyPatch):
    def fail_navigation(page: MagicMock) -> None:
        page.goto.side_effect = RuntimeError("net::ERR_NAME_NOT_RESOLVED at https://nonexistent.invalid/")

    browser = make_browser(on_new_page=fail_navigation)
    _use_manager(monkeypatch, make_running_manager(browser))

    with TestClient(app) as client:
        response = client.post("/api/pdf/from-url", data={"url": "https://nonexistent.invalid/"}, headers={API_KEY_HEADER: api_key})

    assert response.status_code == 500
    assert "ERR_NAME_NOT_RESOLVED" not in response.text
    browser.created_pages[0].pdf.assert_not_awaited()
    browser.created_contexts[0].close.assert_awaited_once()


def test_playwright_timeout_returns_gateway_timeout(api_key: str, monkeypatch: pytest.MonkeyPatch):
    def slow_navigation(page: MagicMock) -> None:
        page.goto.side_effect = PlaywrightTimeoutError("Timeout 60000ms exceeded.")

    browser = make_browser(on_new_page=slow_navigation)
    manager = _use_manager(monkeypatch, make_running_manager(browser))

    with TestClient(app) as client:
        response = client.post("/api/pdf/from-url", data={"url": "https://example.com"}, headers={API_KEY_HEADER: api_key})

    assert response.status_code == 504
    assert response.json()["title"] == "PDF generation timed out"
    assert manager.metrics.timed_out_pdf_generations == 1
    browser.created_contexts[0].close.assert_awaited_once()


@pytest.mark.usefixtures("short_deadline")
def test_request_deadline_returns_gateway_timeout(api_key: str, monkeypatch: pytest.MonkeyPatch):
    async def hang(**kwargs):  # noqa: ARG001
        await asyncio.sleep(30)

    def hanging_print(page: MagicMock) -> None:
        page.pdf.side_effect = hang

    browser = make_browser(on_new_page=hanging_print)
    manager = _use_manager(monkeypatch, make_running_manager(browser))

    with TestClient(app) as client:
        response = client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>"}, headers={API_KEY_HEADER: api_key})

    assert response.status_code == 504
    assert response.headers["content-type"] == "application/problem+json"
    browser.created_pages[0].close.assert_awaited_once()
    browser.created_contexts[0].close.assert_awaited_once()
    assert manager.metrics.active_sessions == 0


def test_launch_failure_returns_generic_error(api_key: str, monkeypatch: pytest.MonkeyPatch):
    manager = _use_manager(monkeypatch, make_running_manager())
    monkeypatch.setattr(manager, "get_browser", MagicMock(side_effect=RuntimeError("Executable doesn't exist at /ms-playwright/chromium")))

    with TestClient(app) as client:
        response = client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>"}, headers={API_KEY_HEADER: api_key})

    assert response.status_code == 500
    assert "ms-playwright" not in response.text
    assert manager.metrics.active_sessions == 0


# ---------- API key gate on the application ----------


def test_pdf_endpoint_requires_api_key(client: TestClient, browser: MagicMock):
    response = client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>"})

    assert response.status_code == 401
    assert response.text == "API Key is missing"
    browser.new_context.assert_not_awaited()


def test_pdf_endpoint_rejects_wrong_key(client: TestClient, browser: MagicMock, api_key: str):
    response = client.post("/api/pdf/from-url", data={"url": "https://example.com"}, headers={API_KEY_HEADER: api_key[:-1]})

    assert response.status_code == 401
    assert response.text == "Unauthorized client"
    browser.new_context.assert_not_awaited()


def test_unconfigured_key_rejects_requests(manager: BrowserManager):  # noqa: ARG001
    with TestClient(app) as client:
        response = client.post("/api/pdf/from-html", data={"htmlContent": "<p>x</p>"}, headers={API_KEY_HEADER: "anything"})

    assert response.status_code == 500
    assert response.text == "API Key is not configured on the server"


def test_metrics_are_not_served_on_main_app(client: TestClient, auth: dict[str, str]):
    assert client.get("/metrics", headers=auth).status_code == 404


# ---------- Health ----------


def test_health_without_api_key(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "timestamp" in body
    assert "metrics" not in body


def test_health_before_browser_launch(api_key: str, monkeypatch: pytest.MonkeyPatch):  # noqa: ARG001
    _use_manager(monkeypatch, BrowserManager())

    with TestClient(app) as client:
        response = client.get("/health", params={"detailed": "true"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["browser_running"] is False
    assert "chromium_version" not in body


def test_health_detailed(client: TestClient, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PDF_SERVICE_VERSION", "test1")

    response = client.get("/health", params={"detailed": "true"})

    assert response.status_code == 200
    body = response.json()
    assert body["version"] == "test1"
    assert body["browser_running"] is True
    assert body["chromium_version"] == "131.0.6778.69"
    assert body["metrics"]["max_concurrent_sessions"] == 4
    assert body["metrics"]["last_health_status"] is True


def test_health_reports_disconnected_browser(api_key: str, monkeypatch: pytest.MonkeyPatch):  # noqa: ARG001
    _use_manager(monkeypatch, make_running_manager(make_browser(connected=False)))

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


# ---------- Diagnostics ----------


def test_debug_config_requires_api_key(client: TestClient):
    assert client.get("/debug/config").status_code == 401


def test_debug_config_shows_masked_key(client: TestClient, auth: dict[str, str], api_key: str):
    response = client.get("/debug/config", headers=auth)

    assert response.status_code == 200
    body = response.json()
    assert body["apiKeyConfigured"] is True
    assert body["configurationSource"] == "environment"
    assert body["apiKeyMasked"] == api_key[:4] + "*" * (len(api_key) - 8) + api_key[-4:]
    assert api_key not in response.text


def test_version(client: TestClient, auth: dict[str, str], monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PDF_SERVICE_VERSION", "test1")
    monkeypatch.setenv("PDF_SERVICE_BUILD_TIMESTAMP", "2024-01-01T00:00:00Z")

    response = client.get("/version", headers=auth)

    assert response.status_code == 200
    body = response.json()
    assert body["python"]
    assert body["playwright"]
    assert body["pdfService"] == "test1"
    assert body["timestamp"] == "2024-01-01T00:00:00Z"
    assert body["chromium"] == "131.0.6778.69"


def test_version_requires_api_key(client: TestClient):
    assert client.get("/version").status_code == 401


def test_docs_disabled_by_default(client: TestClient, auth: dict[str, str]):
    assert client.get("/api/docs", headers=auth).status_code == 404
    assert client.get("/api/openapi.json", headers=auth).status_code == 404


@pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("false", False), ("", False)])
def test_is_docs_enabled(monkeypatch: pytest.MonkeyPatch, value: str, expected: bool):
    monkeypatch.setenv("PDF_SERVICE_DOCS_ENABLED", value)
    assert is_docs_enabled() is expected


# ---------- Lifespan ----------


def test_browser_is_stopped_on_shutdown(api_key: str, monkeypatch: pytest.MonkeyPatch):  # noqa: ARG001
    browser = make_browser()
    manager = _use_manager(monkeypatch, make_running_manager(browser))

    with TestClient(app):
        assert manager.is_running()

    browser.close.assert_awaited_once()
    assert not manager.is_running()


def test_eager_start_launches_browser_on_startup(api_key: str, monkeypatch: pytest.MonkeyPatch):  # noqa: ARG001
    manager = _use_manager(monkeypatch, BrowserManager())
    manager.eager_start = True
    start = MagicMock(side_effect=lambda: asyncio.sleep(0))
    monkeypatch.setattr(manager, "start", start)

    with TestClient(app):
        start.assert_called_once()


@pytest.mark.asyncio
async def test_failed_eager_start_stops_metrics_server(monkeypatch: pytest.MonkeyPatch):
    manager = _use_manager(monkeypatch, BrowserManager())
    manager.eager_start = True
    monkeypatch.setattr(manager, "start", AsyncMock(side_effect=RuntimeError("Executable doesn't exist")))
    metrics_server = MagicMock(start=AsyncMock(), stop=AsyncMock())
    monkeypatch.setattr(pdf_controller, "is_metrics_server_enabled", lambda: True)
    monkeypatch.setattr(pdf_controller, "MetricsServer", MagicMock(return_value=metrics_server))

    with pytest.raises(RuntimeError, match="Executable doesn't exist"):
        async with pdf_controller.lifespan(app):
            pass

    metrics_server.start.assert_awaited_once()
    metrics_server.stop.assert_awaited_once()

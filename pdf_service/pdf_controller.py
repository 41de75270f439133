import asyncio
import contextlib
import logging
import os
import platform
import time
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request, Response, Security, status
from fastapi.security import APIKeyHeader
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pdf_service import prometheus_metrics
from pdf_service.api_key_gate import API_KEY_HEADER, DEFAULT_EXEMPT_PATHS, ApiKeyMiddleware
from pdf_service.browser_manager import BrowserManager, get_browser_manager
from pdf_service.content_loader import load_from_html, load_from_url
from pdf_service.form_parser import FormParser, MissingFieldError
from pdf_service.metrics_server import MetricsServer, get_metrics_port, is_metrics_server_enabled
from pdf_service.overlay_injector import apply_stamp, apply_watermark, wait_for_overlays
from pdf_service.pdf_renderer import render
from pdf_service.sanitization import mask_secret, sanitize_for_logging, sanitize_url_for_logging
from pdf_service.schemas import BrowserMetricsSchema, DebugConfigSchema, HealthSchema, ProblemSchema, RenderRequest, SourceKind, VersionSchema
from pdf_service.settings import ServiceSettings, get_settings

OUTPUT_FILE_NAME = "generated.pdf"
HTML_PREVIEW_LENGTH = 100

# Stamp edge length per endpoint
STAMP_SIZES_PX = {
    SourceKind.URL: 150,
    SourceKind.HTML: 180,
}

SOURCE_FIELDS = {
    SourceKind.URL: "url",
    SourceKind.HTML: "htmlContent",
}
WATERMARK_FIELD = "watermarkText"
STAMP_FIELD = "stampImageFile"

DOCS_URL = "/api/docs"
OPENAPI_URL = "/api/openapi.json"


def is_docs_enabled() -> bool:
    """True if PDF_SERVICE_DOCS_ENABLED is set to a truthy value."""
    return os.environ.get("PDF_SERVICE_DOCS_ENABLED", "false").lower() in ("true", "1", "yes", "on")


@contextlib.asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncGenerator[None]:  # noqa: ARG001
    """
    Manage the lifecycle of the Chromium browser and the metrics server.

    The browser is launched on the first PDF request unless
    BROWSER_EAGER_START is set, in which case a failing launch stops the
    application from starting. On shutdown the browser is always closed.
    """
    browser_manager = get_browser_manager()
    settings = get_settings()

    if not settings.api_key_configured:
        logger.warning("No API key configured, every protected request will be rejected with 500")

    metrics_server: MetricsServer | None = None
    if is_metrics_server_enabled():
        metrics_server = MetricsServer(port=get_metrics_port())
        try:
            await metrics_server.start()
        except Exception as e:  # noqa: BLE001
            logger.error("Metrics server could not be started: %s", e)
            metrics_server = None

    if browser_manager.eager_start:
        logger.info("Prepare Chromium browser...")
        try:
            await browser_manager.start()
        except BaseException:
            if metrics_server is not None:
                await metrics_server.stop()
            raise
        logger.info("Chromium browser prepared successfully")

    yield  # Application runs here

    try:
        logger.info("Stopping Chromium browser...")
        await browser_manager.stop()
    except Exception as e:  # noqa: BLE001
        logger.error("Error stopping Chromium browser: %s", e)

    if metrics_server is not None:
        await metrics_server.stop()


logger = logging.getLogger(__name__)

_docs_enabled = is_docs_enabled()

app = FastAPI(
    title="PDF Generator API",
    version="1.0.0",
    description="Generates PDFs from URLs or HTML content, with optional watermark and stamp.",
    openapi_url=OPENAPI_URL if _docs_enabled else None,
    docs_url=DOCS_URL if _docs_enabled else None,
    redoc_url=None,
    lifespan=lifespan,
)
app.add_middleware(
    ApiKeyMiddleware,
    exempt_paths=DEFAULT_EXEMPT_PATHS | {DOCS_URL, OPENAPI_URL} if _docs_enabled else DEFAULT_EXEMPT_PATHS,
)

# Documents the header in the OpenAPI schema; the check itself is done by ApiKeyMiddleware
api_key_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False, description="API Key Authentication")


@app.get(
    "/health",
    summary="Health check",
    description="Returns the service status. Use ?detailed=true for browser state and metrics. Does not require an API key.",
    operation_id="getHealth",
    tags=["meta"],
    response_model=HealthSchema,
    response_model_exclude_none=True,
    responses={503: {"model": HealthSchema, "description": "A launched browser has disconnected"}},
)
async def health(
    browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)],
    detailed: bool = Query(False, description="Include browser state and metrics"),
) -> Response:
    """
    Health check endpoint.

    The browser is launched lazily, so a service that has not rendered
    anything yet is healthy. Once launched, the browser has to be connected.
    """
    browser_running = browser_manager.is_running()
    healthy = browser_manager.health_check() if browser_running else True

    health_response = HealthSchema(
        status="healthy" if healthy else "unhealthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    if detailed:
        health_response = health_response.model_copy(
            update={
                "version": os.environ.get("PDF_SERVICE_VERSION", "unknown"),
                "browser_running": browser_running,
                "chromium_version": browser_manager.get_version(),
                "metrics": BrowserMetricsSchema(**browser_manager.get_metrics()),  # type: ignore[arg-type]
            }
        )

    return Response(
        content=health_response.model_dump_json(exclude_none=True),
        media_type="application/json",
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )


@app.get(
    "/debug/config",
    response_model=DebugConfigSchema,
    summary="Configuration diagnostics",
    description="Shows whether an API key is configured, in masked form, and where it was read from.",
    operation_id="getDebugConfig",
    tags=["meta"],
    dependencies=[Security(api_key_scheme)],
)
async def debug_config(settings: Annotated[ServiceSettings, Depends(get_settings)]) -> DebugConfigSchema:
    logger.info("Debug config endpoint called")
    return DebugConfigSchema(
        apiKeyConfigured=settings.api_key_configured,
        apiKeyMasked=mask_secret(settings.api_key),
        configurationSource=settings.configuration_source,
    )


@app.get(
    "/version",
    response_model=VersionSchema,
    summary="Service version information",
    description="Returns versions of Python, Playwright, the service itself, build timestamp, and Chromium.",
    operation_id="getVersion",
    tags=["meta"],
    dependencies=[Security(api_key_scheme)],
)
async def version(browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)]) -> dict[str, str | None]:
    """
    Get version information
    """
    logger.info("Version endpoint called")
    version_info = {
        "python": platform.python_version(),
        "playwright": __get_playwright_version(),
        "pdfService": os.environ.get("PDF_SERVICE_VERSION"),
        "timestamp": os.environ.get("PDF_SERVICE_BUILD_TIMESTAMP"),
        "chromium": browser_manager.get_version(),
    }
    logger.debug("Version info: %s", version_info)
    return version_info


def __pdf_request_body(source_field: str, source_description: str) -> dict:
    return {
        "requestBody": {
            "required": False,
            "description": f"Fields may be sent as query parameters or as multipart/form-data. The {source_field} field is required; {WATERMARK_FIELD} and {STAMP_FIELD} are optional.",
            "content": {
                "multipart/form-data": {
                    "schema": {
                        "type": "object",
                        "properties": {
                            source_field: {"type": "string", "description": source_description},
                            WATERMARK_FIELD: {"type": "string", "description": "Text of a diagonal watermark over every page."},
                            STAMP_FIELD: {"type": "string", "format": "binary", "description": "Image placed in the bottom-right corner of every page."},
                        },
                        "required": [source_field],
                    }
                }
            },
        }
    }


__PDF_RESPONSES: dict = {
    200: {"content": {"application/pdf": {}}, "description": "Generated PDF"},
    400: {"model": ProblemSchema, "description": "Missing required input"},
    401: {"content": {"text/plain": {}}, "description": "API key missing or invalid"},
    500: {"model": ProblemSchema, "description": "PDF generation failed or API key not configured"},
    504: {"model": ProblemSchema, "description": "PDF generation exceeded the request deadline"},
}


@app.post(
    "/api/pdf/from-url",
    responses=__PDF_RESPONSES,
    summary="Generate PDF from URL",
    description="Loads the given URL in headless Chromium and prints it to an A4 PDF, optionally with watermark and stamp.",
    operation_id="pdfFromUrl",
    tags=["pdf"],
    dependencies=[Security(api_key_scheme)],
    openapi_extra=__pdf_request_body(SOURCE_FIELDS[SourceKind.URL], "Address of the page to print."),
)
async def pdf_from_url(
    request: Request,
    browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)],
    settings: Annotated[ServiceSettings, Depends(get_settings)],
) -> Response:
    return await __handle_pdf_request(request, SourceKind.URL, browser_manager, settings)


@app.post(
    "/api/pdf/from-html",
    responses=__PDF_RESPONSES,
    summary="Generate PDF from HTML",
    description="Loads the given HTML document in headless Chromium and prints it to an A4 PDF, optionally with watermark and stamp.",
    operation_id="pdfFromHtml",
    tags=["pdf"],
    dependencies=[Security(api_key_scheme)],
    openapi_extra=__pdf_request_body(SOURCE_FIELDS[SourceKind.HTML], "Complete HTML document to print."),
)
async def pdf_from_html(
    request: Request,
    browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)],
    settings: Annotated[ServiceSettings, Depends(get_settings)],
) -> Response:
    return await __handle_pdf_request(request, SourceKind.HTML, browser_manager, settings)


async def __handle_pdf_request(request: Request, source_kind: SourceKind, browser_manager: BrowserManager, settings: ServiceSettings) -> Response:
    request_id = uuid.uuid4().hex
    start_time = time.time()
    logger.info("PDF generation from %s requested (request id: %s)", source_kind.value, request_id)

    try:
        render_request = await __parse_render_request(request, source_kind)
    except MissingFieldError as e:
        logger.warning("Invalid PDF request %s: %s", request_id, e)
        prometheus_metrics.increment_pdf_generation_failure(source_kind.value, "invalid_request")
        return __problem(str(e), status.HTTP_400_BAD_REQUEST, request_id)

    try:
        output_pdf = await asyncio.wait_for(
            __generate_pdf(render_request, browser_manager, settings),
            timeout=settings.request_timeout,
        )
    except (TimeoutError, PlaywrightTimeoutError) as e:
        logger.error("PDF generation %s timed out after %ds%s: %s", request_id, settings.request_timeout, __source_for_logging(render_request), e)
        browser_manager.metrics.record_failure(timed_out=True)
        prometheus_metrics.increment_pdf_generation_failure(source_kind.value, "timeout")
        return __problem("PDF generation timed out", status.HTTP_504_GATEWAY_TIMEOUT, request_id)
    except Exception as e:
        logger.error("PDF generation %s failed%s: %s", request_id, __source_for_logging(render_request), e, exc_info=True)
        browser_manager.metrics.record_failure()
        prometheus_metrics.increment_pdf_generation_failure(source_kind.value, "render_error")
        return __problem("Unexpected error while generating the PDF", status.HTTP_500_INTERNAL_SERVER_ERROR, request_id)

    duration = time.time() - start_time
    browser_manager.metrics.record_success(duration * 1000)
    prometheus_metrics.increment_pdf_generation_success(source_kind.value, duration)
    logger.info("PDF %s generated successfully in %.0fms, size: %d bytes", request_id, duration * 1000, len(output_pdf))

    return __create_response(output_pdf, request_id)


async def __parse_render_request(request: Request, source_kind: SourceKind) -> RenderRequest:
    form_parser = FormParser()
    form = await form_parser.parse(request)

    source = form_parser.text_field(form, request, SOURCE_FIELDS[source_kind], required=True)
    watermark_text = form_parser.text_field(form, request, WATERMARK_FIELD)
    stamp_image, stamp_content_type = await form_parser.file_field(form, STAMP_FIELD)

    return RenderRequest(
        source_kind=source_kind,
        source=source,
        watermark_text=watermark_text,
        stamp_image=stamp_image,
        stamp_content_type=stamp_content_type,
    )


async def __generate_pdf(render_request: RenderRequest, browser_manager: BrowserManager, settings: ServiceSettings) -> bytes:
    timeout_ms = settings.request_timeout * 1000

    async with browser_manager.session() as page:
        if render_request.source_kind is SourceKind.URL:
            await load_from_url(page, render_request.source, timeout_ms)
        else:
            await load_from_html(page, render_request.source, timeout_ms)

        overlay_ids: list[str] = []
        watermark_id = await apply_watermark(page, render_request.watermark_text)
        if watermark_id:
            overlay_ids.append(watermark_id)
        stamp_id = await apply_stamp(page, render_request.stamp_image, render_request.stamp_content_type, STAMP_SIZES_PX[render_request.source_kind])
        if stamp_id:
            overlay_ids.append(stamp_id)
        await wait_for_overlays(page, overlay_ids, settings.overlay_ready_timeout)

        return await render(page)


def __source_for_logging(render_request: RenderRequest) -> str:
    if render_request.source_kind is SourceKind.URL:
        return f" (url: {sanitize_url_for_logging(render_request.source)})"
    return f" (html: {sanitize_for_logging(render_request.source, max_length=HTML_PREVIEW_LENGTH)})"


def __create_response(output_pdf: bytes, request_id: str) -> Response:
    response = Response(output_pdf, media_type="application/pdf", status_code=status.HTTP_200_OK)
    response.headers.append("Content-Disposition", f"attachment; filename={OUTPUT_FILE_NAME}")
    response.headers.append("X-Request-ID", request_id)
    return response


def __problem(title: str, status_code: int, request_id: str) -> Response:
    problem = ProblemSchema(title=title, status=status_code, requestId=request_id)
    return Response(problem.model_dump_json(), media_type="application/problem+json", status_code=status_code)


def __get_playwright_version() -> str | None:
    try:
        return package_version("playwright")
    except PackageNotFoundError:
        return None

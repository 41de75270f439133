import enum

from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, enum.Enum):
    """Where the document of a PDF request comes from"""

    URL = "url"
    HTML = "html"


class RenderRequest(BaseModel):
    """A validated PDF request, immutable once received"""

    model_config = ConfigDict(frozen=True)

    source_kind: SourceKind = Field(title="Source Kind", description="Whether the source is a URL or inline HTML")
    source: str = Field(title="Source", description="URL to navigate to or HTML markup to load", min_length=1)
    watermark_text: str | None = Field(default=None, title="Watermark Text", description="Text of the diagonal watermark")
    stamp_image: bytes | None = Field(default=None, title="Stamp Image", description="Image placed in the bottom-right corner")
    stamp_content_type: str | None = Field(default=None, title="Stamp Content Type", description="Declared content type of the stamp image")


class VersionSchema(BaseModel):
    """Schema for response /version"""

    python: str = Field(title="Python", description="Python version")
    playwright: str | None = Field(title="Playwright", description="Playwright version")
    pdfService: str | None = Field(title="PDF Service", description="Service version")
    timestamp: str | None = Field(title="Build Timestamp", description="Build timestamp")
    chromium: str | None = Field(title="Chromium", description="Chromium version")


class DebugConfigSchema(BaseModel):
    """Schema for response /debug/config"""

    apiKeyConfigured: bool = Field(title="API Key Configured", description="Whether a shared secret is configured")
    apiKeyMasked: str = Field(title="API Key (masked)", description="Configured key with all but the first and last four characters masked")
    configurationSource: str = Field(title="Configuration Source", description="Where the key was read from: environment, config_file or none")


class BrowserMetricsSchema(BaseModel):
    """Schema for browser performance and health metrics"""

    pdf_generations: int = Field(title="PDF Generations", description="Total successful PDF generations")
    failed_pdf_generations: int = Field(title="Failed PDF Generations", description="Total failed PDF generation attempts")
    timed_out_pdf_generations: int = Field(title="Timed Out PDF Generations", description="Failed generations that exceeded the request deadline")
    error_pdf_generation_rate_percent: float = Field(title="PDF Generation Error Rate (%)", description="PDF generation error rate as percentage")
    avg_pdf_generation_time_ms: float = Field(title="Avg PDF Generation Time (ms)", description="Average PDF generation time in milliseconds")

    total_browser_launches: int = Field(title="Browser Launches", description="Successful Chromium launches since startup")
    total_browser_restarts: int = Field(title="Browser Restarts", description="Chromium relaunches after a disconnect")
    sessions_opened: int = Field(title="Sessions Opened", description="Browser sessions (context + page) created")
    sessions_closed: int = Field(title="Sessions Closed", description="Browser sessions released")

    last_health_check: str = Field(title="Last Health Check", description="Formatted timestamp of last health check (HH:MM:SS DD.MM.YYYY)")
    last_health_status: bool = Field(title="Last Health Status", description="Result of last health check (true=healthy)")
    consecutive_failures: int = Field(title="Consecutive Failures", description="PDF generations failed in a row")
    uptime_seconds: float = Field(title="Uptime (seconds)", description="Browser uptime in seconds")

    total_memory_mb: float = Field(title="Total Memory (MB)", description="Total system memory in MB")
    available_memory_mb: float = Field(title="Available Memory (MB)", description="Available system memory in MB")

    queue_size: int = Field(title="Queue Size", description="Current number of requests waiting for a session")
    max_queue_size: int = Field(title="Max Queue Size", description="Largest queue observed")
    active_sessions: int = Field(title="Active Sessions", description="Current number of open sessions")
    avg_queue_time_ms: float = Field(title="Avg Queue Time (ms)", description="Average time requests wait for a session (milliseconds)")
    max_concurrent_sessions: int = Field(title="Max Concurrent Sessions", description="Maximum allowed concurrent sessions (configured limit)")


class HealthSchema(BaseModel):
    """Schema for response /health; browser fields are only set for detailed responses"""

    status: str = Field(title="Status", description="Overall health status: healthy or unhealthy")
    timestamp: str = Field(title="Timestamp", description="Time of the check (ISO 8601, UTC)")
    version: str | None = Field(default=None, title="Version", description="PDF service version")
    browser_running: bool | None = Field(default=None, title="Browser Running", description="Whether Chromium has been launched")
    chromium_version: str | None = Field(default=None, title="Chromium Version", description="Chromium version if available")
    metrics: BrowserMetricsSchema | None = Field(default=None, title="Metrics", description="Performance and health metrics")


class ProblemSchema(BaseModel):
    """Generic error body, never carrying internal exception detail"""

    title: str = Field(title="Title", description="Short description of the problem")
    status: int = Field(title="Status", description="HTTP status code")
    requestId: str | None = Field(default=None, title="Request ID", description="Identifier to correlate with server logs")

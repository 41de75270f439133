"""
Prometheus collectors for PDF generations, the API key gate and the shared browser.

Counters and the histogram are driven by events as they happen. Gauges mirror
BrowserManager state and are refreshed on every scrape of /metrics.
"""

import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, Info

if TYPE_CHECKING:
    from pdf_service.browser_manager import BrowserManager


logger = logging.getLogger(__name__)


# PDF generations, only changed through the increment_* helpers below
pdf_generations_total = Counter(
    "pdf_generations_total",
    "Total number of successful PDF generations",
    ["source"],
)

pdf_generation_failures_total = Counter(
    "pdf_generation_failures_total",
    "Total number of failed PDF generations",
    ["source", "reason"],
)

pdf_generation_duration_seconds = Histogram(
    "pdf_generation_duration_seconds",
    "PDF generation duration in seconds",
    ["source"],
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

api_key_rejections_total = Counter(
    "api_key_rejections_total",
    "Total number of requests rejected by the API key gate",
    ["reason"],
)

# Browser lifecycle
browser_launches_total = Counter(
    "browser_launches_total",
    "Total number of Chromium browser launches",
)

browser_restarts_total = Counter(
    "browser_restarts_total",
    "Total number of Chromium relaunches after a disconnect",
)

pdf_generation_error_rate_percent = Gauge(
    "pdf_generation_error_rate_percent",
    "PDF generation error rate as percentage",
)

avg_pdf_generation_time_seconds = Gauge(
    "avg_pdf_generation_time_seconds",
    "Average PDF generation time in seconds",
)

uptime_seconds = Gauge(
    "uptime_seconds",
    "Browser uptime in seconds",
)

system_memory_total_bytes = Gauge(
    "system_memory_total_bytes",
    "Total system memory in bytes",
)

system_memory_available_bytes = Gauge(
    "system_memory_available_bytes",
    "Available system memory in bytes",
)

# Sessions
queue_size = Gauge(
    "queue_size",
    "Current number of requests waiting for a browser session",
)

active_sessions = Gauge(
    "active_sessions",
    "Current number of open browser sessions",
)

chromium_info = Info(
    "chromium",
    "Chromium browser information",
)


def increment_pdf_generation_success(source: str, duration_seconds: float) -> None:
    """Increment successful PDF generation counter and record duration."""
    pdf_generations_total.labels(source=source).inc()
    pdf_generation_duration_seconds.labels(source=source).observe(duration_seconds)


def increment_pdf_generation_failure(source: str, reason: str) -> None:
    """Increment failed PDF generation counter."""
    pdf_generation_failures_total.labels(source=source, reason=reason).inc()


def increment_api_key_rejection(reason: str) -> None:
    api_key_rejections_total.labels(reason=reason).inc()


def increment_browser_launch() -> None:
    browser_launches_total.inc()


def increment_browser_restart() -> None:
    browser_restarts_total.inc()


MIB = 1024 * 1024

# gauge -> (get_metrics() key, scale)
_GAUGE_SOURCES: tuple[tuple[Gauge, str, float], ...] = (
    (pdf_generation_error_rate_percent, "error_pdf_generation_rate_percent", 1.0),
    (avg_pdf_generation_time_seconds, "avg_pdf_generation_time_ms", 1 / 1000),
    (uptime_seconds, "uptime_seconds", 1.0),
    (system_memory_total_bytes, "total_memory_mb", MIB),
    (system_memory_available_bytes, "available_memory_mb", MIB),
    (queue_size, "queue_size", 1.0),
    (active_sessions, "active_sessions", 1.0),
)


def update_gauges_from_browser_manager(browser_manager: "BrowserManager") -> None:
    """
    Copy the current BrowserManager state into the gauges before a scrape.

    Counters are left alone. A failure is logged and leaves the previous
    gauge values in place.
    """
    try:
        metrics = browser_manager.get_metrics()
        for gauge, key, scale in _GAUGE_SOURCES:
            gauge.set(float(metrics[key]) * scale)

        version = browser_manager.get_version()
        if version:
            chromium_info.info({"version": version})
    except Exception as e:
        logger.error("Failed to update Prometheus gauges: %s", e, exc_info=True)
        return

    logger.debug("Prometheus gauges updated from BrowserManager")

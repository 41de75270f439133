"""
Headless Chromium management via Playwright.

This module provides a BrowserManager that owns one persistent Chromium
browser per process and hands out isolated browsing sessions (a fresh
context and page) to PDF requests. The browser is launched lazily on first
use through a single-flight launch task, so concurrent first requests share
one launch instead of racing duplicate browser processes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import psutil
from playwright.async_api import async_playwright

from pdf_service import prometheus_metrics

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from playwright.async_api import Browser, BrowserContext, Page, Playwright

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-dev-shm-usage",
    "--hide-scrollbars",
]


@dataclass
class BrowserConfig:
    """
    Configuration settings for BrowserManager.

    Attributes:
        max_concurrent_sessions: Maximum number of simultaneously open sessions (1-100, default 10).
        eager_start: Launch the browser during application startup instead of on first use (default False).
    """

    max_concurrent_sessions: int | None = None
    eager_start: bool | None = None


@dataclass
class BrowserMetrics:
    """
    Metrics for browser health, PDF generation and session usage.

    Attributes:
        total_pdf_generations: Total number of successful PDF generations since start.
        failed_pdf_generations: Total number of failed PDF generations since start.
        timed_out_pdf_generations: Failed generations that exceeded the request deadline.
        avg_pdf_generation_time_ms: Average PDF generation time in milliseconds.
        total_pdf_generation_time_ms: Total time spent on PDF generations (for averaging).
        total_browser_launches: Number of successful browser launches.
        total_browser_restarts: Number of relaunches after the browser disconnected.
        sessions_opened: Number of sessions (context + page) created.
        sessions_closed: Number of sessions released.
        last_health_check: Timestamp of last health check.
        last_health_status: Result of last health check (True=healthy, False=unhealthy).
        consecutive_failures: Number of consecutive generation failures.
        uptime_seconds: Time since the browser was launched (in seconds).
        queue_size: Current number of requests waiting for a session slot.
        max_queue_size: Maximum queue size observed.
        active_sessions: Current number of open sessions.
        total_queue_time_ms: Total time requests spent waiting for a slot (for averaging).
        avg_queue_time_ms: Average time requests wait for a slot.
    """

    total_pdf_generations: int = 0
    failed_pdf_generations: int = 0
    timed_out_pdf_generations: int = 0
    avg_pdf_generation_time_ms: float = 0.0
    total_pdf_generation_time_ms: float = 0.0

    total_browser_launches: int = 0
    total_browser_restarts: int = 0
    sessions_opened: int = 0
    sessions_closed: int = 0
    last_health_check: float = 0.0
    last_health_status: bool = False
    consecutive_failures: int = 0
    uptime_seconds: float = 0.0
    start_time: float = field(default_factory=time.time)

    queue_size: int = 0
    max_queue_size: int = 0
    active_sessions: int = 0
    total_queue_time_ms: float = 0.0
    avg_queue_time_ms: float = 0.0

    def record_success(self, duration_ms: float) -> None:
        """Record a successful PDF generation."""
        self.total_pdf_generations += 1
        self.consecutive_failures = 0
        self.total_pdf_generation_time_ms += duration_ms
        self.avg_pdf_generation_time_ms = self.total_pdf_generation_time_ms / self.total_pdf_generations

    def record_failure(self, timed_out: bool = False) -> None:
        """Record a failed PDF generation."""
        self.failed_pdf_generations += 1
        self.consecutive_failures += 1
        if timed_out:
            self.timed_out_pdf_generations += 1

    def record_launch(self) -> None:
        self.total_browser_launches += 1
        self.reset_start_time()

    def record_restart(self) -> None:
        self.total_browser_restarts += 1

    def record_health_check(self, is_healthy: bool) -> None:
        self.last_health_check = time.time()
        self.last_health_status = is_healthy

    def update_uptime(self) -> None:
        self.uptime_seconds = time.time() - self.start_time

    def reset_start_time(self) -> None:
        self.start_time = time.time()
        self.uptime_seconds = 0.0

    def get_error_rate(self) -> float:
        """Calculate PDF generation error rate as percentage."""
        total_attempts = self.total_pdf_generations + self.failed_pdf_generations
        if total_attempts == 0:
            return 0.0
        return (self.failed_pdf_generations / total_attempts) * 100.0

    def record_queue_entry(self, queue_time_ms: float) -> None:
        """
        Record the time a request waited before it got a session slot.

        Args:
            queue_time_ms: Time spent waiting in queue in milliseconds.
        """
        self.total_queue_time_ms += queue_time_ms
        if self.sessions_opened > 0:
            self.avg_queue_time_ms = self.total_queue_time_ms / self.sessions_opened

    def update_queue_metrics(self, queue_size: int, active_sessions: int) -> None:
        self.queue_size = queue_size
        self.active_sessions = active_sessions
        self.max_queue_size = max(self.max_queue_size, queue_size)


def _retrieve_launch_exception(task: asyncio.Task[Browser]) -> None:
    # Every waiter may have been cancelled before a failed launch finished
    if not task.cancelled():
        task.exception()


class BrowserManager:
    """
    Owner of the process-wide headless Chromium browser.

    The browser is shared read-only by all requests; every request works in
    its own session obtained from ``session()``, which is always closed when
    the request finishes, fails or is cancelled.
    """

    def __init__(
        self,
        config: BrowserConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize BrowserManager.

        Args:
            config: Configuration settings. If None, creates default config from environment variables.
            logger: Optional logger; if None, a module-level logger is used.
        """
        self.log = logger or logging.getLogger(__name__)

        if config is None:
            config = BrowserConfig()

        self.max_concurrent_sessions = self._validate_max_concurrent_sessions(config.max_concurrent_sessions)
        self.eager_start = self._validate_eager_start(config.eager_start)

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._launch_task: asyncio.Task[Browser] | None = None
        self._semaphore = asyncio.Semaphore(self.max_concurrent_sessions)
        self._metrics = BrowserMetrics()

        # Track waiting and active sessions
        self._waiting_in_queue = 0
        self._active_sessions = 0
        self._queue_lock = asyncio.Lock()

    @property
    def metrics(self) -> BrowserMetrics:
        return self._metrics

    async def get_browser(self) -> Browser:
        """
        Return the launched browser, launching it on first use.

        Concurrent callers await the same in-flight launch. A failed launch
        propagates to every waiting caller and is not retried here; the next
        call after a failure starts a new launch. A browser that reports
        itself disconnected is relaunched the same way.

        Returns:
            The shared Playwright Browser.
        """
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        if self._launch_task is None or self._launch_task.done():
            if self._browser is not None:
                self.log.warning("Chromium browser disconnected, relaunching...")
                self._metrics.record_restart()
                prometheus_metrics.increment_browser_restart()
            self._launch_task = asyncio.create_task(self._launch())
            self._launch_task.add_done_callback(_retrieve_launch_exception)

        # Shield the shared task so that one cancelled request does not abort the launch for the others
        return await asyncio.shield(self._launch_task)

    async def start(self) -> None:
        """Launch the browser now instead of on the first request."""
        await self.get_browser()

    async def _launch(self) -> Browser:
        await self._close_browser()

        try:
            self.log.info("Starting Chromium browser process via Playwright...")
            playwright = await async_playwright().start()
        except ImportError as e:
            self.log.error("Playwright not installed: %s", e)
            raise RuntimeError("Playwright library is required for BrowserManager") from e
        except Exception as e:
            self.log.error("Failed to start Playwright: %s", e)
            raise

        try:
            browser = await playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
        except BaseException as e:
            self.log.error("Failed to launch Chromium: %s", e)
            with contextlib.suppress(Exception):
                await playwright.stop()
            raise

        self._playwright = playwright
        self._browser = browser
        self._metrics.record_launch()
        prometheus_metrics.increment_browser_launch()
        self.log.info("Chromium browser started successfully")
        return browser

    async def stop(self) -> None:
        """Stop the browser and Playwright, waiting for or cancelling a pending launch."""
        if self._launch_task is not None and not self._launch_task.done():
            self.log.info("Cancelling pending Chromium launch...")
            self._launch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._launch_task
        self._launch_task = None

        if self._browser is None and self._playwright is None:
            return

        await self._close_browser()
        self.log.info("Chromium browser stopped successfully")

    async def _close_browser(self) -> None:
        """Close browser and Playwright, logging errors instead of raising them."""
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:  # noqa: BLE001
                self.log.error("Error closing browser: %s", e)
            finally:
                self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:  # noqa: BLE001
                self.log.error("Error stopping Playwright: %s", e)
            finally:
                self._playwright = None

    def is_running(self) -> bool:
        """Check if a browser has been launched and not stopped."""
        return self._browser is not None

    def health_check(self) -> bool:
        """
        Perform a health check on the Chromium browser.

        Returns:
            True if the browser is launched and connected, False otherwise.
        """
        try:
            is_healthy = self._browser is not None and self._browser.is_connected()
            self._metrics.record_health_check(is_healthy)
            return is_healthy
        except Exception as e:  # noqa: BLE001
            self.log.error("Health check failed: %s", e)
            self._metrics.record_health_check(False)
            return False

    def get_version(self) -> str | None:
        """
        Get the Chromium browser version.

        Returns:
            Chromium version string (e.g., "131.0.6778.69") or None if browser is not running.
        """
        try:
            if self._browser is None:
                return None

            version_string = self._browser.version
            # Extract version number from "HeadlessChrome/131.0.6778.69" format
            if "/" in version_string:
                return version_string.split("/")[1]
            return version_string
        except Exception as e:  # noqa: BLE001
            self.log.error("Failed to get Chromium version: %s", e)
            return None

    async def _cleanup_session_resources(self, page: Page | None, context: BrowserContext | None) -> None:
        """Close page and context, logging instead of raising so that both get closed."""
        if page is not None:
            try:
                await page.close()
            except Exception as e:  # noqa: BLE001
                self.log.warning("Error closing page: %s", e)

        if context is not None:
            try:
                await context.close()
            except Exception as e:  # noqa: BLE001
                self.log.warning("Error closing context: %s", e)
            self._metrics.sessions_closed += 1

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[Page]:
        """
        Context manager for an isolated browsing session.

        Yields:
            A Playwright Page inside its own BrowserContext.

        Note:
            The page and its context are closed exactly once when leaving the
            block, whether it ends normally, raises or is cancelled. A
            semaphore limits the number of simultaneously open sessions.
        """
        queue_entry_time = time.time()

        async with self._queue_lock:
            self._waiting_in_queue += 1
            self._metrics.update_queue_metrics(self._waiting_in_queue, self._active_sessions)

        acquired = False
        try:
            await self._semaphore.acquire()
            acquired = True
        finally:
            async with self._queue_lock:
                self._waiting_in_queue -= 1
                if acquired:
                    self._active_sessions += 1
                self._metrics.update_queue_metrics(self._waiting_in_queue, self._active_sessions)

        context: BrowserContext | None = None
        page: Page | None = None
        try:
            browser = await self.get_browser()
            context = await browser.new_context()
            self._metrics.sessions_opened += 1
            self._metrics.record_queue_entry((time.time() - queue_entry_time) * 1000)
            page = await context.new_page()
            yield page
        except asyncio.CancelledError:
            self.log.warning("Session cancelled (timeout or client disconnect), cleaning up page and context")
            raise
        finally:
            await self._cleanup_session_resources(page, context)
            async with self._queue_lock:
                self._active_sessions -= 1
                self._metrics.update_queue_metrics(self._waiting_in_queue, self._active_sessions)
            self._semaphore.release()

    def get_metrics(self) -> dict[str, float | int | bool | str]:
        """
        Get current metrics for monitoring and observability.

        Returns:
            Dictionary containing current metrics:
            - pdf_generations: Total successful PDF generations
            - failed_pdf_generations: Total failed PDF generations
            - timed_out_pdf_generations: Failed generations that hit the request deadline
            - error_pdf_generation_rate_percent: PDF generation error rate as percentage
            - avg_pdf_generation_time_ms: Average PDF generation time
            - total_browser_launches: Successful browser launches
            - total_browser_restarts: Relaunches after a disconnect
            - sessions_opened / sessions_closed: Session lifecycle counters
            - last_health_check: Formatted timestamp of last health check
            - last_health_status: Result of last health check
            - consecutive_failures: Current consecutive failures count
            - uptime_seconds: Browser uptime in seconds
            - total_memory_mb / available_memory_mb: System memory in MB
            - queue_size, max_queue_size, active_sessions, avg_queue_time_ms: Session queue state
            - max_concurrent_sessions: Configured session limit
        """
        self._metrics.update_uptime()

        system_memory = psutil.virtual_memory()
        total_memory_mb = system_memory.total / (1024 * 1024)
        available_memory_mb = system_memory.available / (1024 * 1024)

        last_health_check_str = ""
        if self._metrics.last_health_check > 0:
            dt = datetime.fromtimestamp(self._metrics.last_health_check)
            last_health_check_str = dt.strftime("%H:%M:%S %d.%m.%Y")

        return {
            "pdf_generations": self._metrics.total_pdf_generations,
            "failed_pdf_generations": self._metrics.failed_pdf_generations,
            "timed_out_pdf_generations": self._metrics.timed_out_pdf_generations,
            "error_pdf_generation_rate_percent": round(self._metrics.get_error_rate(), 2),
            "avg_pdf_generation_time_ms": round(self._metrics.avg_pdf_generation_time_ms, 2),
            "total_browser_launches": self._metrics.total_browser_launches,
            "total_browser_restarts": self._metrics.total_browser_restarts,
            "sessions_opened": self._metrics.sessions_opened,
            "sessions_closed": self._metrics.sessions_closed,
            "last_health_check": last_health_check_str,
            "last_health_status": self._metrics.last_health_status,
            "consecutive_failures": self._metrics.consecutive_failures,
            "uptime_seconds": round(self._metrics.uptime_seconds, 2) if self.is_running() else 0.0,
            "total_memory_mb": round(total_memory_mb, 2),
            "available_memory_mb": round(available_memory_mb, 2),
            "queue_size": self._metrics.queue_size,
            "max_queue_size": self._metrics.max_queue_size,
            "active_sessions": self._metrics.active_sessions,
            "avg_queue_time_ms": round(self._metrics.avg_queue_time_ms, 2),
            "max_concurrent_sessions": self.max_concurrent_sessions,
        }

    def _validate_max_concurrent_sessions(self, value: int | None) -> int:
        """
        Validate max concurrent sessions.

        Args:
            value: Max concurrent sessions or None to read from env.

        Returns:
            Validated max concurrent sessions (1 - 100).
        """
        default, min_value, max_value = 10, 1, 100
        if value is None:
            value = self._parse_int(os.environ.get("MAX_CONCURRENT_SESSIONS"), default)
        else:
            value = int(value)

        if not (min_value <= value <= max_value):
            self.log.warning("MAX_CONCURRENT_SESSIONS must be between %s and %s, using default: %s", min_value, max_value, default)
            return default

        return value

    def _validate_eager_start(self, value: bool | None) -> bool:
        """
        Validate eager start flag.

        Args:
            value: Enable flag or None to read from env.

        Returns:
            Validated flag (default False).
        """
        if value is not None:
            return bool(value)

        env_value = os.environ.get("BROWSER_EAGER_START")
        if env_value is None:
            return False

        return env_value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    def _parse_int(value: str | None, default: int) -> int:
        """Parse a string to int with a default fallback."""
        try:
            return int(value) if value is not None else default
        except (ValueError, TypeError):
            return default


# Global singleton instance
_browser_manager: BrowserManager | None = None


def get_browser_manager() -> BrowserManager:
    """
    Get the global BrowserManager singleton instance.

    Returns:
        The BrowserManager instance.

    Note:
        This is intended for dependency injection in FastAPI endpoints.
    """
    global _browser_manager  # noqa: PLW0603
    if _browser_manager is None:
        _browser_manager = BrowserManager()
    return _browser_manager

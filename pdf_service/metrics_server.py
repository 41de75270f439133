"""
Dedicated metrics server for Prometheus metrics endpoint.

This module provides a separate FastAPI application serving only the /metrics
endpoint on a dedicated port. The metrics port is not behind the API key gate,
so it is kept off the public API port and isolated at network level instead.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pdf_service.browser_manager import BrowserManager, get_browser_manager
from pdf_service.prometheus_metrics import update_gauges_from_browser_manager

logger = logging.getLogger(__name__)

MIN_VALID_PORT = 1024
MAX_VALID_PORT = 65535
DEFAULT_METRICS_PORT = 9180
STARTUP_TIMEOUT_SECONDS = 10.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

metrics_app = FastAPI(
    title="PDF Generator Metrics",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@metrics_app.get("/metrics")
async def metrics(browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)]) -> Response:
    """
    Expose Prometheus metrics endpoint.

    Counters are incremented when events occur. This endpoint only updates
    gauges to reflect current state (memory, queue size, open sessions).
    """
    update_gauges_from_browser_manager(browser_manager)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def get_metrics_port() -> int:
    """
    Get metrics server port from environment variable.

    Returns:
        Port number from METRICS_PORT env var (default: 9180).
        Falls back to default if invalid value provided.
    """
    port_str = os.environ.get("METRICS_PORT", str(DEFAULT_METRICS_PORT))
    try:
        port = int(port_str)
        if not (MIN_VALID_PORT <= port <= MAX_VALID_PORT):
            logger.warning("METRICS_PORT must be between %d and %d, using default: %d", MIN_VALID_PORT, MAX_VALID_PORT, DEFAULT_METRICS_PORT)
            return DEFAULT_METRICS_PORT
        return port
    except ValueError:
        logger.warning("Invalid METRICS_PORT value '%s', using default: %d", port_str, DEFAULT_METRICS_PORT)
        return DEFAULT_METRICS_PORT


def is_metrics_server_enabled() -> bool:
    """True if METRICS_SERVER_ENABLED is not set or set to a truthy value."""
    env_value = os.environ.get("METRICS_SERVER_ENABLED", "true")
    return env_value.lower() in ("true", "1", "yes", "on")


class MetricsServer:
    """Runs ``metrics_app`` on its own port as a background uvicorn task."""

    def __init__(
        self,
        port: int = DEFAULT_METRICS_PORT,
        startup_timeout: float = STARTUP_TIMEOUT_SECONDS,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
    ) -> None:
        self.port = port
        self.startup_timeout = startup_timeout
        self.shutdown_timeout = shutdown_timeout
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        """
        Start serving and wait until uvicorn reports it is listening.

        Raises:
            TimeoutError: if the server is not listening within ``startup_timeout``.
        """
        if self._task is not None:
            logger.warning("Metrics server on port %d is already running", self.port)
            return

        self._server = uvicorn.Server(uvicorn.Config(app=metrics_app, host="", port=self.port, log_level="warning"))
        self._task = asyncio.create_task(self._server.serve(), name="metrics-server")

        try:
            await asyncio.wait_for(self._wait_until_listening(self._server), timeout=self.startup_timeout)
        except TimeoutError:
            logger.error("Metrics server did not start on port %d within %.1f seconds", self.port, self.startup_timeout)
            await self.stop()
            raise

        logger.info("Metrics server started on port %d", self.port)

    @staticmethod
    async def _wait_until_listening(server: uvicorn.Server) -> None:
        while not server.started:
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        """Ask uvicorn to exit, cancelling the task if it does not finish within ``shutdown_timeout``."""
        task, self._task = self._task, None
        if task is None:
            return

        if self._server is not None:
            self._server.should_exit = True
            self._server = None

        try:
            await asyncio.wait_for(task, timeout=self.shutdown_timeout)
        except TimeoutError:
            logger.warning("Metrics server did not exit within %.1f seconds, task cancelled", self.shutdown_timeout)

        logger.info("Metrics server on port %d stopped", self.port)

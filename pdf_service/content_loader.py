"""Load the source document of a PDF request into a browser page."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pdf_service.sanitization import sanitize_url_for_logging

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

WAIT_UNTIL = "networkidle"


async def load_from_url(page: Page, url: str, timeout_ms: float) -> None:
    """
    Navigate the page to ``url`` and wait until the network is idle.

    Raises:
        playwright.async_api.Error: If navigation fails.
        playwright.async_api.TimeoutError: If the page does not settle within ``timeout_ms``.
    """
    logger.debug("Navigating to %s (timeout: %dms)", sanitize_url_for_logging(url), timeout_ms)
    await page.goto(url, wait_until=WAIT_UNTIL, timeout=timeout_ms)
    logger.debug("Page loaded from URL")


async def load_from_html(page: Page, html: str, timeout_ms: float) -> None:
    """Replace the page document with ``html`` and wait until the network is idle."""
    logger.debug("Setting page content from HTML of %d characters (timeout: %dms)", len(html), timeout_ms)
    await page.set_content(html, wait_until=WAIT_UNTIL, timeout=timeout_ms)
    logger.debug("Page loaded from HTML")

"""Print the current page state to PDF."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

PAPER_FORMAT = "A4"
PAGE_MARGIN = "1cm"


async def render(page: Page) -> bytes:
    """
    Render the page as an A4 PDF with backgrounds and 1cm margins.

    Playwright's ``page.pdf`` takes no timeout; callers bound it with the
    request deadline.
    """
    pdf_bytes = await page.pdf(
        format=PAPER_FORMAT,
        print_background=True,
        margin={"top": PAGE_MARGIN, "right": PAGE_MARGIN, "bottom": PAGE_MARGIN, "left": PAGE_MARGIN},
    )
    logger.debug("Rendered PDF of %d bytes", len(pdf_bytes))
    return pdf_bytes

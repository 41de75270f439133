"""
Watermark and stamp overlays.

Overlays are added to the loaded page by running constant scripts in the
page. User-provided values (watermark text, stamp image) are passed to
``page.evaluate`` as its structured argument and assigned through DOM
properties, so they never become part of the script source.
"""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

WATERMARK_ELEMENT_ID = "pdf-service-watermark"
STAMP_ELEMENT_ID = "pdf-service-stamp"

WATERMARK_Z_INDEX = 9999
STAMP_Z_INDEX = WATERMARK_Z_INDEX + 1
STAMP_OFFSET_PX = 30
DEFAULT_STAMP_CONTENT_TYPE = "image/png"

# (maximum text length, font size); longer texts get smaller letters
WATERMARK_FONT_SIZES: list[tuple[int, str]] = [
    (10, "4.5rem"),
    (20, "4rem"),
    (30, "3.5rem"),
    (40, "3rem"),
]
WATERMARK_MIN_FONT_SIZE = "2.5rem"

_WATERMARK_SCRIPT = """
({ id, text, fontSize, zIndex }) => {
    const overlay = document.createElement('div');
    overlay.id = id;
    Object.assign(overlay.style, {
        position: 'fixed',
        top: '0',
        left: '0',
        width: '100%',
        height: '100%',
        display: 'flex',
        alignItems: 'center',
        justifyContent: 'center',
        pointerEvents: 'none',
        zIndex: String(zIndex),
    });

    const label = document.createElement('div');
    label.textContent = text;
    Object.assign(label.style, {
        color: 'rgba(0, 0, 0, 0.15)',
        fontSize: fontSize,
        fontWeight: 'bold',
        transform: 'rotate(-45deg)',
        whiteSpace: 'nowrap',
        textAlign: 'center',
        lineHeight: '1.2',
    });

    overlay.appendChild(label);
    document.body.appendChild(overlay);
}
"""

_STAMP_SCRIPT = """
({ id, src, sizePx, offsetPx, zIndex }) => {
    const stamp = document.createElement('img');
    stamp.id = id;
    stamp.alt = '';
    stamp.src = src;
    Object.assign(stamp.style, {
        position: 'fixed',
        bottom: offsetPx + 'px',
        right: offsetPx + 'px',
        width: sizePx + 'px',
        height: sizePx + 'px',
        objectFit: 'contain',
        pointerEvents: 'none',
        zIndex: String(zIndex),
    });
    document.body.appendChild(stamp);
}
"""

# Resolves once every overlay node exists and every injected image finished loading (or failed)
_OVERLAYS_READY_SCRIPT = """
(ids) => ids.every((id) => {
    const element = document.getElementById(id);
    return element !== null && (element.tagName !== 'IMG' || element.complete);
})
"""


def watermark_font_size(text: str) -> str:
    """
    Pick the watermark font size for ``text``.

    >>> watermark_font_size("DRAFT")
    '4.5rem'
    """
    length = len(text)
    for max_length, font_size in WATERMARK_FONT_SIZES:
        if length <= max_length:
            return font_size
    return WATERMARK_MIN_FONT_SIZE


def image_data_url(image_bytes: bytes, content_type: str | None) -> str:
    """Encode image bytes as a ``data:`` URL."""
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{content_type or DEFAULT_STAMP_CONTENT_TYPE};base64,{encoded}"


async def apply_watermark(page: Page, text: str | None) -> str | None:
    """
    Add a rotated, translucent text watermark above the page content.

    Returns:
        The id of the injected element, or None if there was nothing to add.
    """
    if not text:
        return None

    font_size = watermark_font_size(text)
    logger.debug("Adding watermark of %d characters with font size %s", len(text), font_size)
    await page.evaluate(
        _WATERMARK_SCRIPT,
        {"id": WATERMARK_ELEMENT_ID, "text": text, "fontSize": font_size, "zIndex": WATERMARK_Z_INDEX},
    )
    return WATERMARK_ELEMENT_ID


async def apply_stamp(page: Page, image_bytes: bytes | None, content_type: str | None, size_px: int) -> str | None:
    """
    Add an image stamp anchored to the bottom-right corner, above the watermark.

    Returns:
        The id of the injected element, or None if there was nothing to add.
    """
    if not image_bytes:
        return None

    logger.debug("Adding stamp image of %d bytes (%s), size %dpx", len(image_bytes), content_type, size_px)
    await page.evaluate(
        _STAMP_SCRIPT,
        {
            "id": STAMP_ELEMENT_ID,
            "src": image_data_url(image_bytes, content_type),
            "sizePx": size_px,
            "offsetPx": STAMP_OFFSET_PX,
            "zIndex": STAMP_Z_INDEX,
        },
    )
    return STAMP_ELEMENT_ID


async def wait_for_overlays(page: Page, element_ids: list[str], timeout_ms: float) -> None:
    """Wait until the injected overlays are in the document and their images are loaded."""
    if not element_ids:
        return

    await page.wait_for_function(_OVERLAYS_READY_SCRIPT, arg=element_ids, timeout=timeout_ms)
    logger.debug("Overlays ready: %s", ", ".join(element_ids))

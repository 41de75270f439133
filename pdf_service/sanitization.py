"""Helpers that make request data safe to write into log lines."""

import re
from urllib.parse import urlsplit

TRUNCATION_MARKER = "...[truncated]"
URL_MAX_LENGTH = 200

MASK_CHAR = "*"
MASK_VISIBLE_CHARS = 4

_LINE_BREAKS = str.maketrans({"\n": " ", "\r": " "})
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_for_logging(text: str, max_length: int = 1000) -> str:
    """Return ``text`` as a single log-safe line.

    Line breaks become spaces, remaining C0/C1 control characters are dropped
    and anything beyond ``max_length`` is cut off and marked with
    ``...[truncated]``. Non-string values are converted with ``str()``.
    """
    text = _CONTROL_CHARS.sub("", str(text).translate(_LINE_BREAKS))
    if len(text) > max_length:
        return text[:max_length] + TRUNCATION_MARKER
    return text


def sanitize_url_for_logging(url: str | None) -> str:
    """Reduce a URL to scheme, host, port and path.

    Credentials, query string and fragment may carry tokens and are never logged.
    """
    if url is None:
        return "None"

    try:
        parts = urlsplit(url)
        netloc = parts.hostname or ""
        if parts.port:
            netloc += f":{parts.port}"
    except ValueError:
        return sanitize_for_logging(url, max_length=URL_MAX_LENGTH)

    return sanitize_for_logging(f"{parts.scheme}://{netloc}{parts.path or '/'}", max_length=URL_MAX_LENGTH)


def mask_secret(secret: str | None) -> str:
    """Mask a secret for logging and diagnostics.

    The first and last four characters stay visible, everything in between is
    replaced with ``*``. Secrets of eight characters or fewer are masked
    completely.

    Returns:
        str: The masked secret, or ``<not set>`` for None or an empty string.
    """
    if not secret:
        return "<not set>"

    if len(secret) <= 2 * MASK_VISIBLE_CHARS:
        return MASK_CHAR * len(secret)

    hidden = len(secret) - 2 * MASK_VISIBLE_CHARS
    return secret[:MASK_VISIBLE_CHARS] + MASK_CHAR * hidden + secret[-MASK_VISIBLE_CHARS:]

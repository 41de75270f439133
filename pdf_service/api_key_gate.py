"""
API key gate for the PDF generator service.

Every request except the health check must carry the shared secret in the
X-API-KEY header. The check runs as Starlette middleware so that it happens
before routing, form parsing or any browser work.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from fastapi import status
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from pdf_service import prometheus_metrics
from pdf_service.sanitization import mask_secret, sanitize_for_logging
from pdf_service.settings import ServiceSettings, get_settings

if TYPE_CHECKING:
    from fastapi import Request, Response
    from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-KEY"
DEFAULT_EXEMPT_PATHS = frozenset({"/health"})


class ApiKeyCheck(enum.Enum):
    """Outcome of comparing a received key with the configured one."""

    OK = ("ok", status.HTTP_200_OK, "")
    MISSING = ("missing", status.HTTP_401_UNAUTHORIZED, "API Key is missing")
    MISCONFIGURED = ("misconfigured", status.HTTP_500_INTERNAL_SERVER_ERROR, "API Key is not configured on the server")
    MISMATCH = ("mismatch", status.HTTP_401_UNAUTHORIZED, "Unauthorized client")

    def __init__(self, reason: str, status_code: int, message: str) -> None:
        self.reason = reason
        self.status_code = status_code
        self.message = message


def check_api_key(received: str | None, configured: str | None) -> ApiKeyCheck:
    """
    Compare the received key with the configured secret.

    A missing header is reported before a missing server secret, so clients
    that send nothing always get 401. An empty configured secret never
    matches anything.
    """
    if received is None:
        return ApiKeyCheck.MISSING
    if not configured:
        return ApiKeyCheck.MISCONFIGURED
    if received != configured:
        return ApiKeyCheck.MISMATCH
    return ApiKeyCheck.OK


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """
    Reject requests without a valid X-API-KEY header.

    Args:
        app: The wrapped ASGI application.
        settings_provider: Callable returning the current settings; defaults to ``get_settings``.
        exempt_paths: Paths that bypass the check (the health check by default).
    """

    def __init__(
        self,
        app: ASGIApp,
        settings_provider: Callable[[], ServiceSettings] | None = None,
        exempt_paths: frozenset[str] = DEFAULT_EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self.settings_provider = settings_provider or get_settings
        self.exempt_paths = exempt_paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        received = request.headers.get(API_KEY_HEADER)
        configured = self.settings_provider().api_key
        result = check_api_key(received, configured)

        logger.debug(
            "API key check for %s %s: received=%s, configured=%s, result=%s",
            request.method,
            sanitize_for_logging(request.url.path, max_length=200),
            sanitize_for_logging(mask_secret(received), max_length=100),
            mask_secret(configured),
            result.reason,
        )

        if result is ApiKeyCheck.OK:
            return await call_next(request)

        if result is ApiKeyCheck.MISCONFIGURED:
            logger.error("Rejecting request: no API key configured on the server")
        else:
            logger.warning(
                "Rejecting request to %s: %s (received=%s)",
                sanitize_for_logging(request.url.path, max_length=200),
                result.message,
                sanitize_for_logging(mask_secret(received), max_length=100),
            )

        prometheus_metrics.increment_api_key_rejection(result.reason)
        return PlainTextResponse(result.message, status_code=result.status_code)

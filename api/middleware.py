"""
Global middleware and error mapping.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Type

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import (
    AuthExchangeError,
    NotConnected,
    PlatformNotConfigured,
    RateLimited,
    ReauthRequired,
    SocialSyncError,
    TemporarilyUnavailable,
)

logger = logging.getLogger(__name__)

# first match in MRO order wins
_STATUS_BY_ERROR: Dict[Type[SocialSyncError], int] = {
    NotConnected: status.HTTP_404_NOT_FOUND,
    PlatformNotConfigured: status.HTTP_404_NOT_FOUND,
    AuthExchangeError: status.HTTP_400_BAD_REQUEST,
    ReauthRequired: status.HTTP_409_CONFLICT,
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    TemporarilyUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: SocialSyncError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return status.HTTP_502_BAD_GATEWAY


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and exception handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(SocialSyncError)
    async def social_sync_error(request: Request, exc: SocialSyncError) -> JSONResponse:
        code = status_for(exc)
        logger.warning("%s %s → %d %s: %s", request.method, request.url.path, code, type(exc).__name__, exc)
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            headers["Retry-After"] = str(int(exc.retry_after))
        return JSONResponse(
            status_code=code,
            content={"error": type(exc).__name__, "detail": str(exc)},
            headers=headers,
        )

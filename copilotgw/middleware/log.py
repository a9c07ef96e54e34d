from __future__ import annotations

import logging
from time import perf_counter
from typing import Callable, Optional

# We use starlette since FastAPI is built on starlette and so it's always
# already installed

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..log import component_logger


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Logs every request with its status and the time until headers were ready."""

    def __init__(self, app: ASGIApp, logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self._log = component_logger("http", logger)

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        start = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._log.exception("%s %s failed", request.method, request.url.path)
            raise
        elapsed_ms = (perf_counter() - start) * 1000
        self._log.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response


__all__ = ["RequestLogMiddleware"]

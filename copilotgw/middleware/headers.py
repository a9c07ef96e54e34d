from __future__ import annotations

import uuid
from typing import Callable, Mapping, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

REQUEST_ID_HEADER = "X-Request-Id"


class HeaderStampMiddleware(BaseHTTPMiddleware):
    """Stamps a request id and the configured static headers on each response.

    A request id supplied by the client is echoed back unchanged.
    """

    def __init__(self, app: ASGIApp, headers: Optional[Mapping[str, str]] = None):
        super().__init__(app)
        self._headers = dict(headers or {})

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        response = await call_next(request)
        for name, value in self._headers.items():
            response.headers.setdefault(name, value)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


__all__ = ["HeaderStampMiddleware", "REQUEST_ID_HEADER"]

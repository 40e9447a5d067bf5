"""Access log for the PLANT API.

One record per request on the ``plant_api.access`` logger.  The fields
travel as ``extra={"request": ...}`` so :class:`JSONFormatter` can emit
them as a nested object; the plain-text message stays readable on its own.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any
from urllib.parse import urlencode

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("plant_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

# Caller-supplied ids are echoed into logs and responses.
_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_MASKED = "[masked]"
_MASKED_HEADERS = frozenset({"authorization", "cookie"})
# Password links carry their one-time token in the query string.
_MASKED_QUERY_KEYS = frozenset({"token"})

# Polled by load balancers.
_QUIET_PATHS = frozenset({"/api/v1/health", "/ready"})


def correlation_id_for(request: Request) -> str:
    """The caller's ``X-Correlation-ID`` when well-formed, else a new one."""
    supplied = request.headers.get(CORRELATION_HEADER, "")
    if _CORRELATION_ID.match(supplied):
        return supplied
    return uuid.uuid4().hex


def masked_headers(headers: Headers) -> dict[str, str]:
    return {name: _MASKED if name.lower() in _MASKED_HEADERS else value for name, value in headers.items()}


def masked_query(request: Request) -> str | None:
    if not request.url.query:
        return None
    pairs = [
        (key, _MASKED if key.lower() in _MASKED_QUERY_KEYS else value)
        for key, value in request.query_params.multi_items()
    ]
    return urlencode(pairs)


def access_level(path: str, status_code: int) -> int:
    """Server errors at ERROR, client errors at WARNING, health polls at DEBUG."""
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in _QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Write an access record for every request and echo its correlation id.

    The id is also stored on ``request.state.correlation_id``.  A handler
    that raises is recorded as a 500 before the exception propagates.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = correlation_id_for(request)
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            path = request.url.path
            record: dict[str, Any] = {
                "method": request.method,
                "path": path,
                "query": masked_query(request),
                "status_code": status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "user_id": getattr(request.state, "sub", None),
                "role": getattr(request.state, "role", None),
                "headers": masked_headers(request.headers),
            }
            logger.log(
                access_level(path, status_code),
                "%s %s -> %d (%.1f ms)",
                request.method,
                path,
                status_code,
                elapsed_ms,
                extra={"request": record},
            )

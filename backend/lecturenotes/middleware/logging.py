"""
Lecture Notes Backend — Request Logging Middleware
====================================================

What:  One access log line per HTTP request: method, route, status,
       duration, request id.
How:   Measures wall time around call_next. The route template
       (`/api/jobs/{job_id}`) is logged next to the concrete path so lines
       group by endpoint. /health probes are not logged.

Levels:
    5xx          ERROR
    402          INFO  (quota rejection, an expected business outcome)
    other 4xx    WARNING
    else         INFO

Privacy:
    Request bodies are never logged. Webhook bodies carry billing data and
    job bodies carry storage refs.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from lecturenotes.middleware.request_id import request_id_var

logger = logging.getLogger("lecturenotes.access")

SKIP_PATHS = {"/health"}


def level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status == 402:
        return logging.INFO
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        route = request.scope.get("route")
        template = getattr(route, "path", request.url.path)
        rid = request_id_var.get("")

        logger.log(
            level_for(response.status_code),
            "%s %s %d %.1fms [%s]",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            rid,
            extra={
                "request_id": rid,
                "route": template,
                "status": response.status_code,
                "duration_ms": round(elapsed_ms, 2),
            },
        )
        response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.1f}"
        return response

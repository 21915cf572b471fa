"""
FastAPI middleware for structured request logging and request metrics.

Automatically:
- Generates request_id for each request (or reads X-Request-ID)
- Extracts trace_id from X-Trace-ID header
- Picks up organization_id from the X-Organization-ID header
- Logs request completion with latency and records Prometheus metrics
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from billing_core.observability.logging import RequestContext, get_logger
from billing_core.observability.metrics import track_request

logger = get_logger(__name__)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request logging with structured context.

    Returns X-Request-ID and X-Trace-ID in response headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        organization_id = request.headers.get("x-organization-id")

        with RequestContext(
            request_id=request_id,
            trace_id=trace_id,
            organization_id=organization_id,
        ):
            start_time = time.perf_counter()

            try:
                response = await call_next(request)
            except Exception:
                latency = time.perf_counter() - start_time
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=request.url.path,
                    latency_ms=round(latency * 1000, 2),
                    exc_info=True,
                )
                track_request(request.method, _endpoint_label(request), 500, latency)
                raise

            latency = time.perf_counter() - start_time
            logger.info(
                "HTTP request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                latency_ms=round(latency * 1000, 2),
            )
            track_request(request.method, _endpoint_label(request), response.status_code, latency)

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response


def _endpoint_label(request: Request) -> str:
    """Route template (e.g. /subscriptions/{subscription_id}) to keep label cardinality low."""
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return route.path
    return request.url.path

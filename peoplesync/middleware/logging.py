"""
Logging middleware for request/response logging.

Logs every HTTP request with timing and feeds the request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from peoplesync.routes.metrics import track_request

logger = structlog.get_logger()


def _route_template(request: Request) -> str:
    # Label metrics with the route template, not the concrete path
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: organization_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.perf_counter() - start_time
            # Path params are only known once the router has matched
            request_logger = logger.bind(
                organization_id=request.scope.get("path_params", {}).get("organization_id"),
                route=_route_template(request),
                method=request.method,
            )
            log_method = request_logger.info if status_code < 500 else request_logger.error
            log_method(
                "request_completed",
                path=request.url.path,
                status_code=status_code,
                duration_ms=round(duration * 1000, 2),
            )
            track_request(request.method, _route_template(request), status_code, duration)

"""Request metrics middleware for Prometheus monitoring."""

import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from filedrop.core.events import REQUESTS_TOTAL, RESPONSES_TOTAL
from filedrop.core.logging import get_logger

logger = get_logger()

# Paths not worth a log line per request
QUIET_PATHS = frozenset({"/metrics", "/health"})


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect request/response metrics.

    Records:
    - Total requests by method and path
    - Total responses by status code
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """
        Process the request/response cycle and record metrics.

        Args:
        ----
            request: The incoming request
            call_next: The next handler in the middleware chain

        Returns:
        -------
            The response from downstream handlers
        """
        path = request.url.path.rstrip("/") or "/"
        REQUESTS_TOTAL.labels(method=request.method, path=path).inc()

        start_time = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                error=str(e),
            )
            raise

        RESPONSES_TOTAL.labels(status_code=str(response.status_code)).inc()
        if path not in QUIET_PATHS:
            logger.info(
                "request_processed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration=round(time.monotonic() - start_time, 3),
            )
        return response

"""Correlation ID middleware for request tracking."""

import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from structlog.contextvars import bind_contextvars, clear_contextvars

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


def is_valid_request_id(value: str | None) -> bool:
    """Accept UUIDs and ``test-`` prefixed ids supplied by callers."""
    if not value or len(value) > MAX_REQUEST_ID_LENGTH:
        return False
    if value.startswith("test-"):
        return True
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to handle request correlation IDs.

    Reuses a valid incoming ``X-Request-ID`` or generates one, then exposes
    it on ``request.state``, in the structlog context and on the response.
    Uploads are anonymous, so nothing else about the caller is bound.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        clear_contextvars()

        incoming = request.headers.get(REQUEST_ID_HEADER)
        correlation_id = incoming if is_valid_request_id(incoming) else str(uuid.uuid4())
        bind_contextvars(correlation_id=correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response

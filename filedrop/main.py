"""Main FastAPI application module."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from filedrop.api.v1.router import router as v1_router
from filedrop.core.config import settings
from filedrop.core.events import create_start_app_handler, create_stop_app_handler
from filedrop.core.logging import configure_logging
from filedrop.middleware.correlation import CorrelationMiddleware
from filedrop.middleware.errors import (
    ErrorHandlingMiddleware,
    register_exception_handlers,
)
from filedrop.middleware.metrics import MetricsMiddleware
from filedrop.middleware.security import SecurityHeadersMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)
    await create_start_app_handler(app)()
    try:
        yield
    finally:
        await create_stop_app_handler(app)()


app = FastAPI(
    title=settings.app_name,
    description="Anonymous IPFS file drop with Nostr-driven replication",
    version=settings.version,
    default_response_class=JSONResponse,
    lifespan=lifespan,
)

# Middleware runs outermost first in reverse order of registration:
# CORS, security headers, correlation, metrics, error handling.
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(CorrelationMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=600,
)

register_exception_handlers(app)


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)

"""Middleware configuration for the FastAPI application."""

import time
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from jobrelay import __version__
from jobrelay.config import Settings
from jobrelay.routers import metrics

logger = structlog.get_logger(__name__)


def setup_rate_limiter(app: FastAPI, settings: Settings) -> Limiter:
    """Set up rate limiter and attach to app."""
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[f"{settings.rate_limit_requests_per_minute}/minute"],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    # mypy: slowapi handler signature differs from FastAPI expected type
    app.add_exception_handler(
        RateLimitExceeded, _rate_limit_exceeded_handler  # type: ignore[arg-type]
    )
    app.add_middleware(SlowAPIMiddleware)
    return limiter


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Configure CORS middleware."""
    cors_origins = settings.cors_origin_list or ["*"]
    if cors_origins == ["*"]:
        logger.warning("cors_allow_all_origins")
    else:
        logger.info("cors_origins_configured", origins=cors_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )


async def request_middleware(request: Request, call_next):
    """Add request ID, timing and metrics to all requests."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start_time) * 1000

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
    response.headers["X-API-Version"] = __version__

    # Skip /metrics to avoid recursion; use the route template to bound labels
    if request.url.path != "/metrics":
        route = request.scope.get("route")
        metrics.record_request(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status_code=response.status_code,
            duration=duration_ms / 1000,
        )

    logger.info(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    return response

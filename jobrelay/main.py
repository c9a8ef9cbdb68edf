"""jobrelay - FastAPI application."""

import logging

import structlog
import uvicorn
from fastapi import FastAPI

from jobrelay import __version__
from jobrelay.config import get_settings
from jobrelay.core.lifespan import lifespan
from jobrelay.core.middleware import request_middleware, setup_cors, setup_rate_limiter
from jobrelay.core.sentry import init_sentry
from jobrelay.routers import health, jobs, metrics

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

# Initialize Sentry (if configured)
init_sentry(settings)

app = FastAPI(
    title="jobrelay",
    description="Job orchestrator for rate-limited text generation and video transcoding",
    version=__version__,
    lifespan=lifespan,
)

setup_rate_limiter(app, settings)
setup_cors(app, settings)
app.middleware("http")(request_middleware)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, tags=["Jobs"])
app.include_router(metrics.router)  # Metrics endpoint (excluded from OpenAPI)


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "jobrelay",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


def run() -> None:
    """Console entry point: serve the app on the configured host/port."""
    uvicorn.run(
        "jobrelay.main:app",
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()

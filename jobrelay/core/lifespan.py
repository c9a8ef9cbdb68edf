"""Application lifespan management - startup and shutdown logic."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI

from jobrelay import __version__
from jobrelay.config import Settings, get_settings
from jobrelay.jobs.orchestrator import Orchestrator
from jobrelay.jobs.registry import JobExecutor
from jobrelay.routers import jobs
from jobrelay.services.text_generation import GroqClient, TextGenerationExecutor
from jobrelay.services.transcode import MediaConvertClient, TranscodeExecutor

logger = structlog.get_logger(__name__)

# Global orchestrator - accessed by other modules
_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Optional[Orchestrator]:
    """Get the running orchestrator instance."""
    return _orchestrator


def build_executors(settings: Settings) -> list[JobExecutor]:
    """Create an executor for every kind whose credentials are configured."""
    executors: list[JobExecutor] = []

    if settings.text_generation_enabled:
        assert settings.groq_api_key is not None
        client = GroqClient(
            api_key=settings.groq_api_key,
            model=settings.groq_model,
            base_url=settings.groq_base_url,
            top_p=settings.groq_top_p,
            timeout=settings.text_request_timeout_seconds,
        )
        executors.append(TextGenerationExecutor(client))
    else:
        logger.info("text_generation_disabled", reason="GROQ_API_KEY not set")

    if settings.transcode_enabled:
        assert settings.mediaconvert_role_arn is not None
        mediaconvert = MediaConvertClient(
            role_arn=settings.mediaconvert_role_arn,
            region=settings.aws_region,
            endpoint_url=settings.mediaconvert_endpoint_url,
            queue_arn=settings.mediaconvert_queue_arn,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        executors.append(
            TranscodeExecutor(mediaconvert, output_bucket=settings.transcode_output_bucket)
        )
    else:
        logger.info("transcode_disabled", reason="MEDIACONVERT_ROLE_ARN not set")

    return executors


async def _close_executors(executors: list[JobExecutor]) -> None:
    for executor in executors:
        close = getattr(executor, "close", None)
        if close is None:
            continue
        try:
            await close()
        except Exception as e:
            logger.warning("executor_close_failed", kind=executor.kind.value, error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global _orchestrator

    settings = get_settings()
    logger.info(
        "service_starting",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
    )

    executors = build_executors(settings)
    _orchestrator = Orchestrator.from_settings(settings, executors)
    jobs.set_orchestrator(_orchestrator)
    _orchestrator.start()

    yield

    logger.info("service_shutting_down")

    # Stop background tasks before closing the clients they use
    await _orchestrator.stop()
    jobs.set_orchestrator(None)
    _orchestrator = None

    await _close_executors(executors)

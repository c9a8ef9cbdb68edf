"""Health check endpoint."""

import structlog
from fastapi import APIRouter

from jobrelay import __version__
from jobrelay.routers import jobs
from jobrelay.schemas import HealthResponse, LaneHealth

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Report background task state.

    Degraded when the orchestrator is missing, has no lanes, or a scheduler
    loop stopped on an unexpected error.
    """
    orchestrator = jobs.get_orchestrator()
    if orchestrator is None:
        return HealthResponse(status="degraded", version=__version__)

    snapshot = orchestrator.health()
    lanes = {kind: LaneHealth(**lane) for kind, lane in snapshot["lanes"].items()}
    degraded = not lanes or any(lane.scheduler_last_error for lane in lanes.values())
    if degraded:
        logger.warning("health_degraded", lanes=list(lanes))

    return HealthResponse(
        status="degraded" if degraded else "ok",
        version=__version__,
        sweeper_running=snapshot["sweeper_running"],
        records=snapshot["records"],
        lanes=lanes,
    )

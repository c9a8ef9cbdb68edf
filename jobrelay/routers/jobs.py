"""Job submission and status endpoints."""

from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from jobrelay.jobs.errors import NotFoundError, ValidationError
from jobrelay.jobs.orchestrator import Orchestrator
from jobrelay.schemas import (
    CheckResultResponse,
    JobReceiptResponse,
    JobStatusResponse,
    QueueStatsResponse,
    SubmitJobRequest,
)

router = APIRouter()
logger = structlog.get_logger(__name__)

# Set during app startup via set_orchestrator
_orchestrator: Optional[Orchestrator] = None


def set_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    """Set the orchestrator for this router."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> Optional[Orchestrator]:
    """Orchestrator set at startup, or None before startup / after shutdown."""
    return _orchestrator


def _require_orchestrator() -> Orchestrator:
    if _orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job orchestrator not available",
        )
    return _orchestrator


@router.post(
    "/jobs",
    response_model=JobReceiptResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        202: {"description": "Job accepted and queued"},
        422: {"description": "Unknown kind or invalid payload"},
        503: {"description": "Orchestrator not available"},
    },
)
async def submit_job(request: SubmitJobRequest) -> JobReceiptResponse:
    """
    Submit a job for background execution.

    The response carries the job id, its position among queued jobs of the
    same kind, and a coarse wait estimate. Poll GET /jobs/{id} for progress.
    """
    orchestrator = _require_orchestrator()
    try:
        receipt = orchestrator.submit(request.kind, request.payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return JobReceiptResponse.from_receipt(receipt)


@router.get("/jobs/stats", response_model=QueueStatsResponse)
async def get_job_stats(
    kind: Optional[str] = Query(None, description="Restrict counts to one kind"),
    project_id: Optional[str] = Query(
        None, description="Restrict counts to jobs of one project"
    ),
) -> QueueStatsResponse:
    """Counts of jobs by status, plus jobs that look stuck or finished recently."""
    orchestrator = _require_orchestrator()
    try:
        stats = orchestrator.stats(kind, project_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return QueueStatsResponse.from_stats(stats)


@router.post("/jobs/check", response_model=CheckResultResponse)
async def check_jobs(
    kind: Optional[str] = Query(None, description="Restrict the check to one kind"),
    project_id: Optional[str] = Query(
        None, description="Restrict the check to jobs of one project"
    ),
) -> CheckResultResponse:
    """
    Check remote status of in-flight jobs now instead of waiting for the
    next poll tick. Safe to call while the background poller is running.
    """
    orchestrator = _require_orchestrator()
    try:
        result = await orchestrator.check_now(kind, project_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return CheckResultResponse.from_result(result)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={
        200: {"description": "Job status retrieved"},
        404: {"description": "Job not found"},
    },
)
async def get_job_status(job_id: str) -> JobStatusResponse:
    """
    Get the status of a background job.

    Job statuses:
    - queued: waiting for a scheduler slot (position/estimated_wait set)
    - processing: call to the external API in progress
    - awaiting_remote: remote job running; progress is 0-100
    - completed: result is set
    - error: error is set

    Finished jobs are removed after the retention window and return 404.
    """
    orchestrator = _require_orchestrator()
    try:
        view = orchestrator.get_status(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobStatusResponse.from_view(view)

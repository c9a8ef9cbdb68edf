"""Pydantic models for request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from jobrelay.jobs.models import CheckResult, JobReceipt, JobStatusView, QueueStats
from jobrelay.jobs.types import JobKind, JobStatus


# Job submission
class SubmitJobRequest(BaseModel):
    """Request to submit a background job."""

    kind: str = Field(..., description="Job kind (text-generation, transcode)")
    payload: dict[str, Any] = Field(..., description="Kind-specific payload fields")


class JobReceiptResponse(BaseModel):
    """Response for an accepted job."""

    id: str = Field(..., description="Job identifier")
    kind: JobKind
    position: int = Field(..., description="1-based position among queued jobs")
    estimated_wait: str = Field(..., description="Coarse wait estimate")

    @classmethod
    def from_receipt(cls, receipt: JobReceipt) -> "JobReceiptResponse":
        return cls(**receipt.to_dict())


class JobStatusResponse(BaseModel):
    """Response for job status lookups."""

    id: str
    kind: JobKind
    status: JobStatus
    attempt: int = Field(0, description="Attempts made so far")
    created_at: datetime
    position: Optional[int] = Field(None, description="Queue position while queued")
    estimated_wait: Optional[str] = None
    progress: Optional[int] = Field(None, ge=0, le=100, description="Remote progress")
    remote_handle: Optional[str] = None
    remote_state: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    possibly_stuck: bool = False

    @classmethod
    def from_view(cls, view: JobStatusView) -> "JobStatusResponse":
        return cls(
            id=view.id,
            kind=view.kind,
            status=view.status,
            attempt=view.attempt,
            created_at=view.created_at,
            position=view.position,
            estimated_wait=view.estimated_wait,
            progress=view.progress,
            remote_handle=view.remote_handle,
            remote_state=view.remote_state,
            result=view.result,
            error=view.error,
            started_at=view.started_at,
            completed_at=view.completed_at,
            possibly_stuck=view.possibly_stuck,
        )


class CheckResultResponse(BaseModel):
    """Response for a manual status check."""

    updated: int = Field(..., description="Jobs moved to a terminal status")
    possibly_stuck: int = Field(..., description="Active jobs without recent progress")
    checked: int = Field(0, description="Remote status calls that succeeded")
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: CheckResult) -> "CheckResultResponse":
        return cls(**result.to_dict())


class QueueStatsResponse(BaseModel):
    """Counts of jobs by status."""

    queued: int = 0
    processing: int = 0
    awaiting_remote: int = 0
    completed: int = 0
    error: int = 0
    possibly_stuck: int = 0
    recently_completed: int = Field(0, description="Completed within the last five minutes")
    total: int = 0

    @classmethod
    def from_stats(cls, stats: QueueStats) -> "QueueStatsResponse":
        return cls(**stats.to_dict())


# Health
class LaneHealth(BaseModel):
    """Background task state for one job kind."""

    scheduler_running: bool
    scheduler_last_error: Optional[str] = None
    poller_state: str
    queued: int


class HealthResponse(BaseModel):
    """Response for health endpoint."""

    status: str = Field(..., description="Overall service status (ok/degraded)")
    version: str = Field(..., description="Service version")
    sweeper_running: bool = False
    records: int = Field(0, description="Job records held in memory")
    lanes: dict[str, LaneHealth] = Field(default_factory=dict)

"""Job system data models."""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import uuid4

from jobrelay.jobs.errors import InvalidTransitionError
from jobrelay.jobs.payloads import TextGenerationPayload, TranscodePayload
from jobrelay.jobs.types import JobKind, JobStatus, RemoteState

Payload = Union[TextGenerationPayload, TranscodePayload]


def new_job_id(kind: JobKind) -> str:
    """Generate an opaque job id, prefixed by kind for readable logs."""
    return f"{kind.value}_{uuid4().hex}"


@dataclass
class JobRecord:
    """One submitted unit of work and its lifecycle.

    Mutated only by BatchScheduler and StatusPoller, through the mark_*
    methods which enforce forward-only transitions.
    """

    id: str
    kind: JobKind
    payload: Payload
    created_at: datetime
    status: JobStatus = JobStatus.QUEUED

    # Remote tracking (asynchronous kinds)
    remote_handle: Optional[str] = None
    remote_state: Optional[str] = None
    progress: Optional[int] = None
    progress_updated_at: Optional[datetime] = None

    # Terminal payload - exactly one is set once terminal
    result: Optional[Any] = None
    error: Optional[str] = None

    # Lifecycle timestamps
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Retry handling
    attempt: int = 0

    @property
    def project_id(self) -> Optional[str]:
        return getattr(self.payload, "project_id", None)

    def in_project(self, project_id: Optional[str]) -> bool:
        """True when project_id is None or matches the payload's project."""
        return project_id is None or self.project_id == project_id

    def _transition(self, target: JobStatus) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Job {self.id}: illegal transition {self.status.value} -> {target.value}"
            )
        self.status = target

    def mark_processing(self, now: datetime) -> None:
        self._transition(JobStatus.PROCESSING)
        self.started_at = now

    def mark_awaiting_remote(self, remote_handle: str, now: datetime) -> None:
        if not remote_handle:
            raise InvalidTransitionError(f"Job {self.id}: empty remote handle")
        if self.remote_handle is not None:
            raise InvalidTransitionError(f"Job {self.id}: remote handle already set")
        self._transition(JobStatus.AWAITING_REMOTE)
        self.remote_handle = remote_handle
        self.progress = 0
        self.progress_updated_at = now

    def mark_completed(self, result: Any, now: datetime) -> None:
        self._transition(JobStatus.COMPLETED)
        self.result = result
        self.error = None
        self.completed_at = now
        if self.remote_handle is not None:
            self.update_progress(100, now)

    def mark_failed(self, error: str, now: datetime) -> None:
        self._transition(JobStatus.ERROR)
        self.error = error or "Unknown error"
        self.result = None
        self.completed_at = now

    def update_progress(self, progress: int, now: datetime) -> bool:
        """Record remote progress. Returns True if the value changed."""
        progress = max(0, min(100, int(progress)))
        if progress == self.progress:
            return False
        self.progress = progress
        self.progress_updated_at = now
        return True

    def is_possibly_stuck(self, now: datetime, threshold: timedelta) -> bool:
        """Advisory: active for longer than threshold without a progress change."""
        if not self.status.is_active:
            return False
        reference = self.progress_updated_at or self.started_at
        if reference is None:
            return False
        return now - reference > threshold

    def is_expired(self, now: datetime, retention: timedelta) -> bool:
        """Terminal and past the retention window."""
        if not self.status.is_terminal or self.completed_at is None:
            return False
        return now - self.completed_at >= retention


@dataclass(frozen=True)
class ExecutionOutcome:
    """What an executor returns: a synchronous result or a remote handle."""

    result: Optional[Any] = None
    remote_handle: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.result is None) == (self.remote_handle is None):
            raise ValueError(
                "ExecutionOutcome needs exactly one of result or remote_handle"
            )

    @property
    def is_remote(self) -> bool:
        return self.remote_handle is not None


@dataclass(frozen=True)
class RemoteStatus:
    """Status reported by an asynchronous remote API for one handle."""

    state: RemoteState
    percent_complete: Optional[int] = None
    output_location: Optional[str] = None
    error_message: Optional[str] = None
    raw_state: Optional[str] = None


# =============================================================================
# Caller-facing views (copies, never live references)
# =============================================================================


@dataclass(frozen=True)
class JobReceipt:
    """Returned by Orchestrator.submit."""

    id: str
    kind: JobKind
    position: int
    estimated_wait: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "position": self.position,
            "estimated_wait": self.estimated_wait,
        }


@dataclass(frozen=True)
class JobStatusView:
    """Point-in-time copy of a JobRecord."""

    id: str
    kind: JobKind
    status: JobStatus
    attempt: int
    created_at: datetime
    position: Optional[int] = None
    estimated_wait: Optional[str] = None
    progress: Optional[int] = None
    remote_handle: Optional[str] = None
    remote_state: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    possibly_stuck: bool = False

    @classmethod
    def from_record(
        cls,
        record: JobRecord,
        position: Optional[int] = None,
        estimated_wait: Optional[str] = None,
        possibly_stuck: bool = False,
    ) -> "JobStatusView":
        return cls(
            id=record.id,
            kind=record.kind,
            status=record.status,
            attempt=record.attempt,
            created_at=record.created_at,
            position=position,
            estimated_wait=estimated_wait,
            progress=record.progress,
            remote_handle=record.remote_handle,
            remote_state=record.remote_state,
            result=copy.deepcopy(record.result),
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at,
            possibly_stuck=possibly_stuck,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API response."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "attempt": self.attempt,
            "created_at": self.created_at.isoformat(),
            "position": self.position,
            "estimated_wait": self.estimated_wait,
            "progress": self.progress,
            "remote_handle": self.remote_handle,
            "remote_state": self.remote_state,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "possibly_stuck": self.possibly_stuck,
        }


@dataclass(frozen=True)
class CheckResult:
    """Returned by Orchestrator.check_now."""

    updated: int
    possibly_stuck: int
    checked: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "possibly_stuck": self.possibly_stuck,
            "checked": self.checked,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class QueueStats:
    """Counts of records by status plus the advisory stuck count.

    recently_completed is a subset of completed (finished within the
    recent window) and is not part of total.
    """

    queued: int = 0
    processing: int = 0
    awaiting_remote: int = 0
    completed: int = 0
    error: int = 0
    possibly_stuck: int = 0
    recently_completed: int = 0

    @property
    def total(self) -> int:
        return (
            self.queued
            + self.processing
            + self.awaiting_remote
            + self.completed
            + self.error
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "processing": self.processing,
            "awaiting_remote": self.awaiting_remote,
            "completed": self.completed,
            "error": self.error,
            "possibly_stuck": self.possibly_stuck,
            "recently_completed": self.recently_completed,
            "total": self.total,
        }

"""Job system type definitions."""

from enum import Enum


class JobKind(str, Enum):
    """Work types, one per external processing API."""

    TEXT_GENERATION = "text-generation"
    TRANSCODE = "transcode"


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    QUEUED = "queued"
    PROCESSING = "processing"
    AWAITING_REMOTE = "awaiting_remote"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)

    @property
    def is_active(self) -> bool:
        """Check if work for this job has started but not finished."""
        return self in (JobStatus.PROCESSING, JobStatus.AWAITING_REMOTE)

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Check if moving from this status to target is a forward transition."""
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.AWAITING_REMOTE, JobStatus.COMPLETED, JobStatus.ERROR}
    ),
    JobStatus.AWAITING_REMOTE: frozenset({JobStatus.COMPLETED, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERROR: frozenset(),
}


class RemoteState(str, Enum):
    """Normalized state reported by an asynchronous remote API."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteState.COMPLETE, RemoteState.ERROR)


class PollerState(str, Enum):
    """StatusPoller state machine.

    - IDLE: no awaiting_remote records, no timer running
    - POLLING: timer task running, polls every poll interval
    """

    IDLE = "idle"
    POLLING = "polling"

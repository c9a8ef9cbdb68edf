"""Job system package."""

from jobrelay.jobs.types import JobKind, JobStatus, PollerState, RemoteState
from jobrelay.jobs.models import (
    CheckResult,
    ExecutionOutcome,
    JobReceipt,
    JobRecord,
    JobStatusView,
    QueueStats,
    RemoteStatus,
)
from jobrelay.jobs.registry import ExecutorRegistry, JobExecutor
from jobrelay.jobs.lane import LaneConfig
from jobrelay.jobs.retry import RetryPolicy, RetryingClient
from jobrelay.jobs.orchestrator import Orchestrator

__all__ = [
    "JobKind",
    "JobStatus",
    "PollerState",
    "RemoteState",
    "CheckResult",
    "ExecutionOutcome",
    "JobReceipt",
    "JobRecord",
    "JobStatusView",
    "QueueStats",
    "RemoteStatus",
    "ExecutorRegistry",
    "JobExecutor",
    "LaneConfig",
    "RetryPolicy",
    "RetryingClient",
    "Orchestrator",
]

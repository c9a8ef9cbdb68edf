"""Per-kind execution budget: batching, pacing, retry and polling knobs."""

from dataclasses import dataclass, field
from datetime import timedelta

from jobrelay.jobs.retry import RetryPolicy
from jobrelay.jobs.types import JobKind


@dataclass(frozen=True)
class LaneConfig:
    """Configuration for one kind's queue, scheduler and poller."""

    # Batch scheduling
    concurrency_limit: int = 4
    stagger_delay_seconds: float = 0.5
    batch_cooldown_seconds: float = 60.0
    average_batch_duration_seconds: float = 60.0

    # Per-call retries
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Status polling (asynchronous kinds only)
    poll_interval_seconds: float = 30.0
    poll_timeout_seconds: float = 10.0
    poll_call_delay_seconds: float = 0.5
    poll_rate_limit_pause_seconds: float = 5.0

    # Advisory stuck detection
    stuck_threshold_seconds: float = 15 * 60

    def __post_init__(self) -> None:
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")

    @property
    def stuck_threshold(self) -> timedelta:
        return timedelta(seconds=self.stuck_threshold_seconds)


def default_lane_config(kind: JobKind) -> LaneConfig:
    """Built-in budget for a kind when no settings are supplied."""
    if kind is JobKind.TRANSCODE:
        return LaneConfig(
            concurrency_limit=5,
            batch_cooldown_seconds=0.0,
            average_batch_duration_seconds=5.0,
            retry=RetryPolicy(
                rate_limit_delay_seconds=0.3,
                transient_delay_seconds=2.0,
                timeout_seconds=30.0,
            ),
        )
    return LaneConfig()

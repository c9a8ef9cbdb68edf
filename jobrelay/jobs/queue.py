"""Per-kind submission queue with position and wait-time bookkeeping."""

import math
from typing import Iterable, Optional

from jobrelay.jobs.errors import InvalidTransitionError
from jobrelay.jobs.models import JobRecord
from jobrelay.jobs.types import JobKind, JobStatus


def humanize_wait(seconds: float) -> str:
    """Coarse human-readable wait estimate."""
    if seconds <= 60:
        return "under a minute"
    if seconds <= 120:
        return "1-2 minutes"
    if seconds <= 300:
        return "3-5 minutes"
    return f"about {math.ceil(seconds / 60)} minutes"


class SubmissionQueue:
    """
    Ordered collection of pending JobRecords for one kind.

    dequeue_batch() only peeks: records stay in the queue until the scheduler
    calls confirm_pickup(), so a repeated dequeue before pickup returns the
    same records instead of losing them.
    """

    def __init__(
        self,
        kind: JobKind,
        concurrency_limit: int,
        average_batch_duration_seconds: float,
        smoothing: float = 0.3,
    ):
        """
        Initialize the queue.

        Args:
            kind: Job kind this queue holds
            concurrency_limit: Batch size used by the scheduler (for estimates)
            average_batch_duration_seconds: Initial batch duration estimate
            smoothing: EMA weight given to each observed batch duration
        """
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.kind = kind
        self._concurrency_limit = concurrency_limit
        self._average_batch_duration = average_batch_duration_seconds
        self._smoothing = smoothing
        self._records: list[JobRecord] = []

    @property
    def average_batch_duration_seconds(self) -> float:
        return self._average_batch_duration

    def enqueue(self, record: JobRecord) -> int:
        """Append a queued record. Returns its 1-based position."""
        if record.kind is not self.kind:
            raise ValueError(f"Cannot enqueue {record.kind.value} job on {self.kind.value} queue")
        if record.status is not JobStatus.QUEUED:
            raise InvalidTransitionError(
                f"Job {record.id}: only queued records can be enqueued"
            )
        self._records.append(record)
        return self.queued_count()

    def dequeue_batch(self, max_n: int) -> list[JobRecord]:
        """Up to max_n queued records in FIFO order, without removing them."""
        if max_n <= 0:
            return []
        batch: list[JobRecord] = []
        for record in self._records:
            if record.status is JobStatus.QUEUED:
                batch.append(record)
                if len(batch) == max_n:
                    break
        return batch

    def confirm_pickup(self, records: Iterable[JobRecord]) -> None:
        """Drop records the scheduler has taken."""
        taken = {r.id for r in records}
        self._records = [r for r in self._records if r.id not in taken]

    def has_queued(self) -> bool:
        return any(r.status is JobStatus.QUEUED for r in self._records)

    def queued_count(self) -> int:
        return sum(1 for r in self._records if r.status is JobStatus.QUEUED)

    def position_of(self, job_id: str) -> Optional[int]:
        """1-based position among queued records, or None if not queued."""
        position = 0
        for record in self._records:
            if record.status is not JobStatus.QUEUED:
                continue
            position += 1
            if record.id == job_id:
                return position
        return None

    def estimate_wait(self, position: int) -> str:
        """Estimate derived from batches ahead times average batch duration."""
        if position <= 0:
            return "starting now"
        batches = math.ceil(position / self._concurrency_limit)
        return humanize_wait(batches * self._average_batch_duration)

    def record_batch_duration(self, seconds: float) -> None:
        """Fold an observed batch duration into the running average."""
        if seconds < 0:
            return
        self._average_batch_duration = (
            self._smoothing * seconds
            + (1 - self._smoothing) * self._average_batch_duration
        )

    def __len__(self) -> int:
        return self.queued_count()

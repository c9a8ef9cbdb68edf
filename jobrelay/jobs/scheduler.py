"""Batch scheduler - drains a kind's queue within its rate budget."""

import asyncio
from typing import Callable, Optional

import structlog
from prometheus_client import Counter, Gauge, Histogram

from jobrelay.jobs.clock import Clock, SystemClock
from jobrelay.jobs.errors import JobCallError
from jobrelay.jobs.lane import LaneConfig
from jobrelay.jobs.models import ExecutionOutcome, JobRecord
from jobrelay.jobs.poller import StatusPoller
from jobrelay.jobs.queue import SubmissionQueue
from jobrelay.jobs.retry import RetryingClient
from jobrelay.jobs.types import JobKind, JobStatus

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

BATCHES_TOTAL = Counter(
    "jobrelay_batches_total",
    "Batches started by the scheduler",
    ["kind"],
)
BATCH_DURATION = Histogram(
    "jobrelay_batch_duration_seconds",
    "Time from batch start until every item settled",
    ["kind"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)
JOBS_SETTLED_TOTAL = Counter(
    "jobrelay_jobs_settled_total",
    "Jobs leaving the scheduler",
    ["kind", "status"],  # completed, awaiting_remote, error
)
JOBS_PROCESSING = Gauge(
    "jobrelay_jobs_processing",
    "Jobs currently executing in a scheduler slot",
    ["kind"],
)
SCHEDULER_LOOP_ERRORS_TOTAL = Counter(
    "jobrelay_scheduler_loop_errors_total",
    "Scheduler loops stopped by an unexpected error",
    ["kind"],
)


class BatchScheduler:
    """
    Background loop for one job kind.

    - Takes up to concurrency_limit queued records per batch (FIFO)
    - Marks the whole batch processing, then staggers call start times
    - Waits for every item to settle before forming the next batch
    - Sleeps batch_cooldown between batches while work remains
    - Goes idle when the queue drains; kick() restarts it
    """

    def __init__(
        self,
        kind: JobKind,
        queue: SubmissionQueue,
        client: RetryingClient,
        config: LaneConfig,
        clock: Optional[Clock] = None,
        poller: Optional[StatusPoller] = None,
        on_complete: Optional[Callable[[JobRecord], None]] = None,
    ):
        """
        Initialize scheduler.

        Args:
            kind: Job kind this scheduler drains
            queue: The kind's submission queue
            client: Retrying client shared by all slots
            config: Lane configuration (batch size, stagger, cooldown, retry)
            clock: Time source (defaults to SystemClock)
            poller: Status poller receiving records that return a remote handle
            on_complete: Called synchronously when a record completes
        """
        self._kind = kind
        self._queue = queue
        self._client = client
        self._config = config
        self._clock = clock or SystemClock()
        self._poller = poller
        self._on_complete = on_complete

        self._task: Optional[asyncio.Task] = None
        self._last_error: Optional[str] = None
        self._batches_run = 0

    @property
    def is_running(self) -> bool:
        """Check if the drain loop is currently active."""
        return self._task is not None and not self._task.done()

    @property
    def last_error(self) -> Optional[str]:
        """Error that stopped the most recent loop, if any."""
        return self._last_error

    @property
    def batches_run(self) -> int:
        return self._batches_run

    def kick(self) -> bool:
        """
        Start the drain loop if idle.

        Must be called from inside a running event loop.

        Returns:
            True if a new loop was started, False if one was already running
        """
        if self.is_running:
            return False
        self._task = asyncio.create_task(
            self._run(), name=f"batch-scheduler-{self._kind.value}"
        )
        return True

    async def stop(self, timeout: float = 5.0) -> None:
        """Cancel the drain loop. In-flight items are abandoned."""
        if not self.is_running:
            return
        assert self._task is not None
        self._task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        logger.info("scheduler_stopped", kind=self._kind.value)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _run(self) -> None:
        """Main loop - runs until the queue has no queued records."""
        log = logger.bind(kind=self._kind.value)
        log.info("scheduler_started", queued=self._queue.queued_count())
        self._last_error = None

        try:
            while True:
                batch = self._queue.dequeue_batch(self._config.concurrency_limit)
                if not batch:
                    break

                await self._run_batch(batch)

                cooldown = self._config.batch_cooldown_seconds
                if cooldown > 0 and self._queue.has_queued():
                    log.info(
                        "scheduler_cooldown",
                        seconds=cooldown,
                        queued=self._queue.queued_count(),
                    )
                    await self._clock.sleep(cooldown)

        except asyncio.CancelledError:
            log.info("scheduler_cancelled")
            raise
        except Exception as e:
            # Fatal for this loop only; the next kick() starts a fresh one
            self._last_error = str(e)
            SCHEDULER_LOOP_ERRORS_TOTAL.labels(kind=self._kind.value).inc()
            log.exception("scheduler_loop_error", error=str(e))
            return

        log.info("scheduler_idle", batches_run=self._batches_run)

    async def _run_batch(self, batch: list[JobRecord]) -> None:
        """Execute one batch and wait for every item to settle."""
        kind = self._kind.value
        started = self._clock.now()

        for record in batch:
            record.mark_processing(started)
        self._queue.confirm_pickup(batch)

        self._batches_run += 1
        BATCHES_TOTAL.labels(kind=kind).inc()
        JOBS_PROCESSING.labels(kind=kind).inc(len(batch))
        logger.info(
            "batch_started",
            kind=kind,
            batch_size=len(batch),
            job_ids=[r.id for r in batch],
        )

        results = await asyncio.gather(
            *(self._run_item(record, index) for index, record in enumerate(batch)),
            return_exceptions=True,
        )

        # _run_item isolates its own failures; anything here is a bug
        for record, outcome in zip(batch, results):
            if isinstance(outcome, BaseException) and record.status is JobStatus.PROCESSING:
                logger.error(
                    "batch_item_crashed",
                    job_id=record.id,
                    kind=kind,
                    error=str(outcome),
                )
                record.mark_failed(f"Internal error: {outcome}", self._clock.now())
                JOBS_SETTLED_TOTAL.labels(kind=kind, status="error").inc()

        duration = (self._clock.now() - started).total_seconds()
        BATCH_DURATION.labels(kind=kind).observe(duration)
        self._queue.record_batch_duration(duration + self._config.batch_cooldown_seconds)
        logger.info(
            "batch_settled",
            kind=kind,
            duration_seconds=round(duration, 3),
            failed=sum(1 for r in batch if r.status is JobStatus.ERROR),
        )

    async def _run_item(self, record: JobRecord, index: int) -> None:
        """Run one record to completion, remote hand-off, or error."""
        kind = self._kind.value
        log = logger.bind(job_id=record.id, kind=kind)

        try:
            stagger = index * self._config.stagger_delay_seconds
            if stagger > 0:
                await self._clock.sleep(stagger)

            def _on_attempt(attempt: int) -> None:
                record.attempt = attempt

            log.info("job_executing")
            try:
                outcome = await self._client.call(
                    self._kind,
                    record.payload,
                    self._config.retry,
                    on_attempt=_on_attempt,
                )
            except JobCallError as e:
                record.mark_failed(str(e), self._clock.now())
                JOBS_SETTLED_TOTAL.labels(kind=kind, status="error").inc()
                log.warning(
                    "job_failed",
                    attempts=record.attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return
            except Exception as e:
                record.mark_failed(f"Unexpected error: {e}", self._clock.now())
                JOBS_SETTLED_TOTAL.labels(kind=kind, status="error").inc()
                log.exception("job_unexpected_error", error=str(e))
                return

            self._settle(record, outcome, log)
        finally:
            JOBS_PROCESSING.labels(kind=kind).dec()

    def _settle(self, record: JobRecord, outcome: ExecutionOutcome, log) -> None:
        kind = self._kind.value
        now = self._clock.now()

        if outcome.is_remote:
            if self._poller is None:
                record.mark_failed(
                    f"Remote handle returned for {kind} but no status poller is configured",
                    now,
                )
                JOBS_SETTLED_TOTAL.labels(kind=kind, status="error").inc()
                log.error("job_remote_without_poller", remote_handle=outcome.remote_handle)
                return

            assert outcome.remote_handle is not None
            record.mark_awaiting_remote(outcome.remote_handle, now)
            JOBS_SETTLED_TOTAL.labels(kind=kind, status="awaiting_remote").inc()
            log.info("job_awaiting_remote", remote_handle=outcome.remote_handle)
            self._poller.register(record)
            return

        record.mark_completed(outcome.result, now)
        JOBS_SETTLED_TOTAL.labels(kind=kind, status="completed").inc()
        log.info("job_completed", attempts=record.attempt)
        if self._on_complete is not None:
            self._on_complete(record)

"""Status poller for asynchronous remote jobs.

Tracks records in awaiting_remote for one kind: on a fixed interval it asks
the remote API for each handle's status, updates progress, and applies
terminal transitions. The timer only runs while there is something to poll.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

import structlog
from prometheus_client import Counter, Gauge

from jobrelay.jobs.clock import Clock, SystemClock
from jobrelay.jobs.errors import RateLimitedError, RemoteJobFailed
from jobrelay.jobs.lane import LaneConfig
from jobrelay.jobs.models import JobRecord, RemoteStatus
from jobrelay.jobs.registry import JobExecutor
from jobrelay.jobs.types import JobKind, JobStatus, PollerState, RemoteState

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

POLL_RUNS_TOTAL = Counter(
    "jobrelay_poll_runs_total",
    "Status poll passes executed",
    ["kind", "trigger"],  # timer, manual
)
POLL_STATUS_CHECKS_TOTAL = Counter(
    "jobrelay_poll_status_checks_total",
    "Remote status checks",
    ["kind", "outcome"],  # ok, timeout, rate_limited, failure
)
POLLER_ACTIVE = Gauge(
    "jobrelay_poller_active",
    "Whether the status poller timer is running (1=polling, 0=idle)",
    ["kind"],
)


def awaiting_records(records: Iterable[JobRecord], kind: JobKind) -> list[JobRecord]:
    """Records of kind currently waiting on the remote side."""
    return [
        r for r in records if r.kind is kind and r.status is JobStatus.AWAITING_REMOTE
    ]


def should_poll(records: Iterable[JobRecord], kind: JobKind) -> bool:
    """Entry/stay condition for the polling state: any awaiting_remote record."""
    return any(
        r.kind is kind and r.status is JobStatus.AWAITING_REMOTE for r in records
    )


@dataclass
class PollPassResult:
    """Result of a single poll pass."""

    checked: int = 0
    updated: int = 0  # terminal transitions applied
    progressed: int = 0  # progress-only changes
    errors: list[str] = field(default_factory=list)


class StatusPoller:
    """
    Polls remote status for one asynchronous kind.

    State machine:
    - IDLE: no timer; register() of an awaiting record moves to POLLING
    - POLLING: sleeps poll_interval, polls every awaiting record, and
      returns to IDLE once none remain

    poll_once() is also the manual check path. It may overlap with a timer
    pass: terminal transitions are only applied while the record is still
    awaiting_remote with the same handle, so a second pass is a no-op.
    """

    def __init__(
        self,
        kind: JobKind,
        executor: JobExecutor,
        records: Mapping[str, JobRecord],
        config: LaneConfig,
        clock: Optional[Clock] = None,
        on_complete: Optional[Callable[[JobRecord], None]] = None,
    ):
        """
        Initialize poller.

        Args:
            kind: Job kind this poller tracks
            executor: Executor providing fetch_status()
            records: Shared record table (read; awaiting records are updated)
            config: Lane configuration (interval, timeouts, pacing)
            clock: Time source (defaults to SystemClock)
            on_complete: Called synchronously when a record completes
        """
        self._kind = kind
        self._executor = executor
        self._records = records
        self._config = config
        self._clock = clock or SystemClock()
        self._on_complete = on_complete

        self._state = PollerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._ticks = 0

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the poll timer is currently active."""
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        """Timer-driven passes executed so far."""
        return self._ticks

    def register(self, record: JobRecord) -> None:
        """Start polling if record is awaiting remote work and the timer is idle."""
        if record.kind is not self._kind or record.status is not JobStatus.AWAITING_REMOTE:
            return
        self._ensure_started()

    def resume(self) -> bool:
        """Restart the timer if awaiting records are left over, e.g. after stop()."""
        if not should_poll(self._records.values(), self._kind):
            return False
        self._ensure_started()
        return True

    async def stop(self, timeout: float = 5.0) -> None:
        """Cancel the poll timer."""
        if not self.is_running:
            return
        assert self._task is not None
        self._task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        # Cancelled before its first step, the loop's finally never ran
        self._state = PollerState.IDLE
        POLLER_ACTIVE.labels(kind=self._kind.value).set(0)
        logger.info("poller_stopped", kind=self._kind.value)

    async def poll_once(
        self, trigger: str = "manual", project_id: Optional[str] = None
    ) -> PollPassResult:
        """
        Check every awaiting record once.

        Args:
            trigger: "timer" or "manual", for logs and metrics
            project_id: Only check records whose payload belongs to this project

        Returns:
            PollPassResult with counts and per-handle errors
        """
        kind = self._kind.value
        result = PollPassResult()
        pending = [
            r
            for r in awaiting_records(self._records.values(), self._kind)
            if r.in_project(project_id)
        ]
        POLL_RUNS_TOTAL.labels(kind=kind, trigger=trigger).inc()

        if not pending:
            return result

        logger.info("poll_pass_start", kind=kind, trigger=trigger, pending=len(pending))

        for index, record in enumerate(pending):
            if index and self._config.poll_call_delay_seconds > 0:
                await self._clock.sleep(self._config.poll_call_delay_seconds)

            # A concurrent pass may have finished it while we slept
            if record.status is not JobStatus.AWAITING_REMOTE:
                continue

            handle = record.remote_handle
            assert handle is not None
            log = logger.bind(job_id=record.id, kind=kind, remote_handle=handle)

            try:
                status = await asyncio.wait_for(
                    self._executor.fetch_status(handle),
                    timeout=self._config.poll_timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                # Retried on the next tick
                POLL_STATUS_CHECKS_TOTAL.labels(kind=kind, outcome="timeout").inc()
                log.warning("poll_status_timeout", timeout=self._config.poll_timeout_seconds)
                result.errors.append(f"{handle}: status check timed out")
                continue
            except RateLimitedError as e:
                POLL_STATUS_CHECKS_TOTAL.labels(kind=kind, outcome="rate_limited").inc()
                log.warning(
                    "poll_rate_limited",
                    pause_seconds=self._config.poll_rate_limit_pause_seconds,
                )
                result.errors.append(f"{handle}: {e}")
                await self._clock.sleep(self._config.poll_rate_limit_pause_seconds)
                continue
            except Exception as e:
                POLL_STATUS_CHECKS_TOTAL.labels(kind=kind, outcome="failure").inc()
                log.warning("poll_status_failed", error=str(e), error_type=type(e).__name__)
                result.errors.append(f"{handle}: {e}")
                continue

            POLL_STATUS_CHECKS_TOTAL.labels(kind=kind, outcome="ok").inc()
            result.checked += 1

            progressed_before = record.progress
            if self.apply_status(record.id, handle, status):
                result.updated += 1
            elif record.progress != progressed_before:
                result.progressed += 1

        logger.info(
            "poll_pass_complete",
            kind=kind,
            trigger=trigger,
            checked=result.checked,
            updated=result.updated,
            progressed=result.progressed,
            errors=len(result.errors),
        )
        return result

    def apply_status(self, job_id: str, remote_handle: str, status: RemoteStatus) -> bool:
        """
        Apply a remote status report to a record, idempotently.

        Args:
            job_id: Record to update
            remote_handle: Handle the status was fetched for
            status: Remote status report

        Returns:
            True if a terminal transition was applied
        """
        record = self._records.get(job_id)
        if (
            record is None
            or record.remote_handle != remote_handle
            or record.status is not JobStatus.AWAITING_REMOTE
        ):
            return False

        now = self._clock.now()
        record.remote_state = status.raw_state or status.state.value
        log = logger.bind(job_id=job_id, kind=self._kind.value, remote_handle=remote_handle)

        if status.state is RemoteState.COMPLETE:
            record.mark_completed(
                {"output_location": status.output_location, "remote_handle": remote_handle},
                now,
            )
            log.info("remote_job_completed", output_location=status.output_location)
            if self._on_complete is not None:
                self._on_complete(record)
            return True

        if status.state is RemoteState.ERROR:
            failure = RemoteJobFailed(remote_handle, status.error_message or "Job failed")
            record.mark_failed(str(failure), now)
            log.warning("remote_job_failed", error=str(failure))
            return True

        if status.percent_complete is not None and record.update_progress(
            status.percent_complete, now
        ):
            log.debug("remote_job_progress", progress=record.progress)

        return False

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _ensure_started(self) -> None:
        if self.is_running:
            return
        self._state = PollerState.POLLING
        POLLER_ACTIVE.labels(kind=self._kind.value).set(1)
        self._task = asyncio.create_task(
            self._poll_loop(), name=f"status-poller-{self._kind.value}"
        )
        logger.info("poller_started", kind=self._kind.value)

    async def _poll_loop(self) -> None:
        """Timer loop - exits once no awaiting records remain."""
        try:
            while should_poll(self._records.values(), self._kind):
                await self._clock.sleep(self._config.poll_interval_seconds)

                if not should_poll(self._records.values(), self._kind):
                    break

                self._ticks += 1
                try:
                    await self.poll_once(trigger="timer")
                except Exception as e:
                    logger.exception(
                        "poll_tick_failed", kind=self._kind.value, error=str(e)
                    )
        finally:
            self._state = PollerState.IDLE
            POLLER_ACTIVE.labels(kind=self._kind.value).set(0)
            logger.info("poller_idle", kind=self._kind.value, ticks=self._ticks)

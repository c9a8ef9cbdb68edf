"""Orchestrator facade - the public surface of the job system.

Owns the record table, one lane (queue, scheduler, optional poller) per
registered kind, and the shared retention sweeper. Callers only ever get
copies of records back.

Usage:
    orchestrator = Orchestrator([TextGenerationExecutor(client)])
    orchestrator.start()
    receipt = orchestrator.submit("text-generation", {"prompt": "..."})
    view = orchestrator.get_status(receipt.id)
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    Union,
)

import structlog
from prometheus_client import Counter

from jobrelay.jobs.clock import Clock, SystemClock
from jobrelay.jobs.errors import NotFoundError, ValidationError
from jobrelay.jobs.lane import LaneConfig, default_lane_config
from jobrelay.jobs.models import (
    CheckResult,
    JobReceipt,
    JobRecord,
    JobStatusView,
    QueueStats,
    new_job_id,
)
from jobrelay.jobs.payloads import TextGenerationPayload, parse_payload
from jobrelay.jobs.poller import StatusPoller
from jobrelay.jobs.queue import SubmissionQueue
from jobrelay.jobs.registry import ExecutorRegistry, JobExecutor
from jobrelay.jobs.retention import RetentionSweeper
from jobrelay.jobs.retry import RetryingClient
from jobrelay.jobs.scheduler import BatchScheduler
from jobrelay.jobs.types import JobKind, JobStatus, PollerState

if TYPE_CHECKING:
    from jobrelay.config import Settings

logger = structlog.get_logger(__name__)

JOBS_SUBMITTED_TOTAL = Counter(
    "jobrelay_jobs_submitted_total",
    "Jobs accepted by submit()",
    ["kind"],
)
COMPLETION_HOOK_FAILURES_TOTAL = Counter(
    "jobrelay_completion_hook_failures_total",
    "Completion hooks that raised",
    ["kind"],
)

# Completed records newer than this count as recently_completed in stats()
RECENT_COMPLETION_WINDOW = timedelta(minutes=5)

# Hook signature: async def hook(view: JobStatusView) -> None
CompletionHook = Callable[[JobStatusView], Awaitable[None]]


@dataclass
class _Lane:
    kind: JobKind
    config: LaneConfig
    queue: SubmissionQueue
    scheduler: BatchScheduler
    poller: Optional[StatusPoller] = None


class Orchestrator:
    """Accepts jobs, runs them under per-kind budgets, and answers queries."""

    def __init__(
        self,
        executors: Union[ExecutorRegistry, Iterable[JobExecutor]],
        lane_configs: Optional[Mapping[JobKind, LaneConfig]] = None,
        retention_seconds: float = 600.0,
        cleanup_interval_seconds: float = 600.0,
        clock: Optional[Clock] = None,
        completion_hooks: Optional[Mapping[JobKind, Sequence[CompletionHook]]] = None,
    ):
        """
        Build lanes for every registered executor.

        Args:
            executors: Registry or iterable of executors, one per kind
            lane_configs: Per-kind budgets (missing kinds use built-in defaults)
            retention_seconds: How long terminal records stay queryable
            cleanup_interval_seconds: Sweep period
            clock: Time source shared by every component
            completion_hooks: Per-kind async callbacks run when a job completes
        """
        if isinstance(executors, ExecutorRegistry):
            self._registry = executors
        else:
            self._registry = ExecutorRegistry()
            for executor in executors:
                self._registry.register(executor)

        self._clock = clock or SystemClock()
        self._records: dict[str, JobRecord] = {}
        self._client = RetryingClient(self._registry, self._clock)
        self._hooks: dict[JobKind, list[CompletionHook]] = {
            kind: list(hooks) for kind, hooks in (completion_hooks or {}).items()
        }
        self._hook_tasks: set[asyncio.Task] = set()

        lane_configs = lane_configs or {}
        self._lanes: dict[JobKind, _Lane] = {}
        for kind in self._registry.kinds():
            config = lane_configs.get(kind) or default_lane_config(kind)
            self._lanes[kind] = self._build_lane(kind, config)

        self._sweeper = RetentionSweeper(
            self._records,
            retention_seconds=retention_seconds,
            interval_seconds=cleanup_interval_seconds,
            clock=self._clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        executors: Union[ExecutorRegistry, Iterable[JobExecutor]],
        clock: Optional[Clock] = None,
        completion_hooks: Optional[Mapping[JobKind, Sequence[CompletionHook]]] = None,
    ) -> "Orchestrator":
        """Create an orchestrator with lane budgets taken from settings."""
        return cls(
            executors,
            lane_configs={kind: settings.lane_config(kind) for kind in JobKind},
            retention_seconds=settings.retention_seconds,
            cleanup_interval_seconds=settings.cleanup_interval_seconds,
            clock=clock,
            completion_hooks=completion_hooks,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the sweeper, drain anything queued, and resume remote polling.

        Safe after stop(): records survive a stop, so awaiting_remote jobs
        get their poller back here.
        """
        self._sweeper.start()
        for lane in self._lanes.values():
            if lane.queue.has_queued():
                lane.scheduler.kick()
            if lane.poller is not None and lane.poller.resume():
                logger.info("poller_resumed", kind=lane.kind.value)
        logger.info("orchestrator_started", kinds=[k.value for k in self._lanes])

    async def stop(self, timeout: float = 5.0) -> None:
        """Cancel every background task. Records are kept in memory."""
        for lane in self._lanes.values():
            await lane.scheduler.stop(timeout)
            if lane.poller is not None:
                await lane.poller.stop(timeout)
        await self._sweeper.stop(timeout)

        for task in list(self._hook_tasks):
            task.cancel()
        if self._hook_tasks:
            await asyncio.gather(*self._hook_tasks, return_exceptions=True)

        logger.info("orchestrator_stopped", records=len(self._records))

    # =========================================================================
    # Public Operations
    # =========================================================================

    @property
    def kinds(self) -> list[JobKind]:
        return list(self._lanes)

    def lane_config(self, kind: JobKind) -> LaneConfig:
        return self._lane(kind).config

    def submit(self, kind: Union[JobKind, str], payload: Any) -> JobReceipt:
        """
        Accept a job for background execution.

        Must be called from inside the running event loop.

        Args:
            kind: Job kind (enum or its string value)
            payload: Payload model or mapping of payload fields

        Returns:
            JobReceipt with the job id, queue position and wait estimate

        Raises:
            ValidationError: Unknown kind, kind without executor, or bad payload
        """
        job_kind = self._coerce_kind(kind)
        lane = self._lane(job_kind)
        validated = parse_payload(job_kind, payload)

        record = JobRecord(
            id=new_job_id(job_kind),
            kind=job_kind,
            payload=validated,
            created_at=self._clock.now(),
        )
        self._records[record.id] = record
        position = lane.queue.enqueue(record)
        estimated_wait = lane.queue.estimate_wait(position)

        JOBS_SUBMITTED_TOTAL.labels(kind=job_kind.value).inc()
        log_fields: dict[str, Any] = {}
        if isinstance(validated, TextGenerationPayload):
            log_fields["estimated_tokens"] = validated.estimated_tokens
            log_fields["purpose"] = validated.purpose.value
        logger.info(
            "job_submitted",
            job_id=record.id,
            kind=job_kind.value,
            position=position,
            estimated_wait=estimated_wait,
            **log_fields,
        )

        lane.scheduler.kick()
        return JobReceipt(
            id=record.id,
            kind=job_kind,
            position=position,
            estimated_wait=estimated_wait,
        )

    def get_status(self, job_id: str) -> JobStatusView:
        """
        Point-in-time view of one job.

        Raises:
            NotFoundError: Unknown id, or the record was already swept
        """
        record = self._records.get(job_id)
        if record is None:
            raise NotFoundError(job_id)
        return self._view(record)

    async def check_now(
        self,
        kind: Union[JobKind, str, None] = None,
        project_id: Optional[str] = None,
    ) -> CheckResult:
        """
        Poll remote status immediately and count possibly stuck jobs.

        Args:
            kind: Restrict to one kind (default: every kind)
            project_id: Restrict to jobs whose payload carries this project

        Returns:
            CheckResult with terminal transitions applied and stuck count
        """
        lanes = self._select_lanes(kind)
        updated = 0
        checked = 0
        errors: list[str] = []

        for lane in lanes:
            if lane.poller is None:
                continue
            result = await lane.poller.poll_once(trigger="manual", project_id=project_id)
            updated += result.updated
            checked += result.checked
            errors.extend(result.errors)

        possibly_stuck = self._count_stuck(lanes, project_id)
        logger.info(
            "check_now_complete",
            kind=kind.value if isinstance(kind, JobKind) else kind,
            project_id=project_id,
            checked=checked,
            updated=updated,
            possibly_stuck=possibly_stuck,
            errors=len(errors),
        )
        return CheckResult(
            updated=updated,
            possibly_stuck=possibly_stuck,
            checked=checked,
            errors=errors,
        )

    def stats(
        self,
        kind: Union[JobKind, str, None] = None,
        project_id: Optional[str] = None,
    ) -> QueueStats:
        """Counts by status plus possibly stuck, for one kind or all.

        With project_id, only jobs whose payload carries that project are
        counted (text generation payloads have none).
        """
        lanes = self._select_lanes(kind)
        selected = {lane.kind for lane in lanes}
        recent_since = self._clock.now() - RECENT_COMPLETION_WINDOW
        counts = {status: 0 for status in JobStatus}
        recently_completed = 0
        for record in self._records.values():
            if record.kind not in selected or not record.in_project(project_id):
                continue
            counts[record.status] += 1
            if (
                record.status is JobStatus.COMPLETED
                and record.completed_at is not None
                and record.completed_at > recent_since
            ):
                recently_completed += 1

        return QueueStats(
            queued=counts[JobStatus.QUEUED],
            processing=counts[JobStatus.PROCESSING],
            awaiting_remote=counts[JobStatus.AWAITING_REMOTE],
            completed=counts[JobStatus.COMPLETED],
            error=counts[JobStatus.ERROR],
            possibly_stuck=self._count_stuck(lanes, project_id),
            recently_completed=recently_completed,
        )

    def health(self) -> dict[str, Any]:
        """Background task state per kind, for the health endpoint."""
        lanes: dict[str, Any] = {}
        for kind, lane in self._lanes.items():
            lanes[kind.value] = {
                "scheduler_running": lane.scheduler.is_running,
                "scheduler_last_error": lane.scheduler.last_error,
                "poller_state": (
                    lane.poller.state.value
                    if lane.poller is not None
                    else PollerState.IDLE.value
                ),
                "queued": lane.queue.queued_count(),
            }
        return {
            "sweeper_running": self._sweeper.is_running,
            "records": len(self._records),
            "lanes": lanes,
        }

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _build_lane(self, kind: JobKind, config: LaneConfig) -> _Lane:
        executor = self._registry.get(kind)
        queue = SubmissionQueue(
            kind,
            concurrency_limit=config.concurrency_limit,
            average_batch_duration_seconds=config.average_batch_duration_seconds,
        )
        poller = None
        if executor.is_async:
            poller = StatusPoller(
                kind,
                executor,
                self._records,
                config,
                clock=self._clock,
                on_complete=self._on_complete,
            )
        scheduler = BatchScheduler(
            kind,
            queue,
            self._client,
            config,
            clock=self._clock,
            poller=poller,
            on_complete=self._on_complete,
        )
        return _Lane(kind=kind, config=config, queue=queue, scheduler=scheduler, poller=poller)

    def _coerce_kind(self, kind: Union[JobKind, str]) -> JobKind:
        if isinstance(kind, JobKind):
            return kind
        try:
            return JobKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown job kind: {kind!r}", str(kind)) from None

    def _lane(self, kind: JobKind) -> _Lane:
        lane = self._lanes.get(kind)
        if lane is None:
            raise ValidationError(
                f"No executor configured for job kind: {kind.value}", kind.value
            )
        return lane

    def _select_lanes(self, kind: Union[JobKind, str, None]) -> list[_Lane]:
        if kind is None:
            return list(self._lanes.values())
        return [self._lane(self._coerce_kind(kind))]

    def _count_stuck(
        self, lanes: Iterable[_Lane], project_id: Optional[str] = None
    ) -> int:
        now = self._clock.now()
        thresholds = {lane.kind: lane.config.stuck_threshold for lane in lanes}
        return sum(
            1
            for record in self._records.values()
            if record.kind in thresholds
            and record.in_project(project_id)
            and record.is_possibly_stuck(now, thresholds[record.kind])
        )

    def _view(self, record: JobRecord) -> JobStatusView:
        lane = self._lanes[record.kind]
        position = None
        estimated_wait = None
        if record.status is JobStatus.QUEUED:
            position = lane.queue.position_of(record.id)
            if position is not None:
                estimated_wait = lane.queue.estimate_wait(position)

        return JobStatusView.from_record(
            record,
            position=position,
            estimated_wait=estimated_wait,
            possibly_stuck=record.is_possibly_stuck(
                self._clock.now(), lane.config.stuck_threshold
            ),
        )

    def _on_complete(self, record: JobRecord) -> None:
        """Fan a completed record out to its kind's hooks, off the hot path."""
        hooks = self._hooks.get(record.kind)
        if not hooks:
            return
        view = self._view(record)
        for hook in hooks:
            task = asyncio.create_task(self._run_hook(hook, view))
            self._hook_tasks.add(task)
            task.add_done_callback(self._hook_tasks.discard)

    async def _run_hook(self, hook: CompletionHook, view: JobStatusView) -> None:
        try:
            await hook(view)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            COMPLETION_HOOK_FAILURES_TOTAL.labels(kind=view.kind.value).inc()
            logger.exception(
                "completion_hook_failed",
                job_id=view.id,
                kind=view.kind.value,
                hook=getattr(hook, "__name__", repr(hook)),
                error=str(e),
            )

"""Retention sweeper for terminal job records."""

import asyncio
from datetime import timedelta
from typing import MutableMapping, Optional

import structlog
from prometheus_client import Counter

from jobrelay.jobs.clock import Clock, SystemClock
from jobrelay.jobs.models import JobRecord

logger = structlog.get_logger(__name__)

RECORDS_SWEPT_TOTAL = Counter(
    "jobrelay_records_swept_total",
    "Terminal job records removed by the retention sweeper",
    ["status"],  # completed, error
)


class RetentionSweeper:
    """
    Removes terminal records once their retention window has elapsed.

    Retention policy:
    - queued/processing/awaiting_remote: never removed
    - completed/error: removed once completed_at + retention has passed
    """

    def __init__(
        self,
        records: MutableMapping[str, JobRecord],
        retention_seconds: float = 600.0,
        interval_seconds: float = 600.0,
        clock: Optional[Clock] = None,
    ):
        if retention_seconds < 0:
            raise ValueError("retention_seconds must not be negative")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._records = records
        self._retention = timedelta(seconds=retention_seconds)
        self._interval = interval_seconds
        self._clock = clock or SystemClock()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def retention(self) -> timedelta:
        return self._retention

    def preview(self) -> dict[str, int]:
        """
        Preview what a sweep would remove without removing anything.

        Returns:
            Dict with counts per terminal status
        """
        now = self._clock.now()
        counts = {"completed": 0, "error": 0}
        for record in self._records.values():
            if record.is_expired(now, self._retention):
                counts[record.status.value] += 1
        return counts

    def sweep(self) -> int:
        """
        Delete expired terminal records.

        Returns:
            Number of records removed
        """
        now = self._clock.now()
        expired = [
            record
            for record in self._records.values()
            if record.is_expired(now, self._retention)
        ]
        for record in expired:
            del self._records[record.id]
            RECORDS_SWEPT_TOTAL.labels(status=record.status.value).inc()

        if expired:
            logger.info(
                "retention_sweep_complete",
                removed=len(expired),
                remaining=len(self._records),
            )
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep. Must be called inside a running loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="retention-sweeper")
        logger.info(
            "retention_sweeper_started",
            retention_seconds=self._retention.total_seconds(),
            interval_seconds=self._interval,
        )

    async def stop(self, timeout: float = 5.0) -> None:
        if not self.is_running:
            return
        assert self._task is not None
        self._task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        logger.info("retention_sweeper_stopped")

    async def _run(self) -> None:
        while True:
            await self._clock.sleep(self._interval)
            try:
                self.sweep()
            except Exception as e:
                logger.exception("retention_sweep_failed", error=str(e))

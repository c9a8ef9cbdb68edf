"""Root conftest for test suite.

Provides a deterministic clock and scripted executors so scheduler, poller
and sweeper timers can be driven without real delays.
"""

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from jobrelay.jobs.models import ExecutionOutcome, RemoteStatus
from jobrelay.jobs.types import JobKind, RemoteState


# =============================================================================
# Fake Clock
# =============================================================================


class FakeClock:
    """Clock whose time only moves when a test calls advance().

    sleep() parks the caller on a future that advance() resolves once the
    simulated deadline is reached, in deadline order.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._sleepers: list[tuple[datetime, int, asyncio.Future]] = []
        self._seq = itertools.count()
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        deadline = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (deadline, next(self._seq), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def settle(self, rounds: int = 50) -> None:
        """Let every runnable task run until it blocks again."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers whose deadline has passed."""
        target = self._now + timedelta(seconds=seconds)
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()


# =============================================================================
# Scripted Executors
# =============================================================================


class ScriptedTextExecutor:
    """Synchronous executor returning generated text after a simulated call time.

    outcomes: consumed one per attempt; an Exception is raised, an
    ExecutionOutcome is returned. When exhausted every call succeeds.
    """

    kind = JobKind.TEXT_GENERATION
    is_async = False

    def __init__(self, clock: FakeClock, call_seconds: float = 0.0):
        self._clock = clock
        self.call_seconds = call_seconds
        self.outcomes: list[Any] = []
        self.calls: list[Any] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, payload: Any) -> ExecutionOutcome:
        self.calls.append(payload)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.call_seconds:
                await self._clock.sleep(self.call_seconds)
            if self.outcomes:
                outcome = self.outcomes.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
            return ExecutionOutcome(result={"text": f"generated: {payload.prompt}"})
        finally:
            self.in_flight -= 1

    async def fetch_status(self, remote_handle: str) -> RemoteStatus:
        raise AssertionError("synchronous executor has no remote status")


class ScriptedTranscodeExecutor:
    """Asynchronous executor handing out handles mc-1, mc-2, ...

    statuses: per-handle list of RemoteStatus (or Exception) consumed one per
    fetch_status call; when exhausted the job reports PROGRESSING.
    """

    kind = JobKind.TRANSCODE
    is_async = True

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._handles = itertools.count(1)
        self.submit_errors: list[BaseException] = []
        self.statuses: dict[str, list[Any]] = {}
        self.status_calls: list[str] = []
        self.status_delay_seconds = 0.0

    async def execute(self, payload: Any) -> ExecutionOutcome:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return ExecutionOutcome(remote_handle=f"mc-{next(self._handles)}")

    async def fetch_status(self, remote_handle: str) -> RemoteStatus:
        self.status_calls.append(remote_handle)
        if self.status_delay_seconds:
            await self._clock.sleep(self.status_delay_seconds)
        script = self.statuses.get(remote_handle)
        if script:
            status = script.pop(0)
            if isinstance(status, BaseException):
                raise status
            return status
        return RemoteStatus(state=RemoteState.PROCESSING, raw_state="PROGRESSING")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_clock():
    """Deterministic clock starting at 2026-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def text_executor(fake_clock):
    """Text executor whose calls take 5 simulated seconds."""
    return ScriptedTextExecutor(fake_clock, call_seconds=5.0)


@pytest.fixture
def transcode_executor(fake_clock):
    """Transcode executor with scriptable status responses."""
    return ScriptedTranscodeExecutor(fake_clock)


@pytest.fixture
def remote_status():
    """Factory for RemoteStatus values."""

    def _make(state: str, percent: Optional[int] = None, **kwargs) -> RemoteStatus:
        mapped = {
            "SUBMITTED": RemoteState.QUEUED,
            "PROGRESSING": RemoteState.PROCESSING,
            "COMPLETE": RemoteState.COMPLETE,
            "ERROR": RemoteState.ERROR,
            "CANCELED": RemoteState.ERROR,
        }[state]
        return RemoteStatus(
            state=mapped, percent_complete=percent, raw_state=state, **kwargs
        )

    return _make

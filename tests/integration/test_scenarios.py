"""End-to-end job lifecycle scenarios.

Drives a real Orchestrator (queue, scheduler, retrying client, poller,
sweeper) against scripted executors on a fake clock.
"""

import pytest
import pytest_asyncio

from jobrelay.jobs.errors import RateLimitedError, TerminalCallError
from jobrelay.jobs.orchestrator import Orchestrator
from jobrelay.jobs.types import JobKind, JobStatus

pytestmark = [pytest.mark.integration]

_ORDER = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.AWAITING_REMOTE: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.ERROR: 3,
}


@pytest_asyncio.fixture
async def orchestrator(fake_clock, text_executor, transcode_executor):
    orchestrator = Orchestrator(
        [text_executor, transcode_executor],
        retention_seconds=600,
        cleanup_interval_seconds=600,
        clock=fake_clock,
    )
    orchestrator.start()
    yield orchestrator
    await orchestrator.stop()


def _prompt(i: int) -> dict:
    return {"prompt": f"Summarize defects for segment {i}", "purpose": "executive_summary"}


def _video(name: str) -> dict:
    return {"source_url": f"s3://uploads/{name}.mov", "output_prefix": "s3://out/"}


# =============================================================================
# Scenarios
# =============================================================================


class TestScenarios:
    @pytest.mark.asyncio
    async def test_six_jobs_with_limit_four(self, fake_clock, orchestrator, text_executor):
        """First four run together; the last two wait for the next batch."""
        receipts = [orchestrator.submit("text-generation", _prompt(i)) for i in range(6)]
        await fake_clock.settle()

        stats = orchestrator.stats(JobKind.TEXT_GENERATION)
        assert stats.processing == 4
        assert stats.queued == 2

        # Batch settles at t=6.5, cooldown runs until t=66.5
        await fake_clock.advance(10)
        stats = orchestrator.stats(JobKind.TEXT_GENERATION)
        assert stats.completed == 4
        assert stats.queued == 2

        await fake_clock.advance(57)
        stats = orchestrator.stats(JobKind.TEXT_GENERATION)
        assert stats.processing == 2
        assert stats.queued == 0

        await fake_clock.advance(10)
        assert orchestrator.stats().completed == 6
        assert text_executor.max_in_flight == 4
        for receipt in receipts:
            view = orchestrator.get_status(receipt.id)
            assert view.attempt == 1
            assert view.result["text"].startswith("generated: ")

    @pytest.mark.asyncio
    async def test_remote_job_completes_on_third_poll(
        self, fake_clock, orchestrator, transcode_executor, remote_status
    ):
        """PROCESSING, PROCESSING, COMPLETE -> completed after exactly three polls."""
        transcode_executor.statuses["mc-1"] = [
            remote_status("PROGRESSING", 20),
            remote_status("PROGRESSING", 60),
            remote_status("COMPLETE"),
        ]
        receipt = orchestrator.submit(
            "transcode", {"source_url": "s3://uploads/MH12.mov", "output_prefix": "s3://out/"}
        )
        await fake_clock.settle()

        view = orchestrator.get_status(receipt.id)
        assert view.status is JobStatus.AWAITING_REMOTE
        assert view.remote_handle == "mc-1"
        assert view.progress == 0

        await fake_clock.advance(30)
        assert orchestrator.get_status(receipt.id).progress == 20
        await fake_clock.advance(30)
        assert orchestrator.get_status(receipt.id).progress == 60
        assert orchestrator.get_status(receipt.id).status is JobStatus.AWAITING_REMOTE

        await fake_clock.advance(30)
        view = orchestrator.get_status(receipt.id)
        assert view.status is JobStatus.COMPLETED
        assert view.progress == 100
        assert transcode_executor.status_calls == ["mc-1", "mc-1", "mc-1"]

        # Poller went idle: no further status calls
        await fake_clock.advance(120)
        assert len(transcode_executor.status_calls) == 3

    @pytest.mark.asyncio
    async def test_terminal_error_is_not_retried(
        self, fake_clock, orchestrator, text_executor
    ):
        text_executor.outcomes = [TerminalCallError("prompt rejected", status_code=400)]
        receipt = orchestrator.submit("text-generation", _prompt(1))

        await fake_clock.advance(10)

        view = orchestrator.get_status(receipt.id)
        assert view.status is JobStatus.ERROR
        assert view.error == "prompt rejected"
        assert view.attempt == 1
        assert len(text_executor.calls) == 1


# =============================================================================
# Properties
# =============================================================================


class TestProperties:
    @pytest.mark.asyncio
    async def test_statuses_only_move_forward(
        self, fake_clock, orchestrator, text_executor, transcode_executor, remote_status
    ):
        text_executor.outcomes = [TerminalCallError("bad prompt")]
        transcode_executor.statuses["mc-2"] = [
            remote_status("ERROR", error_message="bad input")
        ]
        ids = [orchestrator.submit("text-generation", _prompt(i)).id for i in range(9)]
        ids += [orchestrator.submit("transcode", _video(str(i))).id for i in range(3)]
        seen = {job_id: [] for job_id in ids}

        for _ in range(60):
            await fake_clock.advance(5)
            stats = orchestrator.stats(JobKind.TEXT_GENERATION)
            assert stats.processing <= 4
            for job_id in ids:
                seen[job_id].append(_ORDER[orchestrator.get_status(job_id).status])

        for history in seen.values():
            assert history == sorted(history)
        assert text_executor.max_in_flight <= 4

    @pytest.mark.asyncio
    async def test_check_now_twice_applies_once(
        self, fake_clock, orchestrator, transcode_executor, remote_status
    ):
        transcode_executor.statuses["mc-1"] = [
            remote_status("COMPLETE"),
            remote_status("COMPLETE"),
        ]
        receipt = orchestrator.submit("transcode", _video("MH12"))
        await fake_clock.settle()

        first = await orchestrator.check_now()
        second = await orchestrator.check_now()

        assert first.updated == 1
        assert second.updated == 0
        assert orchestrator.get_status(receipt.id).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_by_rate_limits(
        self, fake_clock, orchestrator, text_executor
    ):
        text_executor.outcomes = [RateLimitedError() for _ in range(3)]
        receipt = orchestrator.submit("text-generation", _prompt(1))

        # 5s call, 60s backoff, 5s call, 120s backoff, 5s call
        await fake_clock.advance(194)
        assert orchestrator.get_status(receipt.id).status is JobStatus.PROCESSING

        await fake_clock.advance(2)
        view = orchestrator.get_status(receipt.id)
        assert view.status is JobStatus.ERROR
        assert view.attempt == 3
        assert len(text_executor.calls) == 3

    @pytest.mark.asyncio
    async def test_stuck_until_progress(
        self, fake_clock, orchestrator, transcode_executor, remote_status
    ):
        receipt = orchestrator.submit("transcode", _video("MH12"))
        await fake_clock.settle()

        await fake_clock.advance(890)
        assert orchestrator.stats().possibly_stuck == 0

        await fake_clock.advance(20)
        assert orchestrator.stats().possibly_stuck == 1

        transcode_executor.statuses["mc-1"] = [remote_status("PROGRESSING", 10)]
        await fake_clock.advance(30)
        assert orchestrator.stats().possibly_stuck == 0
        assert orchestrator.get_status(receipt.id).progress == 10

    @pytest.mark.asyncio
    async def test_retention_never_early(self, fake_clock, orchestrator):
        receipt = orchestrator.submit("text-generation", _prompt(1))
        await fake_clock.advance(5)
        completed_at = orchestrator.get_status(receipt.id).completed_at
        assert completed_at is not None

        # Sweeps at t=600 (record 595s old) keep it
        await fake_clock.advance(1190)
        assert orchestrator.get_status(receipt.id).status is JobStatus.COMPLETED

        # Sweep at t=1200 removes it
        await fake_clock.advance(10)
        assert orchestrator.stats().total == 0

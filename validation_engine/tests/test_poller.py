"""Tests for the long-poll status tracker (no real sleeping)."""
from __future__ import annotations

import asyncio

import pytest

from validation_engine.client import HTTPError, NetworkError, RateLimitError
from validation_engine.models import JobStatus
from validation_engine.poller import PollOutcome, parse_job_status, poll_job


class FakeClock:
    def __init__(self):
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.sleeps)


def scripted(*responses):
    """Status callable returning (or raising) each response in turn, then repeating the last."""
    items = list(responses)
    calls = {"n": 0}

    async def get_status():
        idx = min(calls["n"], len(items) - 1)
        calls["n"] += 1
        item = items[idx]
        if isinstance(item, Exception):
            raise item
        return item

    get_status.calls = calls
    return get_status


@pytest.fixture()
def clock():
    return FakeClock()


class TestPollJob:
    @pytest.mark.asyncio
    async def test_completes_after_pending(self, clock):
        status = scripted({"status": "pending"}, {"status": "processing"}, {"status": "completed"})
        result = await poll_job(status, sleep=clock.sleep)
        assert result.outcome is PollOutcome.COMPLETED
        assert result.ok
        assert result.polls == 3
        assert clock.sleeps == [5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_sleeps_before_first_poll(self, clock):
        status = scripted({"status": "completed"})
        result = await poll_job(status, sleep=clock.sleep)
        assert clock.sleeps == [5.0]
        assert result.elapsed == 5.0

    @pytest.mark.asyncio
    async def test_failed_carries_message(self, clock):
        status = scripted({"status": "failed", "error_message": "LLM quota"})
        result = await poll_job(status, sleep=clock.sleep)
        assert result.outcome is PollOutcome.FAILED
        assert result.error_message == "LLM quota"

    @pytest.mark.asyncio
    async def test_pending_then_failed(self, clock):
        status = scripted({"status": "pending"}, {"status": "failed", "error_message": "bad input"})
        result = await poll_job(status, sleep=clock.sleep)
        assert result.outcome is PollOutcome.FAILED
        assert result.polls == 2
        assert result.error_message == "bad input"

    @pytest.mark.asyncio
    async def test_failed_default_message(self, clock):
        result = await poll_job(scripted({"status": "failed"}), sleep=clock.sleep)
        assert result.error_message == "Job failed"

    @pytest.mark.asyncio
    async def test_times_out_after_fifteen_minutes(self, clock):
        status = scripted({"status": "pending"})
        result = await poll_job(status, sleep=clock.sleep)
        assert result.outcome is PollOutcome.TIMEOUT
        assert result.polls == 180
        assert clock.total == 900

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off(self, clock):
        status = scripted(
            {"status": "pending"},
            RateLimitError("slow down", 429),
            {"status": "completed"},
        )
        result = await poll_job(status, sleep=clock.sleep)
        assert result.outcome is PollOutcome.COMPLETED
        assert clock.sleeps == [5.0, 5.0, 30.0]

    @pytest.mark.asyncio
    async def test_rate_limit_counts_toward_timeout(self, clock):
        status = scripted(RateLimitError("slow down", 429))
        result = await poll_job(status, sleep=clock.sleep, timeout=100)
        assert result.outcome is PollOutcome.TIMEOUT
        # 5 + 30 + 30 + 30 + 30 >= 100
        assert clock.sleeps == [5.0, 30.0, 30.0, 30.0, 30.0]
        assert status.calls["n"] == 4

    @pytest.mark.asyncio
    async def test_no_status_call_after_overshooting_budget(self, clock):
        status = scripted({"status": "pending"}, RateLimitError("slow down", 429), {"status": "completed"})
        result = await poll_job(status, sleep=clock.sleep, timeout=20)
        # 5 + 5 + 30 lands past the budget; the completed status is never fetched
        assert result.outcome is PollOutcome.TIMEOUT
        assert result.polls == 2
        assert result.elapsed == 40

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, clock):
        status = scripted(
            NetworkError("down"),
            HTTPError("boom", 500),
            {"status": "completed"},
        )
        result = await poll_job(status, sleep=clock.sleep)
        assert result.outcome is PollOutcome.COMPLETED
        assert result.polls == 3
        assert clock.sleeps == [5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_abort_before_start(self, clock):
        abort = asyncio.Event()
        abort.set()
        status = scripted({"status": "completed"})
        result = await poll_job(status, abort=abort, sleep=clock.sleep)
        assert result.outcome is PollOutcome.CANCELLED
        assert status.calls["n"] == 0

    @pytest.mark.asyncio
    async def test_abort_during_sleep_skips_status_call(self):
        abort = asyncio.Event()
        status = scripted({"status": "pending"})

        async def sleep(_):
            if status.calls["n"] == 2:
                abort.set()

        result = await poll_job(status, abort=abort, sleep=sleep)
        assert result.outcome is PollOutcome.CANCELLED
        assert result.polls == 2
        assert status.calls["n"] == 2

    @pytest.mark.asyncio
    async def test_on_poll_called_per_status(self, clock):
        seen = []

        async def on_poll(s, n):
            seen.append((s, n))

        status = scripted({"status": "processing"}, {"status": "weird"}, {"status": "completed"})
        await poll_job(status, sleep=clock.sleep, on_poll=on_poll)
        assert seen == [(JobStatus.PROCESSING, 1), (None, 2), (JobStatus.COMPLETED, 3)]


class TestParseJobStatus:
    def test_values(self):
        assert parse_job_status({"status": "COMPLETED"}) is JobStatus.COMPLETED
        assert parse_job_status({"status": ""}) is None
        assert parse_job_status("completed") is None
        assert parse_job_status(None) is None

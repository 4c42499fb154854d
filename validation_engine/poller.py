"""Long-poll status tracker for backend async jobs (deep research).

The loop sleeps first, then asks for status, so a job that was just started
is given one interval before the first check.  A 429 stretches the next wait
to the rate-limit interval; other transport/HTTP errors are retried on the
next tick.  The tracker only reports how the job ended; fetching the
finished payload is the caller's job.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from validation_engine.client import HTTPError, NetworkError, RateLimitError
from validation_engine.models import JobStatus

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
RATE_LIMIT_INTERVAL = 30.0
DEFAULT_TIMEOUT = 15 * 60.0


class PollOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    polls: int
    elapsed: float
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is PollOutcome.COMPLETED


def parse_job_status(payload: Any) -> JobStatus | None:
    if not isinstance(payload, dict):
        return None
    raw = str(payload.get("status") or "").strip().lower()
    try:
        return JobStatus(raw)
    except ValueError:
        return None


async def poll_job(
    get_status: Callable[[], Awaitable[Any]],
    *,
    abort: asyncio.Event | None = None,
    interval: float = DEFAULT_INTERVAL,
    rate_limit_interval: float = RATE_LIMIT_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_poll: Callable[[JobStatus | None, int], Awaitable[None]] | None = None,
) -> PollResult:
    """Poll *get_status* until the job completes, fails, times out or is aborted.

    Args:
        get_status: Coroutine factory returning ``{status, error_message?}``.
        abort: Checked before every status call; set it to stop polling.
        interval: Baseline wait between polls, in seconds.
        rate_limit_interval: Wait used after a rate-limit response.
        timeout: Total waited time after which polling gives up silently.
        sleep: Injected for tests; defaults to :func:`asyncio.sleep`.
        on_poll: Optional progress callback ``(status, polls)``.
    """
    abort = abort or asyncio.Event()
    elapsed = 0.0
    polls = 0
    wait = interval

    while not abort.is_set() and elapsed < timeout:
        await sleep(wait)
        elapsed += wait
        wait = interval
        if abort.is_set() or elapsed > timeout:
            break

        polls += 1
        try:
            payload = await get_status()
        except RateLimitError:
            log.info("Status poll rate limited, waiting %.0fs before retrying", rate_limit_interval)
            wait = rate_limit_interval
            continue
        except (NetworkError, HTTPError) as exc:
            log.debug("Status poll %d failed, retrying: %s", polls, exc)
            continue

        status = parse_job_status(payload)
        if on_poll is not None:
            await on_poll(status, polls)
        if status is JobStatus.COMPLETED:
            return PollResult(PollOutcome.COMPLETED, polls, elapsed)
        if status is JobStatus.FAILED:
            message = str(payload.get("error_message") or "Job failed")
            log.warning("Job reported failure after %d polls: %s", polls, message)
            return PollResult(PollOutcome.FAILED, polls, elapsed, message)

    if abort.is_set():
        log.debug("Polling aborted after %d polls", polls)
        return PollResult(PollOutcome.CANCELLED, polls, elapsed)
    log.warning("Polling timed out after %.0fs (%d polls)", elapsed, polls)
    return PollResult(PollOutcome.TIMEOUT, polls, elapsed)

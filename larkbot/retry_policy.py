"""Retry policy for failed jobs and for single collaborator calls.

Two tiers: jobs are retried automatically at most MAX_RETRIES times with
exponential backoff of 2**retry_count minutes; a user-triggered retry
ignores the cap and lives in the orchestrator, not here.
"""

import logging
import time
from typing import Callable, TypeVar

from larkbot.errors import is_retryable, retry_after_of
from larkbot.models import Job

MAX_RETRIES = 3
BASE_BACKOFF_SECONDS = 60

LOG = logging.getLogger("larkbot.retry_policy")

T = TypeVar("T")


def should_retry(job_or_count: Job | int) -> bool:
    """True while the job's retry_count is below MAX_RETRIES."""
    count = job_or_count if isinstance(job_or_count, int) else job_or_count.retry_count
    return count < MAX_RETRIES


def backoff_delay(retry_count: int, retry_after: float | None = None) -> float:
    """Seconds to wait before re-queueing: 2**retry_count minutes.

    A collaborator's retry-after hint wins when it is longer.
    """
    delay = float(2**retry_count * BASE_BACKOFF_SECONDS)
    if retry_after is not None and retry_after > delay:
        return float(retry_after)
    return delay


def backoff_delay_ms(retry_count: int) -> int:
    """backoff_delay in milliseconds (60000, 120000, 240000, ...)."""
    return int(backoff_delay(retry_count) * 1000)


def call_with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
    log: logging.Logger | None = None,
) -> T:
    """Run fn, retrying retryable failures with 1s, 2s, 4s... between attempts.

    Non-retryable errors (configuration, conflict, not found, validation)
    propagate on the first attempt. The last error propagates when attempts
    run out.
    """
    logger = log or LOG
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_attempts:
                raise
            delay = base_delay * 2 ** (attempt - 1)
            hint = retry_after_of(e)
            if hint is not None:
                delay = max(delay, hint)
            logger.warning("%s attempt %s/%s failed: %s (retrying in %.1fs)", label, attempt, max_attempts, e, delay)
            sleep(delay)
            attempt += 1

"""Client-side backoff for the planner API after rate-limit responses."""

import logging
import math
import time
from typing import Callable

from larkbot.errors import RateLimitError

MAX_BACKOFF_SECONDS = 300

LOG = logging.getLogger("larkbot.planner.rate_limit")


class GLMRateLimiter:
    """Tracks consecutive 429s; backs off 2**n seconds (capped at 5 minutes).

    One instance per planner; state is not shared between processes.
    """

    def __init__(self, service: str = "glm", clock: Callable[[], float] = time.time) -> None:
        self.service = service
        self._clock = clock
        self.consecutive_errors = 0
        self.last_error: float = 0.0
        self.backoff_until: float = 0.0

    def record_error(self) -> float:
        """Register a rate-limit response; returns the new backoff in seconds."""
        now = self._clock()
        self.consecutive_errors += 1
        self.last_error = now
        backoff = min(2**self.consecutive_errors, MAX_BACKOFF_SECONDS)
        self.backoff_until = now + backoff
        LOG.warning(
            "%s rate limit: backing off for %ss (attempt %s)",
            self.service,
            backoff,
            self.consecutive_errors,
        )
        return float(backoff)

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.backoff_until = 0.0

    def backoff_remaining(self) -> int:
        remaining = self.backoff_until - self._clock()
        return math.ceil(remaining) if remaining > 0 else 0

    def check(self) -> None:
        """Raise RateLimitError while a backoff window is open."""
        remaining = self.backoff_remaining()
        if remaining > 0:
            raise RateLimitError(self.service, remaining)

    @property
    def healthy(self) -> bool:
        return self.consecutive_errors == 0

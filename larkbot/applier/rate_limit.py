"""GitHub API quota tracking from x-ratelimit-* response headers."""

import logging
import time
from typing import Any, Callable, Dict, Mapping

from larkbot.errors import RateLimitError

STALE_AFTER_SECONDS = 300
DEFAULT_LIMIT = 5000

LOG = logging.getLogger("larkbot.applier.rate_limit")


def _int_header(headers: Mapping[str, Any], name: str) -> int | None:
    try:
        value = headers.get(name)
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class GitHubRateLimit:
    """Last known quota for one token; refuses requests while it is exhausted."""

    def __init__(self, clock: Callable[[], float] = time.time, threshold: int = 10) -> None:
        self._clock = clock
        self.threshold = threshold
        self.remaining: int | None = None
        self.limit: int | None = None
        self.reset_at: int | None = None
        self.last_checked: float | None = None

    def update(self, headers: Mapping[str, Any]) -> None:
        remaining = _int_header(headers, "x-ratelimit-remaining")
        limit = _int_header(headers, "x-ratelimit-limit")
        if remaining is None or limit is None:
            return
        reset = _int_header(headers, "x-ratelimit-reset")
        now = self._clock()
        self.remaining = remaining
        self.limit = limit or DEFAULT_LIMIT
        self.reset_at = reset if reset is not None else int(now) + 3600
        self.last_checked = now

    def check(self) -> None:
        """Raise RateLimitError when the quota is used up; warn when it is low.

        Data older than five minutes is ignored.
        """
        if self.remaining is None or self.last_checked is None:
            return
        now = self._clock()
        if now - self.last_checked > STALE_AFTER_SECONDS:
            return
        if self.remaining <= 0:
            retry_after = max(0, (self.reset_at or 0) - int(now))
            raise RateLimitError("github", retry_after)
        if self.remaining <= self.threshold:
            LOG.warning("GitHub rate limit low: %s/%s remaining, resets at %s", self.remaining, self.limit, self.reset_at)

    def status(self) -> Dict[str, Any]:
        return {
            "remaining": self.remaining if self.remaining is not None else -1,
            "limit": self.limit if self.limit is not None else -1,
            "reset_at": self.reset_at,
            "healthy": self.remaining is None or self.remaining > self.threshold,
        }

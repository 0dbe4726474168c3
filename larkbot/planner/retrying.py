"""Planner wrapper that retries transient failures within one call."""

import logging
import time
from typing import Callable, List

from larkbot.models import ChangeSet, JobContext, PlanResult, Question
from larkbot.planner.base import Planner
from larkbot.retry_policy import call_with_retry

LOG = logging.getLogger("larkbot.planner.retrying")


class RetryingPlanner(Planner):
    """Delegates to another planner via call_with_retry (1s, 2s, 4s...)."""

    def __init__(
        self,
        inner: Planner,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def _call(self, label: str, fn):
        return call_with_retry(
            fn,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
            label=label,
            log=LOG,
        )

    def analyze(self, message: str, context: JobContext) -> PlanResult:
        return self._call("planner.analyze", lambda: self.inner.analyze(message, context))

    def refine(self, answer: str, questions: List[Question], context: JobContext, message: str) -> PlanResult:
        return self._call("planner.refine", lambda: self.inner.refine(answer, questions, context, message))

    def generate(self, message: str, context: JobContext, questions: List[Question] | None = None) -> ChangeSet:
        return self._call("planner.generate", lambda: self.inner.generate(message, context, questions))

"""Scheduler: every interval, drain one pending job."""

import logging
import threading
import time
from typing import Callable

from larkbot.config import AppConfig
from larkbot.orchestrator import Orchestrator

LOG = logging.getLogger("larkbot.scheduler")


def run_scheduler_loop(
    orchestrator: Orchestrator,
    interval_seconds: int = 60,
    stop: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Loop: every interval_seconds, call process_next once. Runs until stop is set."""
    while stop is None or not stop.is_set():
        try:
            result = orchestrator.process_next()
            if not result.no_jobs:
                LOG.info("Scheduler: job %s %s", result.job_id, result.outcome)
        except Exception as e:
            LOG.exception("Scheduler tick error: %s", e)
        if stop is not None and stop.is_set():
            break
        sleep(interval_seconds)


def start_scheduler_thread(config: AppConfig, orchestrator: Orchestrator, stop: threading.Event | None = None) -> threading.Thread:
    """Start the drain loop in a daemon thread."""
    thread = threading.Thread(
        target=run_scheduler_loop,
        args=(orchestrator,),
        kwargs={"interval_seconds": config.scheduler.interval_seconds, "stop": stop},
        daemon=True,
        name="larkbot-scheduler",
    )
    thread.start()
    return thread

"""
Drain worker: process queued jobs outside the daemon.

`larkbot worker --once` runs exactly one process_next and exits, for use
with an external cron; without --once it polls the queue.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Callable

from larkbot.config import load_config
from larkbot.logging import BotLogging
from larkbot.models import ProcessResult
from larkbot.orchestrator import Orchestrator, make_orchestrator

LOG = logging.getLogger("larkbot.worker")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the worker."""
    parser = argparse.ArgumentParser(
        prog="larkbot worker",
        description="Lark bot worker - apply queued jobs",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one job then exit",
    )
    parser.add_argument(
        "--job-id",
        help="Process this job instead of the oldest pending one (implies --once)",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=10,
        help="Seconds to wait when queue is empty (default 10)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only load and validate config, then exit",
    )
    return parser.parse_args(argv)


def run_worker(
    orchestrator: Orchestrator,
    once: bool = False,
    poll_interval: int = 10,
    sleep: Callable[[float], None] = time.sleep,
    max_iterations: int | None = None,
) -> ProcessResult | None:
    """Drain the queue. With once=True returns the single ProcessResult."""
    iterations = 0
    while True:
        result = orchestrator.process_next()
        if once:
            return result
        iterations += 1
        if result.no_jobs:
            LOG.debug("Queue empty, sleeping %ss", poll_interval)
            sleep(poll_interval)
        else:
            LOG.info("Job %s %s", result.job_id, result.outcome)
        if max_iterations is not None and iterations >= max_iterations:
            return None


def main(argv: list[str] | None = None) -> int:
    """Entry point for larkbot worker."""
    args = parse_args(argv)
    config = load_config(args.config)

    if args.check:
        print("Config OK:", config.bot.default_repo_url, config.store.backend)
        return 0

    BotLogging(config.logging).setup()
    orchestrator = make_orchestrator(config)
    try:
        if args.job_id:
            result = orchestrator.process_specific(args.job_id)
            if result is None:
                LOG.error("Job %s not found or not processable", args.job_id)
                return 1
            print(json.dumps(result.to_dict()))
            return 0
        result = run_worker(orchestrator, once=args.once, poll_interval=args.poll_interval)
        if result is not None:
            print(json.dumps(result.to_dict()))
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        LOG.exception("Fatal error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

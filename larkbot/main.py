"""Lark bot entry point.

Two modes: daemon (webhook server + drain scheduler) and worker (drain
queued jobs, e.g. from an external cron). Usage: larkbot daemon | larkbot worker.
"""

import argparse
import logging
import sys
from pathlib import Path

from larkbot.config import load_config


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI with optional subcommand (daemon | worker)."""
    argv = argv if argv is not None else sys.argv[1:]
    sub = "daemon"
    rest = list(argv)
    if argv and not argv[0].startswith("-"):
        if argv[0] in ("daemon", "worker"):
            sub = argv[0]
            rest = argv[1:]

    parser = argparse.ArgumentParser(
        prog="larkbot",
        description="Lark bot - daemon (webhooks + scheduler) or worker (queue drain)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only load and validate config, then exit",
    )
    parsed, _ = parser.parse_known_args(rest)
    parsed.subcommand = sub
    parsed.rest = rest
    return parsed


def main(argv: list[str] | None = None) -> int:
    """Entry point: dispatch to daemon or worker."""
    args = parse_args(argv)

    if args.subcommand == "worker":
        from larkbot.worker import main as worker_main

        return worker_main(args.rest)

    config_path = args.config
    if not config_path.is_file() and config_path == Path("config.yaml"):
        if Path("config.example.yaml").is_file():
            config_path = Path("config.example.yaml")
            logging.basicConfig(level=logging.INFO)
            logging.getLogger("larkbot").warning("config.yaml not found, using config.example.yaml")

    config = load_config(config_path)

    if args.check:
        print("Config OK:", config.bot.default_repo_url, config.store.backend)
        return 0

    from larkbot.daemon import run_daemon

    try:
        run_daemon(config)
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("larkbot.daemon").exception("Fatal error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

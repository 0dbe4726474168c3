"""Logging for the daemon and the worker.

All larkbot modules log to ``larkbot.<module>`` loggers, so one root setup
covers them. What each level shows:

- ERROR: jobs failed for good, planner rejections
- WARNING: retries, undeliverable cards, skipped queue entries
- INFO: job transitions, drain outcomes, PRs opened
- DEBUG: store reads/writes and fetched repository files

``logging.levels`` overrides single subtrees, e.g. ``larkbot.store: DEBUG``
to trace the queue while the rest stays at INFO. HTTP client chatter
(urllib3) is held at WARNING unless a level is given for it.
"""

import logging
from typing import Dict

from larkbot.config import LoggingConfig

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
QUIET_LOGGERS = ("urllib3",)


def _resolve_level(level: str) -> int:
    """Map level name to logging constant; unknown names mean INFO."""
    return LEVELS.get(level.upper().strip(), logging.INFO)


class BotLogging:
    """Configures the root logger and per-logger overrides from LoggingConfig."""

    def __init__(self, config: LoggingConfig) -> None:
        self._level = _resolve_level(config.level)
        self._format = config.format or DEFAULT_FORMAT
        self._overrides: Dict[str, int] = {name: logging.WARNING for name in QUIET_LOGGERS}
        for name, level in (config.levels or {}).items():
            self._overrides[name] = _resolve_level(level)

    def setup(self) -> None:
        logging.basicConfig(
            level=self._level,
            format=self._format,
            force=True,
        )
        for name, level in self._overrides.items():
            logging.getLogger(name).setLevel(level)
        logging.getLogger("larkbot").debug("Logging overrides: %s", self._overrides)

"""
Lark bot daemon: webhook server plus in-process drain scheduler.

Receives Lark events, runs intake (planning and clarification dialogue)
and drains one queued job every scheduler.interval_seconds.
"""

import logging

from larkbot.config import AppConfig
from larkbot.logging import BotLogging
from larkbot.orchestrator import make_orchestrator
from larkbot.scheduler import run_scheduler_loop, start_scheduler_thread
from larkbot.webhook.server import run_webhook_server


def run_daemon(config: AppConfig) -> None:
    """Run the webhook server and, if enabled, the drain scheduler."""
    BotLogging(config.logging).setup()
    log = logging.getLogger("larkbot.daemon")
    orchestrator = make_orchestrator(config)

    log.info(
        "Lark bot daemon started | repo=%s | store=%s | webhook=%s | scheduler=%s",
        config.bot.default_repo_url,
        config.store.backend,
        config.webhook.enabled,
        config.scheduler.enabled,
    )
    if not config.webhook.enabled:
        if not config.scheduler.enabled:
            log.warning("Webhook and scheduler both disabled in config; daemon will do nothing useful.")
            return
        run_scheduler_loop(orchestrator, interval_seconds=config.scheduler.interval_seconds)
        return

    if config.scheduler.enabled:
        start_scheduler_thread(config, orchestrator)
    run_webhook_server(config, orchestrator)

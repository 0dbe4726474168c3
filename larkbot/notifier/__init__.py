"""Chat notifications (interactive cards)."""

from larkbot.config import AppConfig
from larkbot.notifier.base import Notifier
from larkbot.notifier.lark import LarkNotifier


def make_notifier(config: AppConfig) -> Notifier:
    return LarkNotifier(
        app_id=config.lark_app_id_resolved,
        app_secret=config.lark_app_secret_resolved,
        api_url=config.lark.api_url,
        timeout=config.lark.timeout,
    )


__all__ = ["LarkNotifier", "Notifier", "make_notifier"]

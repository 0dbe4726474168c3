"""Change applier: commits change-sets to the source-control host."""

from larkbot.applier.base import ChangeApplier
from larkbot.applier.github import GitHubApplier
from larkbot.applier.rate_limit import GitHubRateLimit
from larkbot.config import AppConfig


def make_applier(config: AppConfig) -> ChangeApplier:
    return GitHubApplier(
        token=config.github_token_resolved,
        api_url=config.github.api_url,
        timeout=config.github.timeout,
    )


__all__ = ["ChangeApplier", "GitHubApplier", "GitHubRateLimit", "make_applier"]

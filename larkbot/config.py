"""Configuration loading from YAML and environment.

Secrets (Lark app id, secret and verification token, GitHub token, planner API key, cron secret) are
taken from environment variables or from files (Docker secrets). Never put
real tokens in config files committed to the repo.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_secret(env_key: str, file_env_key: str) -> str | None:
    """Read secret from env var or from file path in env (e.g. Docker
    secrets)."""
    value = _current_env.get(env_key)
    if value:
        return value.strip()
    file_path = _current_env.get(file_env_key)
    if file_path:
        return Path(file_path).read_text().strip()
    return None


def _is_placeholder(value: str | None) -> bool:
    return not value or value.startswith("${") or value.startswith("your-")


# Injected by load_config so properties can read env/file
_current_env: dict[str, str] = {}


class BotConfig(BaseSettings):
    """Bot identity and default target repository."""

    model_config = SettingsConfigDict(env_prefix="BOT_", extra="ignore")

    name: str = Field(default="Lark Bot Agent", description="Bot display name")
    default_repo_url: str = Field(
        default="https://github.com/owner/repo",
        description="Repository that chat instructions apply to",
    )
    default_branch: str = Field(default="main", description="Base branch for new PRs")


class LarkConfig(BaseSettings):
    """Lark (Feishu) open platform settings."""

    model_config = SettingsConfigDict(env_prefix="LARK_", extra="ignore")

    app_id: str | None = Field(default=None, description="Self-built app id")
    app_secret: str | None = Field(default=None, description="App secret; use env or secret file")
    verification_token: str | None = Field(default=None, description="Event verification token")
    api_url: str = Field(default="https://open.larksuite.com", description="Open API base URL")
    webhook_path: str = Field(default="/webhook/lark", description="Event callback path")
    card_path: str = Field(default="/webhook/lark/card", description="Card action callback path")
    timeout: int = Field(default=15, ge=1, description="HTTP timeout in seconds")


class GitHubConfig(BaseSettings):
    """GitHub API settings."""

    model_config = SettingsConfigDict(env_prefix="GITHUB_", extra="ignore")

    token: str | None = Field(default=None, description="PAT or app token; use env or secret file")
    api_url: str = Field(default="https://api.github.com", description="API base URL")
    timeout: int = Field(default=30, ge=1, description="HTTP timeout in seconds")


class PlannerConfig(BaseSettings):
    """AI planner (chat completions) settings."""

    model_config = SettingsConfigDict(env_prefix="PLANNER_", extra="ignore")

    backend: str = Field(default="glm", description="glm or stub")
    api_key: str | None = Field(default=None, description="API key; use env or secret file")
    api_url: str = Field(
        default="https://api.z.ai/api/paas/v4/chat/completions",
        description="Chat completions endpoint",
    )
    model: str = Field(default="glm-4.7", description="Model name")
    temperature: float = Field(default=0.3, ge=0, le=2, description="Sampling temperature")
    max_tokens: int = Field(default=8192, ge=1, description="Completion token limit")
    timeout: int = Field(default=120, ge=1, description="HTTP timeout in seconds")
    max_attempts: int = Field(default=3, ge=1, le=10, description="In-call attempts per planner request")


class StoreConfig(BaseSettings):
    """Job store backend."""

    model_config = SettingsConfigDict(env_prefix="STORE_", extra="ignore")

    backend: str = Field(default="file", description="file or redis")
    data_dir: str = Field(default=".larkbot", description="Directory for the file backend")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for the redis backend")
    key_prefix: str = Field(default="", description="Prefix for all Redis keys")


class WebhookConfig(BaseSettings):
    """Webhook server settings."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", extra="ignore")

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port")
    enabled: bool = Field(default=True, description="Enable webhook server")
    cron_secret: str | None = Field(default=None, description="Bearer secret for /cron")


class SchedulerConfig(BaseSettings):
    """In-process drain scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    enabled: bool = Field(default=True, description="Run process_next periodically inside the daemon")
    interval_seconds: int = Field(default=60, ge=5, description="Seconds between drain ticks")


class LoggingConfig(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    levels: dict[str, str] = Field(
        default_factory=dict,
        description="Per-logger levels, e.g. {\"larkbot.store\": \"DEBUG\"}",
    )


class AppConfig(BaseSettings):
    """Root application config from YAML + env."""

    model_config = SettingsConfigDict(extra="ignore")

    bot: BotConfig = Field(default_factory=BotConfig)
    lark: LarkConfig = Field(default_factory=LarkConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def github_token_resolved(self) -> str | None:
        """Resolve GitHub token from config, env or Docker secret file."""
        t = self.github.token
        if not _is_placeholder(t):
            return t
        return _read_secret("GITHUB_TOKEN", "GITHUB_TOKEN_FILE")

    @property
    def lark_app_id_resolved(self) -> str | None:
        a = self.lark.app_id
        if not _is_placeholder(a):
            return a
        return _read_secret("LARK_APP_ID", "LARK_APP_ID_FILE")

    @property
    def lark_app_secret_resolved(self) -> str | None:
        """Resolve Lark app secret from config, env or Docker secret file."""
        s = self.lark.app_secret
        if not _is_placeholder(s):
            return s
        return _read_secret("LARK_APP_SECRET", "LARK_APP_SECRET_FILE")

    @property
    def lark_verification_token_resolved(self) -> str | None:
        """Resolve the event verification token; None disables the check."""
        t = self.lark.verification_token
        if not _is_placeholder(t):
            return t
        return _read_secret("LARK_VERIFICATION_TOKEN", "LARK_VERIFICATION_TOKEN_FILE")

    @property
    def planner_api_key_resolved(self) -> str | None:
        """Resolve planner API key (GLM_API_KEY is accepted for compatibility)."""
        k = self.planner.api_key
        if not _is_placeholder(k):
            return k
        return _read_secret("PLANNER_API_KEY", "PLANNER_API_KEY_FILE") or _read_secret(
            "GLM_API_KEY", "GLM_API_KEY_FILE"
        )

    @property
    def cron_secret_resolved(self) -> str | None:
        """Resolve drain trigger secret; None disables the check."""
        s = self.webhook.cron_secret
        if not _is_placeholder(s):
            return s
        return _read_secret("CRON_SECRET", "CRON_SECRET_FILE")


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and $VAR in strings with os.environ."""
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            key = value[2:-1].strip()
            return _current_env.get(key, value)
        if value.startswith("$") and not value.startswith("${"):
            key = value[1:].strip()
            return _current_env.get(key, value)
        return value
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    return value


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load config from YAML file and environment.

    Secrets: LARK_APP_ID, LARK_APP_SECRET, LARK_VERIFICATION_TOKEN, GITHUB_TOKEN, PLANNER_API_KEY (or GLM_API_KEY),
    CRON_SECRET, each also readable from a *_FILE path.
    """
    global _current_env
    import os

    _current_env = dict(os.environ)

    path = config_path or Path("config.yaml")
    if not path.is_file():
        return AppConfig()

    raw = yaml.safe_load(path.read_text()) or {}
    raw = _substitute_env(raw)

    # Env override for the target repository (DEFAULT_REPO_URL kept from the first deployments)
    bot_raw = raw.get("bot") or {}
    if _current_env.get("DEFAULT_REPO_URL"):
        bot_raw = {**bot_raw, "default_repo_url": _current_env.get("DEFAULT_REPO_URL")}

    return AppConfig(
        bot=BotConfig(**bot_raw),
        lark=LarkConfig(**(raw.get("lark") or {})),
        github=GitHubConfig(**(raw.get("github") or {})),
        planner=PlannerConfig(**(raw.get("planner") or {})),
        store=StoreConfig(**(raw.get("store") or {})),
        webhook=WebhookConfig(**(raw.get("webhook") or {})),
        scheduler=SchedulerConfig(**(raw.get("scheduler") or {})),
        logging=LoggingConfig(**(raw.get("logging") or {})),
    )

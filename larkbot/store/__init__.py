"""Job persistence: records, pending queue and per-user history."""

from pathlib import Path

from larkbot.config import StoreConfig
from larkbot.store.base import JobStore
from larkbot.store.file_store import FileJobStore
from larkbot.store.redis_store import RedisJobStore


def make_store(config: StoreConfig) -> JobStore:
    """Build the store selected by config.store.backend (file or redis)."""
    if config.backend == "redis":
        return RedisJobStore.from_url(config.redis_url, key_prefix=config.key_prefix)
    if config.backend != "file":
        raise ValueError(f"Unknown store backend: {config.backend}")
    return FileJobStore(Path(config.data_dir))


__all__ = ["FileJobStore", "JobStore", "RedisJobStore", "make_store"]

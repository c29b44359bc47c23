"""
Store Factory — Create the deduplication store backend from configuration.

Configuration in settings.yaml:
    dedup:
      # "redis"  — replicated redis servers, master tracked by failover
      # "memory" — in-process dicts (development, testing)
      backend: "redis"
      redis_servers: "redis1:6379, redis2:6379"
      redis_db: 4

With a single redis server the store connects to it directly. With several,
the store waits for a RedisConfigurationClient to tell it the master.

Usage:
    from dedup.store_factory import create_store
    store = create_store(settings.dedup)
"""
from __future__ import annotations

import structlog

from config.settings import DedupConfig
from dedup.store_base import DeduplicationStore

logger = structlog.get_logger()


def create_store(config: DedupConfig = None) -> DeduplicationStore:
    """Factory: create the appropriate deduplication store backend."""
    config = config or DedupConfig()

    if config.backend == "redis":
        from dedup.store_redis import RedisDeduplicationStore
        address = config.redis_servers[0] if len(config.redis_servers) == 1 else None
        store = RedisDeduplicationStore(config, address=address)
        logger.info("dedup_store_created", backend="redis", address=address,
                    servers=config.redis_servers)
        return store

    from dedup.store_memory import InMemoryDeduplicationStore
    logger.info("dedup_store_created", backend="memory")
    return InMemoryDeduplicationStore()

"""
Deduplication layer — at-most-once handler execution per message.

Backends:
  - Redis (replicated, failover aware)
  - In-memory (dict-based, for development/testing)

Quick start:
  from dedup import create_store
  store = create_store(settings.dedup)
  decision = await store.should_process("orders", msg_id, expires_at, lease=600)
"""
from dedup.store_base import DeduplicationStore
from dedup.store_factory import create_store
from dedup.store_memory import InMemoryDeduplicationStore
from dedup.store_redis import RedisDeduplicationStore

__all__ = [
    "DeduplicationStore",
    "InMemoryDeduplicationStore",
    "RedisDeduplicationStore",
    "create_store",
]

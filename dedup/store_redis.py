"""
RedisDeduplicationStore — Delivery records on the current redis master.

Keyspace (per consuming queue):
  msgid:<queue>:<msg_id>         hash: status, attempts, exceptions,
                                 ack_count, created_at, expires_at, delay
  msgid:<queue>:<msg_id>:mutex   lease lock, SET NX PX

Both keys carry an expiry no later than the message's expires_at, so
records of messages whose handler never completes are dropped by redis.

The master address is not configured statically when more than one redis
server is listed: a RedisConfigurationClient calls reconnect() whenever a
new master is announced. Until then every operation raises NoMasterError.
"""
from __future__ import annotations

import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import structlog
from redis import exceptions as redis_errors
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from brokers.redis_streams import redis_url
from config.settings import DedupConfig
from dedup.store_base import DeduplicationStore
from models.errors import NoMasterError, StoreConnectionError
from models.schemas import DeliveryRecord, DeliveryStatus, ProcessDecision

logger = structlog.get_logger()

_TRANSIENT = (redis_errors.ConnectionError, redis_errors.TimeoutError)
# A demoted master answers writes with READONLY until the failover client
# points the store at the new master.
_UNAVAILABLE = _TRANSIENT + (redis_errors.ReadOnlyError,)

# KEYS: record, mutex   ARGV: now, expires_at, lease_ms, token
SHOULD_PROCESS = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  redis.call('HSET', KEYS[1], 'status', 'in_progress', 'attempts', 1, 'exceptions', 0,
             'ack_count', 0, 'created_at', ARGV[1], 'expires_at', ARGV[2], 'delay', 0)
  redis.call('EXPIREAT', KEYS[1], ARGV[2])
  redis.call('SET', KEYS[2], ARGV[4], 'PX', ARGV[3])
  return 'proceed'
end
if status == 'completed' then return 'already_completed' end
if status == 'failed' then return 'already_failed' end
local delay = tonumber(redis.call('HGET', KEYS[1], 'delay') or '0')
if delay > tonumber(ARGV[1]) then return 'delayed' end
if redis.call('SET', KEYS[2], ARGV[4], 'NX', 'PX', ARGV[3]) then
  redis.call('HINCRBY', KEYS[1], 'attempts', 1)
  return 'proceed'
end
return 'duplicate_in_progress'
"""

# KEYS: record   ARGV: field, increment. Never resurrects an expired record.
INCREMENT = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
return redis.call('HINCRBY', KEYS[1], ARGV[1], ARGV[2])
"""

# KEYS: record, mutex   ARGV: field, value, drop_mutex
SET_FIELD = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
end
if ARGV[3] == '1' then redis.call('DEL', KEYS[2]) end
return 1
"""


class RedisDeduplicationStore(DeduplicationStore):
    """Production store; all record mutation happens inside redis."""

    def __init__(self, config: DedupConfig = None, address: Optional[str] = None):
        self.config = config or DedupConfig()
        self.address = address
        self._redis = None

    # ── connection handling ───────────────────────────────────

    def _client(self):
        if self.address is None:
            raise NoMasterError("no redis master known for the deduplication store")
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                redis_url(self.address, self.config.redis_db),
                decode_responses=True,
            )
        return self._redis

    async def reconnect(self, address: str) -> None:
        if address == self.address and self._redis is not None:
            return
        old = self._redis
        self._redis = None
        self.address = address
        if old is not None:
            try:
                await old.aclose()
            except _TRANSIENT as e:
                logger.debug("dedup_store_close_failed", error=str(e))
        logger.info("dedup_store_reconnected", address=address)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=1),
        reraise=True,
    )
    async def _attempt(self, operation: Callable[[Any], Awaitable[Any]]) -> Any:
        return await operation(self._client())

    async def _execute(self, operation: Callable[[Any], Awaitable[Any]]) -> Any:
        try:
            return await self._attempt(operation)
        except _UNAVAILABLE as e:
            logger.warning("dedup_store_unavailable", address=self.address, error=str(e))
            raise StoreConnectionError(str(e)) from e

    def _keys(self, queue: str, msg_id: str) -> list[str]:
        record = f"{self.config.key_prefix}:{queue}:{msg_id}"
        return [record, f"{record}:mutex"]

    # ── operations ────────────────────────────────────────────

    async def should_process(self, queue: str, msg_id: str, expires_at: float, lease: float) -> ProcessDecision:
        now = time.time()
        args = [now, int(expires_at), max(1, int(lease * 1000)), uuid.uuid4().hex]
        keys = self._keys(queue, msg_id)
        result = await self._execute(lambda r: r.eval(SHOULD_PROCESS, 2, *keys, *args))
        return ProcessDecision(result)

    async def _set_field(self, queue: str, msg_id: str, field: str, value: Any, drop_mutex: bool):
        keys = self._keys(queue, msg_id)
        flag = "1" if drop_mutex else "0"
        await self._execute(lambda r: r.eval(SET_FIELD, 2, *keys, field, value, flag))

    async def _increment(self, queue: str, msg_id: str, field: str) -> int:
        key = self._keys(queue, msg_id)[0]
        return int(await self._execute(lambda r: r.eval(INCREMENT, 1, key, field, 1)))

    async def mark_completed(self, queue: str, msg_id: str) -> None:
        await self._set_field(queue, msg_id, "status", DeliveryStatus.COMPLETED.value, drop_mutex=True)

    async def mark_failed(self, queue: str, msg_id: str) -> None:
        await self._set_field(queue, msg_id, "status", DeliveryStatus.FAILED.value, drop_mutex=True)

    async def increment_exceptions(self, queue: str, msg_id: str) -> int:
        return await self._increment(queue, msg_id, "exceptions")

    async def increment_ack_count(self, queue: str, msg_id: str) -> int:
        return await self._increment(queue, msg_id, "ack_count")

    async def delay(self, queue: str, msg_id: str, until: float) -> None:
        await self._set_field(queue, msg_id, "delay", until, drop_mutex=False)

    async def release_mutex(self, queue: str, msg_id: str) -> None:
        mutex = self._keys(queue, msg_id)[1]
        await self._execute(lambda r: r.delete(mutex))

    async def get_record(self, queue: str, msg_id: str) -> Optional[DeliveryRecord]:
        record_key, mutex_key = self._keys(queue, msg_id)

        async def read(r):
            pipe = r.pipeline(transaction=True)
            pipe.hgetall(record_key)
            pipe.exists(mutex_key)
            return await pipe.execute()

        data, mutex = await self._execute(read)
        if not data:
            return None
        return DeliveryRecord.from_redis(queue, msg_id, data, bool(mutex))

    async def garbage_collect(self) -> int:
        """Redis expires keys itself; this sweeps records that lost their TTL."""
        now = time.time()

        async def sweep(r):
            removed = 0
            async for key in r.scan_iter(match=f"{self.config.key_prefix}:*", count=500):
                if key.endswith(":mutex"):
                    continue
                expires_at = await r.hget(key, "expires_at")
                if expires_at is not None and float(expires_at) <= now:
                    if await r.delete(key, f"{key}:mutex"):
                        removed += 1
            return removed

        removed = await self._execute(sweep)
        if removed:
            logger.info("dedup_records_collected", count=removed)
        return removed

"""
RedisServer — the handful of redis commands failover needs.

Every method raises StoreConnectionError when the server cannot be
reached, so callers only deal with one error type.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable

import structlog
from redis import exceptions as redis_errors

from brokers.redis_streams import redis_url
from models.errors import StoreConnectionError
from models.schemas import ServerRole

logger = structlog.get_logger()

EPOCH_KEY = "beetle:redis_master_epoch"
CHECK_TIMEOUT = 2.0


def split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    if not host:
        return address, 6379
    return host, int(port)


class RedisServer:

    def __init__(self, address: str, epoch_key: str = EPOCH_KEY, timeout: float = CHECK_TIMEOUT):
        self.address = address
        self.epoch_key = epoch_key
        self.timeout = timeout
        self._redis = None

    def __repr__(self):
        return f"<RedisServer {self.address}>"

    @asynccontextmanager
    async def _client(self):
        import redis.asyncio as aioredis
        if self._redis is None:
            self._redis = aioredis.from_url(
                redis_url(self.address), socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout, decode_responses=True,
            )
        try:
            yield self._redis
        except (redis_errors.RedisError, OSError) as e:
            raise StoreConnectionError(f"redis {self.address}: {e}") from e

    async def ping(self) -> bool:
        async with self._client() as r:
            return bool(await r.ping())

    async def role(self) -> ServerRole:
        async with self._client() as r:
            info = await r.info("replication")
        role = info.get("role")
        if role == "master":
            return ServerRole.MASTER
        if role in ("slave", "replica"):
            return ServerRole.SLAVE
        return ServerRole.UNKNOWN

    async def promote(self):
        """SLAVEOF NO ONE"""
        async with self._client() as r:
            await r.slaveof()
        logger.info("redis_promoted", server=self.address)

    async def slave_of(self, master: str):
        host, port = split_address(master)
        async with self._client() as r:
            await r.slaveof(host, port)
        logger.info("redis_reconfigured", server=self.address, master=master)

    async def get_epoch(self) -> int:
        async with self._client() as r:
            value = await r.get(self.epoch_key)
        return int(value) if value else 0

    async def set_epoch(self, epoch: int):
        async with self._client() as r:
            await r.set(self.epoch_key, epoch)

    async def close(self):
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except (redis_errors.RedisError, OSError) as e:
                logger.debug("redis_close_failed", server=self.address, error=str(e))
            self._redis = None


ServerFactory = Callable[[str], RedisServer]


def server_factory(epoch_key: str = EPOCH_KEY) -> ServerFactory:
    return lambda address: RedisServer(address, epoch_key=epoch_key)

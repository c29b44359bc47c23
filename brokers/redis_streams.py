"""
Redis Streams broker backend.

Each broker server is an independent redis instance:
  beetle:exchange:<name>   hash, queue name → JSON list of binding keys
  beetle:queue:<name>      stream, one entry per routed message
  beetle:reply:<id>        list, rpc replies (expires after REPLY_TTL)

Queues are consumed through a shared consumer group so every process
listening on a queue competes for deliveries. Rejected deliveries are
re-added to the stream and the original entry is acknowledged. Entries
left pending by a crashed consumer are reclaimed after CLAIM_IDLE_MS.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import contextmanager
from typing import AsyncIterator, Optional

import structlog
from redis import exceptions as redis_errors

from brokers.base import Broker, Delivery, DeliveryCallback, MessageEnvelope, topic_matches
from models.errors import BrokerConnectionError

logger = structlog.get_logger()

EXCHANGE_PREFIX = "beetle:exchange:"
QUEUE_PREFIX = "beetle:queue:"
REPLY_PREFIX = "beetle:reply:"
REPLY_TTL = 300
CLAIM_IDLE_MS = 60_000


def redis_url(server: str, db: int = 0) -> str:
    if server.startswith(("redis://", "rediss://", "unix://")):
        return server
    return f"redis://{server}/{db}"


class RedisStreamsBroker(Broker):
    """Production broker server backed by Redis Streams."""

    def __init__(self, server: str, consumer_group: str = "beetle", block_ms: int = 2000):
        super().__init__(server)
        self._url = redis_url(server)
        self._consumer_group = consumer_group
        self._block_ms = block_ms
        self._redis = None
        self._groups: set[str] = set()

    @contextmanager
    def _errors(self):
        try:
            yield
        except (redis_errors.ConnectionError, redis_errors.TimeoutError, OSError) as e:
            raise BrokerConnectionError(self.server, str(e)) from e

    async def connect(self):
        import redis.asyncio as aioredis
        if self._redis is not None:
            return
        with self._errors():
            self._redis = aioredis.from_url(self._url, max_connections=20)
            await self._redis.ping()
        logger.info("broker_connected", server=self.server)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("broker_disconnected", server=self.server)

    async def ping(self) -> bool:
        await self.connect()
        with self._errors():
            return bool(await self._redis.ping())

    async def _ensure_group(self, queue: str):
        if queue in self._groups:
            return
        try:
            await self._redis.xgroup_create(QUEUE_PREFIX + queue, self._consumer_group, id="0", mkstream=True)
        except redis_errors.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add(queue)

    async def declare_queue(self, queue: str, bindings: list[tuple[str, str]]):
        await self.connect()
        with self._errors():
            for exchange, key in bindings:
                hkey = EXCHANGE_PREFIX + exchange
                current = await self._redis.hget(hkey, queue)
                keys = json.loads(current) if current else []
                if key not in keys:
                    keys.append(key)
                    await self._redis.hset(hkey, queue, json.dumps(keys))
            await self._ensure_group(queue)
        logger.debug("queue_declared", server=self.server, queue=queue, bindings=bindings)

    async def _route(self, exchange: str, routing_key: str) -> list[str]:
        bindings = await self._redis.hgetall(EXCHANGE_PREFIX + exchange)
        queues = []
        for queue, keys in bindings.items():
            if any(topic_matches(k, routing_key) for k in json.loads(keys)):
                queues.append(queue.decode() if isinstance(queue, bytes) else queue)
        return queues

    async def publish(self, envelope: MessageEnvelope) -> int:
        await self.connect()
        with self._errors():
            queues = await self._route(envelope.exchange, envelope.routing_key)
            if not queues:
                return 0
            pipe = self._redis.pipeline(transaction=True)
            for queue in queues:
                pipe.xadd(QUEUE_PREFIX + queue, envelope.to_dict())
            await pipe.execute()
        return len(queues)

    def _delivery(self, queue: str, entry_id, fields) -> Delivery:
        envelope = MessageEnvelope.from_dict(fields)
        tag = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return Delivery(
            envelope=envelope,
            queue=queue,
            server=self.server,
            delivery_tag=tag,
            redelivered=envelope.headers.get("redelivered") == "1",
        )

    async def _reclaim(self, queue: str, consumer_name: str) -> list:
        result = await self._redis.xautoclaim(
            QUEUE_PREFIX + queue, self._consumer_group, consumer_name,
            min_idle_time=CLAIM_IDLE_MS, start_id="0-0", count=10,
        )
        return result[1] if len(result) > 1 else []

    async def consume(self, queue: str, callback: DeliveryCallback, consumer_name: str = ""):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self.connect()
        with self._errors():
            await self._ensure_group(queue)
        self._running = True
        logger.info("consumer_started", server=self.server, queue=queue, consumer=consumer_name)

        while self._running:
            try:
                await self.wait_for_flow(queue)
                with self._errors():
                    entries = await self._reclaim(queue, consumer_name)
                    if not entries:
                        streams = await self._redis.xreadgroup(
                            groupname=self._consumer_group,
                            consumername=consumer_name,
                            streams={QUEUE_PREFIX + queue: ">"},
                            count=10,
                            block=self._block_ms,
                        )
                        entries = [e for _, stream_entries in streams or [] for e in stream_entries]

                for entry_id, fields in entries:
                    if not fields:
                        continue  # trimmed while pending
                    await callback(self._delivery(queue, entry_id, fields))
                    if not self._running:
                        break

            except asyncio.CancelledError:
                break
            except BrokerConnectionError as e:
                logger.warning("consumer_connection_lost", server=self.server, queue=queue, error=str(e))
                await asyncio.sleep(1)
            except Exception as e:
                logger.error("consumer_error", server=self.server, queue=queue, error=str(e))
                await asyncio.sleep(1)

        logger.info("consumer_stopped", server=self.server, queue=queue)

    async def ack(self, delivery: Delivery):
        with self._errors():
            await self._redis.xack(QUEUE_PREFIX + delivery.queue, self._consumer_group, delivery.delivery_tag)

    async def reject(self, delivery: Delivery):
        envelope = delivery.envelope
        envelope.headers["redelivered"] = "1"
        stream = QUEUE_PREFIX + delivery.queue
        with self._errors():
            pipe = self._redis.pipeline(transaction=True)
            pipe.xadd(stream, envelope.to_dict())
            pipe.xack(stream, self._consumer_group, delivery.delivery_tag)
            await pipe.execute()

    async def purge(self, queue: str) -> int:
        await self.connect()
        with self._errors():
            return await self._redis.xtrim(QUEUE_PREFIX + queue, maxlen=0, approximate=False)

    async def delete_queue(self, queue: str):
        await self.connect()
        with self._errors():
            async for hkey in self._redis.scan_iter(match=EXCHANGE_PREFIX + "*"):
                await self._redis.hdel(hkey, queue)
            await self._redis.delete(QUEUE_PREFIX + queue)
        self._groups.discard(queue)
        logger.debug("queue_deleted", server=self.server, queue=queue)

    async def send_reply(self, reply_to: str, payload: bytes):
        await self.connect()
        key = REPLY_PREFIX + reply_to
        with self._errors():
            pipe = self._redis.pipeline(transaction=True)
            pipe.rpush(key, payload)
            pipe.expire(key, REPLY_TTL)
            await pipe.execute()

    async def wait_reply(self, reply_to: str, timeout: float) -> Optional[bytes]:
        await self.connect()
        with self._errors():
            result = await self._redis.blpop([REPLY_PREFIX + reply_to], timeout=timeout)
        if result is None:
            return None
        return result[1]

    async def broadcast(self, channel: str, payload: bytes):
        await self.connect()
        with self._errors():
            await self._redis.publish(channel, payload)

    async def listen_channel(self, channel: str) -> AsyncIterator[bytes]:
        await self.connect()
        pubsub = self._redis.pubsub()
        try:
            with self._errors():
                await pubsub.subscribe(channel)
                async for item in pubsub.listen():
                    if item.get("type") == "message":
                        yield item["data"]
        finally:
            await pubsub.aclose()

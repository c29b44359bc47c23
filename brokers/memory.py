"""
In-memory broker backend (development and tests).

Broker servers live in a process-wide registry keyed by address, so a
Publisher and a Subscriber created in the same process talk to the same
simulated server. A server can be switched off with `available = False`
to exercise failover paths.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import structlog

from brokers.base import Broker, Delivery, DeliveryCallback, MessageEnvelope, topic_matches
from models.errors import BrokerConnectionError

logger = structlog.get_logger()


@dataclass
class InMemoryServer:
    address: str
    available: bool = True
    bindings: dict[str, dict[str, list[str]]] = field(default_factory=lambda: defaultdict(dict))
    queues: dict[str, asyncio.Queue] = field(default_factory=dict)
    unacked: dict[str, Delivery] = field(default_factory=dict)
    replies: dict[str, asyncio.Queue] = field(default_factory=dict)
    subscribers: dict[str, list[asyncio.Queue]] = field(default_factory=lambda: defaultdict(list))
    published: list[MessageEnvelope] = field(default_factory=list)

    def queue(self, name: str) -> asyncio.Queue:
        if name not in self.queues:
            self.queues[name] = asyncio.Queue()
        return self.queues[name]

    def reply_queue(self, name: str) -> asyncio.Queue:
        if name not in self.replies:
            self.replies[name] = asyncio.Queue()
        return self.replies[name]

    def queue_length(self, name: str) -> int:
        return self.queue(name).qsize()


_servers: dict[str, InMemoryServer] = {}
_tags = itertools.count(1)


def get_server(address: str) -> InMemoryServer:
    if address not in _servers:
        _servers[address] = InMemoryServer(address=address)
    return _servers[address]


def reset_servers() -> None:
    """Forget all simulated servers (for testing)."""
    _servers.clear()


class InMemoryBroker(Broker):
    """
    Development/test broker backed by asyncio queues.
    Single-process only — no persistence.
    """

    def __init__(self, server: str):
        super().__init__(server)
        self.state = get_server(server)
        self._connected = False

    def _check(self):
        if not self.state.available:
            raise BrokerConnectionError(self.server, "server down")

    async def connect(self):
        self._check()
        if not self._connected:
            self._connected = True
            logger.info("broker_connected", server=self.server, backend="memory")

    async def close(self):
        self._running = False
        self._connected = False

    async def ping(self) -> bool:
        self._check()
        return True

    async def declare_queue(self, queue: str, bindings: list[tuple[str, str]]):
        self._check()
        for exchange, key in bindings:
            keys = self.state.bindings[exchange].setdefault(queue, [])
            if key not in keys:
                keys.append(key)
        self.state.queue(queue)

    async def publish(self, envelope: MessageEnvelope) -> int:
        self._check()
        routed = 0
        for queue, keys in self.state.bindings.get(envelope.exchange, {}).items():
            if any(topic_matches(k, envelope.routing_key) for k in keys):
                copy = MessageEnvelope.from_dict(envelope.to_dict())
                self.state.queue(queue).put_nowait(copy)
                routed += 1
        self.state.published.append(envelope)
        return routed

    async def consume(self, queue: str, callback: DeliveryCallback, consumer_name: str = ""):
        self._check()
        q = self.state.queue(queue)
        self._running = True
        logger.info("consumer_started", server=self.server, queue=queue, backend="memory")

        while self._running:
            try:
                await self.wait_for_flow(queue)
                envelope = await asyncio.wait_for(q.get(), timeout=0.05)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            delivery = Delivery(
                envelope=envelope,
                queue=queue,
                server=self.server,
                delivery_tag=str(next(_tags)),
                redelivered=envelope.headers.get("redelivered") == "1",
            )
            self.state.unacked[delivery.delivery_tag] = delivery
            try:
                await callback(delivery)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", server=self.server, queue=queue, error=str(e))
            await asyncio.sleep(0)

        logger.info("consumer_stopped", server=self.server, queue=queue)

    async def ack(self, delivery: Delivery):
        self._check()
        self.state.unacked.pop(delivery.delivery_tag, None)

    async def reject(self, delivery: Delivery):
        self._check()
        self.state.unacked.pop(delivery.delivery_tag, None)
        delivery.envelope.headers["redelivered"] = "1"
        self.state.queue(delivery.queue).put_nowait(delivery.envelope)

    async def purge(self, queue: str) -> int:
        self._check()
        q = self.state.queue(queue)
        purged = 0
        while not q.empty():
            q.get_nowait()
            purged += 1
        return purged

    async def delete_queue(self, queue: str):
        self._check()
        for queues in self.state.bindings.values():
            queues.pop(queue, None)
        self.state.queues.pop(queue, None)

    async def send_reply(self, reply_to: str, payload: bytes):
        self._check()
        self.state.reply_queue(reply_to).put_nowait(payload)

    async def wait_reply(self, reply_to: str, timeout: float) -> Optional[bytes]:
        self._check()
        try:
            return await asyncio.wait_for(self.state.reply_queue(reply_to).get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self.state.replies.pop(reply_to, None)

    async def broadcast(self, channel: str, payload: bytes):
        self._check()
        for subscriber in self.state.subscribers.get(channel, []):
            subscriber.put_nowait(payload)

    async def listen_channel(self, channel: str) -> AsyncIterator[bytes]:
        self._check()
        inbox: asyncio.Queue = asyncio.Queue()
        self.state.subscribers[channel].append(inbox)
        try:
            while True:
                try:
                    payload = await asyncio.wait_for(inbox.get(), timeout=0.05)
                except asyncio.TimeoutError:
                    self._check()
                    continue
                yield payload
        finally:
            self.state.subscribers[channel].remove(inbox)

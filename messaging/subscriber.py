"""
Subscriber — consumes registered queues from every broker server.

Runs as async tasks inside the application process, one per (server,
queue). Subscribing servers are the publishing servers plus
additional_subscription_servers, so a consumer can drain an old cluster
while producers already publish to a new one.

Per-queue lifecycle:

  unsubscribed ──listen──▶ subscribing ──▶ listening ◀──resume── paused
                                               │ ──pause──────────▲
                                               ▼
                                            stopped

A redundant message arrives once per broker server; the deduplication
store decides which copy runs the handler, the others are acknowledged.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import os
import socket
import uuid
from typing import Any, Callable, Iterable, Optional

import structlog

from brokers.base import Broker, Delivery
from brokers.factory import BrokerFactory, broker_factory
from config.settings import Settings
from dedup.store_base import DeduplicationStore
from messaging.handler import Handler
from messaging.message import Action, Message, ProcessingResult, Reason
from messaging.topology import Topology
from models.errors import BrokerConnectionError, ConfigurationError, StoreConnectionError, SubscriberStateError
from models.schemas import QueueState

logger = structlog.get_logger()

STOP_GRACE_SECONDS = 5.0


def trace_queue_name(queue: str) -> str:
    """Private per-process queue receiving a copy of everything routed to queue."""
    return f"trace-{queue}-{socket.gethostname()}-{os.getpid()}"


class Subscriber:
    """
    Usage:
        subscriber = Subscriber(topology, store, settings)
        subscriber.register_handler(["orders"], handler)
        await subscriber.listen_queues(["orders"])   # returns once subscribed
        await subscriber.wait_stopped()              # blocks until stop()
        await subscriber.stop()
    """

    def __init__(
        self,
        topology: Topology,
        store: DeduplicationStore,
        settings: Settings = None,
        factory: BrokerFactory = None,
    ):
        self.topology = topology
        self.store = store
        self.settings = settings or Settings()
        self.servers = self.settings.subscription_servers
        self._factory = factory or broker_factory(self.settings.brokers)
        self._brokers: dict[str, Broker] = {}
        self.handlers: dict[str, Handler] = {}
        self.states: dict[str, QueueState] = {}
        self._tasks: dict[tuple[str, str], asyncio.Task] = {}
        self._consumer_name = f"consumer_{uuid.uuid4().hex[:8]}"
        self._gc_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    def broker(self, server: str) -> Broker:
        if server not in self._brokers:
            self._brokers[server] = self._factory(server)
        return self._brokers[server]

    def register_handler(self, queues: Iterable[str], handler: Handler):
        for queue in queues:
            if queue in self.handlers:
                raise ConfigurationError(f"queue {queue} already has a handler")
            self.handlers[queue] = handler
            self.states.setdefault(queue, QueueState.UNSUBSCRIBED)

    def state(self, queue: str) -> QueueState:
        return self.states.get(queue, QueueState.UNSUBSCRIBED)

    def _transition(self, queue: str, allowed: set[QueueState], new: QueueState):
        current = self.state(queue)
        if current not in allowed:
            raise SubscriberStateError(f"queue {queue} cannot go from {current.value} to {new.value}")
        self.states[queue] = new
        logger.debug("queue_state_changed", queue=queue, old=current.value, new=new.value)

    # ── lifecycle ─────────────────────────────────────────────

    async def listen_queues(self, queues: Iterable[str]):
        """Declare and subscribe queues on every server. Returns once consuming."""
        queues = list(queues)
        for queue in queues:
            if queue not in self.handlers:
                raise ConfigurationError(f"no handler registered for queue {queue}")
        self._stopped.clear()

        for queue in queues:
            self._transition(queue, {QueueState.UNSUBSCRIBED, QueueState.STOPPED}, QueueState.SUBSCRIBING)
            for server in self.servers:
                key = (server, queue)
                self._tasks[key] = asyncio.create_task(self._consume(server, queue))
            self._transition(queue, {QueueState.SUBSCRIBING}, QueueState.LISTENING)

        if self._gc_task is None and self.settings.dedup.gc_interval > 0:
            self._gc_task = asyncio.create_task(self._collect_garbage(self.settings.dedup.gc_interval))
        logger.info("subscriber_listening", queues=queues, servers=self.servers)

    async def _consume(self, server: str, queue: str):
        """Keep a subscription alive on one server until the queue is stopped."""
        broker = self.broker(server)
        while self.state(queue) in (QueueState.LISTENING, QueueState.PAUSED, QueueState.SUBSCRIBING):
            try:
                await broker.connect()
                await broker.declare_queue(queue, self.topology.queue_bindings(queue))
                await broker.consume(queue, self._handle, consumer_name=self._consumer_name)
                return
            except asyncio.CancelledError:
                return
            except BrokerConnectionError as e:
                logger.warning("subscription_failed", server=server, queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def _collect_garbage(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.store.garbage_collect()
            except StoreConnectionError as e:
                logger.warning("dedup_gc_failed", error=str(e))

    async def trace_queues(self, queues: Iterable[str], tracer: Callable[[Message], Any]):
        """
        Show copies of the traffic on queues without taking anything away
        from their consumers. Traced copies bypass deduplication and are
        acknowledged right after the tracer ran.
        """
        queues = list(queues)
        self._stopped.clear()
        for queue in queues:
            for server in self.servers:
                key = (server, trace_queue_name(queue))
                self._tasks[key] = asyncio.create_task(self._trace(server, queue, tracer))
        logger.info("subscriber_tracing", queues=queues, servers=self.servers)

    async def _trace(self, server: str, queue: str, tracer: Callable[[Message], Any]):
        broker = self.broker(server)
        name = trace_queue_name(queue)

        async def show(delivery: Delivery):
            try:
                value = tracer(Message(delivery, self.store))
                if inspect.isawaitable(value):
                    await value
            except Exception as e:
                logger.warning("tracer_failed", queue=queue, msg_id=delivery.envelope.msg_id, error=str(e))
            await broker.ack(delivery)

        try:
            await broker.connect()
            await broker.declare_queue(name, self.topology.queue_bindings(queue))
            await broker.consume(name, show, consumer_name=self._consumer_name)
        except BrokerConnectionError as e:
            logger.warning("trace_failed", server=server, queue=queue, error=str(e))
            return
        try:
            await broker.delete_queue(name)
        except BrokerConnectionError as e:
            logger.warning("trace_queue_not_deleted", server=server, queue=name, error=str(e))

    def pause_listening(self, queues: Iterable[str]):
        for queue in queues:
            self._transition(queue, {QueueState.LISTENING, QueueState.PAUSED}, QueueState.PAUSED)
            for server in self.servers:
                self.broker(server).pause(queue)
        logger.info("subscriber_paused", queues=list(queues))

    def resume_listening(self, queues: Iterable[str]):
        for queue in queues:
            self._transition(queue, {QueueState.PAUSED, QueueState.LISTENING}, QueueState.LISTENING)
            for server in self.servers:
                self.broker(server).resume(queue)
        logger.info("subscriber_resumed", queues=list(queues))

    async def stop(self):
        """Stop consuming everywhere. In-flight deliveries get a grace period."""
        for queue, state in list(self.states.items()):
            if state != QueueState.UNSUBSCRIBED:
                self.states[queue] = QueueState.STOPPED
        for broker in self._brokers.values():
            broker.stop_consuming()
            for queue in self.states:
                broker.resume(queue)

        if self._gc_task is not None:
            self._gc_task.cancel()
            await asyncio.gather(self._gc_task, return_exceptions=True)
            self._gc_task = None

        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=STOP_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        for broker in self._brokers.values():
            await broker.close()
        self._brokers.clear()
        self._stopped.set()
        logger.info("subscriber_stopped")

    async def wait_stopped(self):
        await self._stopped.wait()

    # ── dispatch ──────────────────────────────────────────────

    async def _handle(self, delivery: Delivery) -> Optional[ProcessingResult]:
        handler = self.handlers.get(delivery.queue)
        broker = self.broker(delivery.server)
        if handler is None:
            logger.error("no_handler_for_queue", queue=delivery.queue)
            await broker.reject(delivery)
            return None

        message = Message(delivery, self.store)
        try:
            result = await message.process(handler)
        except Exception as e:
            # unknown state: hand the delivery back rather than leave it unsettled
            logger.error("dispatch_failed", queue=delivery.queue, msg_id=message.msg_id, error=str(e))
            result = ProcessingResult(Action.REJECT, Reason.INTERNAL_ERROR)

        try:
            if result.action == Action.ACK:
                await broker.ack(delivery)
            else:
                await broker.reject(delivery)
        except BrokerConnectionError as e:
            logger.warning("delivery_settle_failed", server=delivery.server, msg_id=message.msg_id, error=str(e))
            return result

        if result.action == Action.ACK:
            await self._count_ack(message)
        if delivery.envelope.reply_to and result.action == Action.ACK:
            await self._reply(broker, delivery, result)
        return result

    async def _count_ack(self, message: Message):
        try:
            await self.store.increment_ack_count(message.queue, message.msg_id)
        except Exception as e:
            logger.warning("ack_count_failed", msg_id=message.msg_id, error=str(e))

    async def _reply(self, broker: Broker, delivery: Delivery, result: ProcessingResult):
        payload = json.dumps({"status": result.reason.value, "result": result.value}, default=str).encode()
        try:
            await broker.send_reply(delivery.envelope.reply_to, payload)
        except BrokerConnectionError as e:
            logger.warning("rpc_reply_failed", reply_to=delivery.envelope.reply_to, error=str(e))

"""
Client — the application's entry point to Beetle.

Owns the topology and creates the publisher, the subscriber and the
deduplication store on first use. With a redis store spread over several
servers a RedisConfigurationClient is embedded so the store follows
master changes.

Usage:
    client = Client(load_settings())
    client.register_queue("invoices", exchange="orders", key="order.#")
    client.register_message("order.created", exchange="orders", redundant=True)

    @client.register_handler("invoices", exceptions=2)
    async def handle_invoice(message):
        ...

    await client.publish("order.created", payload)
    await client.listen_queues("invoices")     # until stop_listening()
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from brokers.factory import BrokerFactory
from config.settings import Settings
from dedup.store_base import DeduplicationStore
from dedup.store_factory import create_store
from failover.configuration_client import RedisConfigurationClient
from messaging.handler import Handler, HandlerOptions
from messaging.publisher import Publisher
from messaging.subscriber import Subscriber
from messaging.topology import Topology, TopologyBuilder
from models.errors import ConfigurationError
from models.schemas import PublishResult

logger = structlog.get_logger()


class Client:

    def __init__(
        self,
        settings: Settings = None,
        store: DeduplicationStore = None,
        factory: BrokerFactory = None,
    ):
        self.settings = settings or Settings()
        self.topology = Topology()
        self._factory = factory
        self._store = store
        self._publisher: Optional[Publisher] = None
        self._subscriber: Optional[Subscriber] = None
        self._configuration_client: Optional[RedisConfigurationClient] = None
        self._handlers: list[tuple[list[str], Handler]] = []

    # ── lazily created components ─────────────────────────────

    @property
    def store(self) -> DeduplicationStore:
        if self._store is None:
            self._store = create_store(self.settings.dedup)
        return self._store

    @property
    def publisher(self) -> Publisher:
        if self._publisher is None:
            self._publisher = Publisher(self.topology, self.settings, self._factory)
        return self._publisher

    @property
    def subscriber(self) -> Subscriber:
        if self._subscriber is None:
            self._subscriber = Subscriber(self.topology, self.store, self.settings, self._factory)
            for queues, handler in self._handlers:
                self._subscriber.register_handler(queues, handler)
        return self._subscriber

    def _needs_master_discovery(self) -> bool:
        return (self.settings.dedup.backend == "redis"
                and getattr(self.store, "address", None) is None)

    async def _ensure_master(self):
        if self._configuration_client is not None or not self._needs_master_discovery():
            return
        configuration = RedisConfigurationClient(self.settings, brokers=self._factory)
        configuration.register_store(self.store)
        await configuration.determine_initial_master()
        configuration.start()
        self._configuration_client = configuration

    # ── registration ──────────────────────────────────────────

    def register_exchange(self, name: str, **options) -> dict[str, Any]:
        return self.topology.register_exchange(name, **options)

    def register_queue(self, name: str, **options) -> dict[str, Any]:
        return self.topology.register_queue(name, **options)

    def register_binding(self, queue_name: str, **options):
        return self.topology.register_binding(queue_name, **options)

    def register_message(self, message_name: str, **options) -> dict[str, Any]:
        return self.topology.register_message(message_name, **options)

    def register_handler(self, queues, target=None, **options):
        """
        Attach a handler to one or more queues.

        Without a target it works as a decorator:
            @client.register_handler("invoices", attempts=3)
            def handle(message): ...
        """
        if target is None:
            def decorator(fn):
                self.register_handler(queues, fn, **options)
                return fn
            return decorator

        names = self.topology.queue_names([queues] if isinstance(queues, str) else queues)
        handled = {q for qs, _ in self._handlers for q in qs}
        taken = [q for q in names if q in handled]
        if taken:
            raise ConfigurationError(f"queues already have a handler: {', '.join(taken)}")
        handler = Handler.create(target, HandlerOptions.from_dict(options))
        self._handlers.append((names, handler))
        if self._subscriber is not None:
            self._subscriber.register_handler(names, handler)
        logger.debug("handler_registered", queues=names, options=sorted(options))
        return handler

    def configure(self, **defaults) -> TopologyBuilder:
        return TopologyBuilder(self, **defaults)

    # ── publishing ────────────────────────────────────────────

    async def publish(self, message_name: str, data: Any = None, **opts) -> PublishResult:
        return await self.publisher.publish(message_name, data, **opts)

    async def rpc(self, message_name: str, data: Any = None, timeout: float = None, **opts):
        return await self.publisher.rpc(message_name, data, timeout=timeout, **opts)

    async def purge(self, *queues: str) -> dict[str, str]:
        return await self.publisher.purge(self.topology.queue_names(queues))

    async def stop_publishing(self):
        if self._publisher is not None:
            await self._publisher.stop()
            self._publisher = None

    # ── subscribing ───────────────────────────────────────────

    def _listened(self, queues) -> list[str]:
        names = self.topology.queue_names(queues)
        if not queues:
            handled = {q for qs, _ in self._handlers for q in qs}
            names = [q for q in names if q in handled]
        return names

    async def start_listening(self, *queues: str) -> list[str]:
        """Subscribe and return immediately. No queues means every handled queue."""
        names = self._listened(queues)
        await self._ensure_master()
        await self.subscriber.listen_queues(names)
        return names

    async def listen_queues(self, *queues: str):
        """Subscribe and block until stop_listening() is called."""
        await self.start_listening(*queues)
        await self.subscriber.wait_stopped()

    async def trace(self, *queues: str, tracer=None):
        """
        Watch the traffic of queues (all registered ones by default) without
        consuming it, until stop_listening() is called. tracer(message) is
        called for every copy; without one each message is logged.
        """
        names = self.topology.queue_names(queues)
        await self.subscriber.trace_queues(names, tracer or _log_traced)
        await self.subscriber.wait_stopped()

    async def stop_listening(self):
        if self._subscriber is not None:
            await self._subscriber.stop()

    def pause_listening(self, *queues: str):
        self.subscriber.pause_listening(self._listened(queues))

    def resume_listening(self, *queues: str):
        self.subscriber.resume_listening(self._listened(queues))

    async def reset(self):
        """Stop everything and forget all registrations."""
        await self.stop_listening()
        await self.stop_publishing()
        if self._configuration_client is not None:
            await self._configuration_client.stop()
            self._configuration_client = None
        if self._store is not None:
            await self._store.close()
            self._store = None
        self._subscriber = None
        self._handlers = []
        self.topology = Topology()
        logger.info("client_reset")


def _log_traced(message):
    logger.info(
        "message_traced",
        server=message.server,
        exchange=message.envelope.exchange,
        routing_key=message.routing_key,
        msg_id=message.msg_id,
        headers=message.headers,
        data=message.data,
    )

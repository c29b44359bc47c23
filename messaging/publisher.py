"""
Publisher — fans messages out to the configured broker servers.

  redundant      every server, concurrently, each bounded by publish_timeout;
                 ok as soon as one server acknowledged
  non-redundant  servers in registry order, first ack wins; failing servers
                 are moved to the back of the line for server_cooldown seconds
  nothing acked  DeliveryFailed, the caller always learns about it

Connections are opened on first use and kept. Before the first publish
to an exchange on a server, the exchange and every queue bound to it are
declared there, so messages published before any consumer started are
kept in the queues.
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any, Optional

import structlog

from brokers.base import Broker, MessageEnvelope
from brokers.factory import BrokerFactory, broker_factory
from config.settings import Settings
from messaging.topology import Topology
from models.errors import BrokerConnectionError, DeliveryFailed, RPCTimeout
from models.schemas import PublishResult

logger = structlog.get_logger()

_SERVER_ERRORS = (BrokerConnectionError, asyncio.TimeoutError, OSError)


class Publisher:

    def __init__(self, topology: Topology, settings: Settings = None, factory: BrokerFactory = None):
        self.topology = topology
        self.settings = settings or Settings()
        self.config = self.settings.brokers
        self.servers = list(self.config.servers)
        self._factory = factory or broker_factory(self.config)
        self._brokers: dict[str, Broker] = {}
        self._declared: set[tuple[str, str]] = set()
        self._dead_until: dict[str, float] = {}

    # ── connections ───────────────────────────────────────────

    def broker(self, server: str) -> Broker:
        if server not in self._brokers:
            self._brokers[server] = self._factory(server)
        return self._brokers[server]

    async def _bind_exchange(self, server: str, exchange: str):
        if (server, exchange) in self._declared:
            return
        broker = self.broker(server)
        for queue in self.topology.exchange_queues(exchange):
            await broker.declare_queue(queue, self.topology.queue_bindings(queue))
        self._declared.add((server, exchange))

    async def _publish_on(self, server: str, envelope: MessageEnvelope):
        broker = self.broker(server)
        await broker.connect()
        await self._bind_exchange(server, envelope.exchange)
        routed = await broker.publish(envelope)
        if routed == 0:
            logger.warning("message_unroutable", server=server, exchange=envelope.exchange,
                           routing_key=envelope.routing_key, msg_id=envelope.msg_id)
        return routed

    def _mark_dead(self, server: str, error: BaseException):
        self._dead_until[server] = time.monotonic() + self.config.server_cooldown
        self._declared = {d for d in self._declared if d[0] != server}
        logger.warning("broker_server_unavailable", server=server, error=str(error) or type(error).__name__,
                       cooldown=self.config.server_cooldown)

    def _ordered_servers(self) -> list[str]:
        """Healthy servers first, cooling-down servers as a last resort."""
        now = time.monotonic()
        alive = [s for s in self.servers if self._dead_until.get(s, 0) <= now]
        cooling = [s for s in self.servers if s not in alive]
        return alive + cooling

    # ── publishing ────────────────────────────────────────────

    def build_envelope(self, message_name: str, data: Any = None, **opts) -> MessageEnvelope:
        options = {**self.topology.message(message_name), **opts}
        body = data if isinstance(data, bytes) else ("" if data is None else str(data)).encode()
        return MessageEnvelope(
            body=body,
            exchange=options["exchange"],
            routing_key=options.get("key", message_name),
            ttl=int(options.get("ttl")),
            persistent=bool(options.get("persistent", True)),
            redundant=bool(options.get("redundant", False)),
            headers=dict(options.get("headers", {})),
            reply_to=options.get("reply_to", ""),
        )

    async def publish(self, message_name: str, data: Any = None, **opts) -> PublishResult:
        envelope = self.build_envelope(message_name, data, **opts)
        if envelope.redundant and len(self.servers) > 1:
            acked = await self._publish_redundantly(message_name, envelope)
        else:
            acked = {await self._publish_with_failover(message_name, envelope)}
        logger.info("message_published", message=message_name, msg_id=envelope.msg_id,
                    redundant=envelope.redundant, servers=sorted(acked))
        return PublishResult(status="ok", msg_id=envelope.msg_id, servers_acked=acked)

    async def _publish_redundantly(self, message_name: str, envelope: MessageEnvelope) -> set[str]:
        envelope.copies = len(self.servers)

        async def attempt(server: str):
            return await asyncio.wait_for(self._publish_on(server, envelope), self.config.publish_timeout)

        results = await asyncio.gather(*(attempt(s) for s in self.servers), return_exceptions=True)
        acked, errors = set(), {}
        for server, result in zip(self.servers, results):
            if isinstance(result, _SERVER_ERRORS):
                self._mark_dead(server, result)
                errors[server] = str(result) or type(result).__name__
            elif isinstance(result, BaseException):
                raise result
            else:
                acked.add(server)
        if not acked:
            raise DeliveryFailed(message_name, errors)
        if errors:
            logger.warning("redundant_publish_degraded", msg_id=envelope.msg_id, failed=sorted(errors))
        return acked

    async def _publish_with_failover(self, message_name: str, envelope: MessageEnvelope) -> str:
        errors = {}
        for server in self._ordered_servers():
            try:
                await asyncio.wait_for(self._publish_on(server, envelope), self.config.publish_timeout)
                self._dead_until.pop(server, None)
                return server
            except _SERVER_ERRORS as e:
                self._mark_dead(server, e)
                errors[server] = str(e) or type(e).__name__
        raise DeliveryFailed(message_name, errors)

    async def rpc(self, message_name: str, data: Any = None, timeout: Optional[float] = None, **opts):
        """
        Publish to one server and wait for the handler's reply.
        Returns (status, result). Undefined if more than one queue answers.
        """
        timeout = self.config.rpc_timeout if timeout is None else timeout
        reply_to = f"rpc-{uuid.uuid4().hex}"
        envelope = self.build_envelope(message_name, data, reply_to=reply_to, **{**opts, "redundant": False})
        server = await self._publish_with_failover(message_name, envelope)
        logger.debug("rpc_sent", message=message_name, msg_id=envelope.msg_id, server=server)

        try:
            payload = await self.broker(server).wait_reply(reply_to, timeout)
        except BrokerConnectionError as e:
            self._mark_dead(server, e)
            raise RPCTimeout(f"rpc {message_name}: server {server} lost while waiting") from e
        if payload is None:
            raise RPCTimeout(f"rpc {message_name} got no reply within {timeout}s")
        reply = json.loads(payload)
        return reply.get("status"), reply.get("result")

    async def purge(self, queues: list[str]) -> dict[str, str]:
        """Empty queues on every server. Reports per server instead of failing."""
        report = {}
        for server in self.servers:
            broker = self.broker(server)
            try:
                await broker.connect()
                purged = 0
                for queue in queues:
                    purged += await broker.purge(queue)
                report[server] = "ok"
                logger.info("queues_purged", server=server, queues=queues, messages=purged)
            except _SERVER_ERRORS as e:
                report[server] = str(e) or type(e).__name__
                logger.warning("purge_failed", server=server, queues=queues, error=report[server])
        return report

    async def stop(self):
        for broker in self._brokers.values():
            await broker.close()
        self._brokers.clear()
        self._declared.clear()
        logger.info("publisher_stopped")

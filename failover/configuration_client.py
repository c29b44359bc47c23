"""
RedisConfigurationClient — tells deduplication stores where the master is.

Runs inside every process that uses a redis backed deduplication store.
Announcements are applied only when their epoch is strictly greater than
the last applied one, so a delayed or replayed announcement can never
move a store back to an old master. While the system channel is
unreachable the client asks the redis servers directly every
retry_timeout seconds.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

import structlog

from brokers.factory import BrokerFactory, broker_factory
from config.settings import Settings
from dedup.store_base import DeduplicationStore
from failover.channel import SystemChannel
from failover.redis_server import RedisServer, ServerFactory, server_factory
from models.errors import BrokerConnectionError, StoreConnectionError
from models.schemas import MasterAnnouncement, ServerRole

logger = structlog.get_logger()


class RedisConfigurationClient:
    """
    Usage:
        client = RedisConfigurationClient(settings)
        client.register_store(store)
        await client.determine_initial_master()
        client.start()
        ...
        await client.stop()
    """

    def __init__(self, settings: Settings, servers: ServerFactory = None, brokers: BrokerFactory = None):
        self.settings = settings
        self.config = settings.failover
        self.addresses = list(settings.redis_servers)
        self._server_factory = servers or server_factory(self.config.epoch_key)
        self._servers: dict[str, RedisServer] = {}
        self.channel = SystemChannel(
            settings.subscription_servers,
            brokers or broker_factory(settings.brokers),
            self.config.system_channel,
        )
        self.stores: list[DeduplicationStore] = []
        self.listeners: list[Callable[[MasterAnnouncement], Any]] = []
        self.master: Optional[str] = None
        self.epoch = -1
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def server(self, address: str) -> RedisServer:
        if address not in self._servers:
            self._servers[address] = self._server_factory(address)
        return self._servers[address]

    def register_store(self, store: DeduplicationStore):
        if store not in self.stores:
            self.stores.append(store)

    def add_listener(self, callback: Callable[[MasterAnnouncement], Any]):
        """callback(announcement) runs after every applied master change."""
        self.listeners.append(callback)

    async def apply(self, announcement: MasterAnnouncement) -> bool:
        """Switch all registered stores to the announced master if it is news."""
        if announcement.epoch <= self.epoch:
            logger.debug("stale_announcement_ignored", address=announcement.address,
                         epoch=announcement.epoch, current_epoch=self.epoch)
            return False

        old = self.master
        self.master = announcement.address
        self.epoch = announcement.epoch
        for store in self.stores:
            await store.reconnect(announcement.address)
        for callback in self.listeners:
            value = callback(announcement)
            if inspect.isawaitable(value):
                await value
        logger.info("redis_master_applied", old=old, new=self.master, epoch=self.epoch)
        return True

    async def poll_servers(self) -> Optional[MasterAnnouncement]:
        """Ask every server for its role; the master with the highest stored epoch wins."""
        found: Optional[MasterAnnouncement] = None
        for address in self.addresses:
            server = self.server(address)
            try:
                if await server.role() != ServerRole.MASTER:
                    continue
                epoch = await server.get_epoch()
            except StoreConnectionError as e:
                logger.debug("redis_poll_failed", server=address, error=str(e))
                continue
            if found is None or epoch > found.epoch:
                found = MasterAnnouncement(address=address, epoch=epoch)

        if found is None:
            logger.warning("redis_master_not_found", servers=self.addresses)
            return None
        await self.apply(found)
        return found

    async def determine_initial_master(self) -> Optional[str]:
        await self.poll_servers()
        return self.master

    # ── lifecycle ─────────────────────────────────────────────

    async def run(self):
        self._running = True
        logger.info("configuration_client_started", servers=self.addresses,
                    channel=self.config.system_channel)
        if self.master is None:
            await self.poll_servers()
        while self._running:
            try:
                async for announcement in self.channel.listen():
                    await self.apply(announcement)
            except BrokerConnectionError as e:
                logger.warning("system_channel_unavailable", error=str(e))
            if not self._running:
                break
            await self.poll_servers()
            await asyncio.sleep(self.config.retry_timeout)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        for server in self._servers.values():
            await server.close()
        await self.channel.close()
        logger.info("configuration_client_stopped")

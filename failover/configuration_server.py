"""
RedisConfigurationServer — keeps the deduplication store writable.

Check cycle, every poll_interval seconds:

  1. ask every redis server for its replication role
       answered           → up_master | up_slave, failure clock reset
       no answer          → checking, down once unanswered for retry_timeout
  2. no master known yet  → adopt the first server reporting master
  3. master down          → promote the first up_slave that accepts
                            SLAVEOF NO ONE, repoint the other slaves,
                            bump the epoch, announce {address, epoch}
  4. otherwise            → demote any other server reporting master

The epoch is also written to the new master's keyspace so a restarted
configuration server continues the sequence. There is no quorum: a
partitioned configuration server can promote a second master.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

import structlog

from brokers.factory import BrokerFactory, broker_factory
from config.settings import Settings
from failover.channel import SystemChannel
from failover.redis_server import RedisServer, ServerFactory, server_factory
from models.errors import BrokerConnectionError, ConfigurationError, StoreConnectionError
from models.schemas import MasterAnnouncement, RedisServerEntry, ServerRole, ServerState

logger = structlog.get_logger()


class RedisConfigurationServer:

    def __init__(
        self,
        settings: Settings,
        servers: ServerFactory = None,
        brokers: BrokerFactory = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.config = settings.failover
        self.addresses = list(settings.redis_servers)
        if len(self.addresses) < 2:
            raise ConfigurationError("failover needs at least two redis servers")
        self.clock = clock
        self._server_factory = servers or server_factory(self.config.epoch_key)
        self._servers: dict[str, RedisServer] = {}
        self.entries = {
            address: RedisServerEntry(server_id=f"redis{i + 1}", address=address)
            for i, address in enumerate(self.addresses)
        }
        self.channel = SystemChannel(
            settings.subscription_servers,
            brokers or broker_factory(settings.brokers),
            self.config.system_channel,
        )
        self.master: Optional[str] = None
        self.epoch = 0
        self.master_unavailable = False
        self._announce_pending = False
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def server(self, address: str) -> RedisServer:
        if address not in self._servers:
            self._servers[address] = self._server_factory(address)
        return self._servers[address]

    def ordered(self) -> list[RedisServerEntry]:
        return [self.entries[a] for a in self.addresses]

    # ── health checks ─────────────────────────────────────────

    async def check(self, entry: RedisServerEntry):
        now = self.clock()
        try:
            role = await self.server(entry.address).role()
        except StoreConnectionError as e:
            entry.consecutive_failures += 1
            if entry.first_failure_at is None:
                entry.first_failure_at = now
            if now - entry.first_failure_at >= self.config.retry_timeout:
                if entry.state != ServerState.DOWN:
                    logger.warning("redis_server_down", server=entry.address,
                                   failures=entry.consecutive_failures, error=str(e))
                entry.state = ServerState.DOWN
                entry.role = ServerRole.UNKNOWN
            elif entry.state != ServerState.DOWN:
                entry.state = ServerState.CHECKING
            return

        if entry.state == ServerState.DOWN:
            logger.info("redis_server_up", server=entry.address, role=role.value)
        entry.role = role
        entry.last_seen = now
        entry.first_failure_at = None
        entry.consecutive_failures = 0
        if role == ServerRole.MASTER:
            entry.state = ServerState.UP_MASTER
        elif role == ServerRole.SLAVE:
            entry.state = ServerState.UP_SLAVE
        else:
            entry.state = ServerState.UNKNOWN

    async def check_cycle(self):
        for entry in self.ordered():
            await self.check(entry)

        if self.master is None:
            await self.determine_initial_master()
        elif self.entries[self.master].state == ServerState.DOWN:
            logger.warning("redis_master_down", master=self.master)
            await self.elect()
        else:
            if self.master_unavailable:
                logger.info("redis_master_recovered", master=self.master)
                self.master_unavailable = False
            await self.demote_rogue_masters()

        if self._announce_pending:
            await self.announce()

    # ── election ──────────────────────────────────────────────

    async def determine_initial_master(self):
        masters = [e for e in self.ordered() if e.state == ServerState.UP_MASTER]
        if masters:
            self.master = masters[0].address
            await self._load_epoch(self.master)
            logger.info("redis_master_found", master=self.master, epoch=self.epoch)
            self.master_unavailable = False
            await self.demote_rogue_masters()
            self._announce_pending = True
            return

        undecided = [e for e in self.ordered() if e.state in (ServerState.UNKNOWN, ServerState.CHECKING)]
        if undecided:
            logger.debug("redis_master_undetermined", waiting_for=[e.address for e in undecided])
            return
        await self.elect()

    async def _load_epoch(self, address: str):
        try:
            self.epoch = max(self.epoch, await self.server(address).get_epoch())
        except StoreConnectionError as e:
            logger.warning("redis_epoch_unreadable", server=address, error=str(e))

    async def elect(self):
        for candidate in self.ordered():
            if candidate.state != ServerState.UP_SLAVE:
                continue
            try:
                await self.server(candidate.address).promote()
            except StoreConnectionError as e:
                logger.warning("redis_promotion_failed", server=candidate.address, error=str(e))
                continue
            await self._switch_master(candidate)
            return

        if not self.master_unavailable:
            logger.error("redis_master_unavailable", master=self.master,
                         servers={e.address: e.state.value for e in self.ordered()})
        self.master_unavailable = True

    async def _switch_master(self, entry: RedisServerEntry):
        old = self.master
        if old is not None and old != entry.address:
            self.entries[old].role = ServerRole.UNKNOWN
        self.master = entry.address
        entry.role = ServerRole.MASTER
        entry.state = ServerState.UP_MASTER
        self.master_unavailable = False

        for other in self.ordered():
            if other is entry or other.state != ServerState.UP_SLAVE:
                continue
            try:
                await self.server(other.address).slave_of(self.master)
            except StoreConnectionError as e:
                logger.warning("redis_reconfigure_failed", server=other.address, error=str(e))

        await self._load_epoch(self.master)
        self.epoch += 1
        try:
            await self.server(self.master).set_epoch(self.epoch)
        except StoreConnectionError as e:
            logger.warning("redis_epoch_not_persisted", server=self.master, error=str(e))

        logger.info("redis_master_switched", old=old, new=self.master, epoch=self.epoch)
        self._announce_pending = True

    async def demote_rogue_masters(self):
        """A server that came back still believing it is master becomes a slave."""
        for entry in self.ordered():
            if entry.address == self.master or entry.state != ServerState.UP_MASTER:
                continue
            try:
                await self.server(entry.address).slave_of(self.master)
                entry.role = ServerRole.SLAVE
                entry.state = ServerState.UP_SLAVE
                logger.warning("redis_rogue_master_demoted", server=entry.address, master=self.master)
            except StoreConnectionError as e:
                logger.warning("redis_demotion_failed", server=entry.address, error=str(e))

    async def announce(self):
        try:
            await self.channel.announce(MasterAnnouncement(address=self.master, epoch=self.epoch))
            self._announce_pending = False
        except BrokerConnectionError as e:
            logger.error("master_announcement_failed", master=self.master, epoch=self.epoch, error=str(e))

    # ── lifecycle ─────────────────────────────────────────────

    async def run(self):
        self._running = True
        logger.info("configuration_server_started", servers=self.addresses,
                    retry_timeout=self.config.retry_timeout)
        while self._running:
            try:
                await self.check_cycle()
            except Exception as e:
                logger.error("check_cycle_failed", error=str(e))
            await asyncio.sleep(self.config.poll_interval)

    def start(self) -> asyncio.Task:
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
        logger.info("configuration_server_stopped")

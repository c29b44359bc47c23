"""
SystemChannel — master announcements over every broker server.

Announcements are broadcast on all broker servers so a client hears about
a new master as long as one broker server is reachable. Listening merges
the channel of every server; the iterator ends with BrokerConnectionError
once no server is left to listen on.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

import structlog
from pydantic import ValidationError

from brokers.base import Broker
from brokers.factory import BrokerFactory
from models.errors import BrokerConnectionError
from models.schemas import MasterAnnouncement

logger = structlog.get_logger()

_CLOSED = object()


class SystemChannel:

    def __init__(self, servers: list[str], factory: BrokerFactory, channel: str):
        self.servers = list(servers)
        self.channel = channel
        self._factory = factory
        self._brokers: dict[str, Broker] = {}

    def broker(self, server: str) -> Broker:
        if server not in self._brokers:
            self._brokers[server] = self._factory(server)
        return self._brokers[server]

    async def announce(self, announcement: MasterAnnouncement) -> int:
        """Broadcast on every server. Returns the number of servers reached."""
        payload = announcement.to_bytes()
        reached = 0
        for server in self.servers:
            broker = self.broker(server)
            try:
                await broker.connect()
                await broker.broadcast(self.channel, payload)
                reached += 1
            except BrokerConnectionError as e:
                logger.warning("announcement_not_sent", server=server, error=str(e))
        if not reached:
            raise BrokerConnectionError(",".join(self.servers), "system channel unreachable")
        logger.info("master_announced", address=announcement.address, epoch=announcement.epoch, servers=reached)
        return reached

    async def listen(self) -> AsyncIterator[MasterAnnouncement]:
        inbox: asyncio.Queue = asyncio.Queue()

        async def pump(server: str):
            broker = self.broker(server)
            try:
                await broker.connect()
                async for payload in broker.listen_channel(self.channel):
                    await inbox.put(payload)
            except BrokerConnectionError as e:
                logger.warning("system_channel_lost", server=server, error=str(e))
            finally:
                inbox.put_nowait(_CLOSED)

        tasks = [asyncio.create_task(pump(server)) for server in self.servers]
        open_channels = len(tasks)
        try:
            while open_channels:
                payload = await inbox.get()
                if payload is _CLOSED:
                    open_channels -= 1
                    continue
                try:
                    yield MasterAnnouncement.from_bytes(payload)
                except ValidationError as e:
                    logger.warning("invalid_announcement", error=str(e))
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        raise BrokerConnectionError(",".join(self.servers), "system channel unreachable")

    async def close(self):
        for broker in self._brokers.values():
            await broker.close()
        self._brokers.clear()

"""Tests for master discovery in the configuration client."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from brokers.memory import get_server
from conftest import wait_until
from dedup.store_base import DeduplicationStore
from failover.configuration_client import RedisConfigurationClient
from failover.configuration_server import RedisConfigurationServer
from models.schemas import MasterAnnouncement, ServerRole

CHANNEL = "beetle:system:redis_master"


@pytest.fixture
def dedup_store():
    store = MagicMock(spec=DeduplicationStore)
    store.reconnect = AsyncMock()
    return store


@pytest.fixture
def config_client(settings, redis_servers, dedup_store):
    client = RedisConfigurationClient(settings, servers=redis_servers.__getitem__)
    client.register_store(dedup_store)
    return client


class TestApply:
    @pytest.mark.asyncio
    async def test_newer_epoch_reconnects_stores(self, config_client, dedup_store):
        applied = await config_client.apply(MasterAnnouncement(address="r2:6379", epoch=1))

        assert applied is True
        assert config_client.master == "r2:6379"
        dedup_store.reconnect.assert_awaited_once_with("r2:6379")

    @pytest.mark.asyncio
    async def test_out_of_order_announcements_are_dropped(self, config_client, dedup_store):
        await config_client.apply(MasterAnnouncement(address="r3:6379", epoch=3))
        applied = await config_client.apply(MasterAnnouncement(address="r2:6379", epoch=2))
        replayed = await config_client.apply(MasterAnnouncement(address="r3:6379", epoch=3))

        assert applied is False
        assert replayed is False
        assert config_client.master == "r3:6379"
        assert config_client.epoch == 3
        dedup_store.reconnect.assert_awaited_once_with("r3:6379")

    @pytest.mark.asyncio
    async def test_listeners_are_told(self, config_client):
        seen = []
        config_client.add_listener(seen.append)
        announcement = MasterAnnouncement(address="r1:6379", epoch=0)
        await config_client.apply(announcement)
        assert seen == [announcement]


class TestPolling:
    @pytest.mark.asyncio
    async def test_initial_master(self, config_client, dedup_store):
        assert await config_client.determine_initial_master() == "r1:6379"
        assert config_client.epoch == 0
        dedup_store.reconnect.assert_awaited_once_with("r1:6379")

    @pytest.mark.asyncio
    async def test_unreachable_servers_are_skipped(self, config_client, redis_servers):
        redis_servers["r1:6379"].available = False
        redis_servers["r2:6379"].current_role = ServerRole.MASTER
        redis_servers["r2:6379"].epoch = 4

        found = await config_client.poll_servers()
        assert found == MasterAnnouncement(address="r2:6379", epoch=4)
        assert config_client.master == "r2:6379"

    @pytest.mark.asyncio
    async def test_highest_epoch_wins_between_masters(self, config_client, redis_servers):
        redis_servers["r1:6379"].epoch = 2
        redis_servers["r2:6379"].current_role = ServerRole.MASTER
        redis_servers["r2:6379"].epoch = 3

        await config_client.poll_servers()
        assert config_client.master == "r2:6379"

    @pytest.mark.asyncio
    async def test_start_finds_master_before_any_announcement(self, config_client, dedup_store):
        config_client.start()
        try:
            await wait_until(lambda: config_client.master == "r1:6379")
        finally:
            await config_client.stop()
        assert config_client.epoch == 0
        dedup_store.reconnect.assert_awaited_once_with("r1:6379")

    @pytest.mark.asyncio
    async def test_no_master(self, config_client, redis_servers, dedup_store):
        redis_servers["r1:6379"].current_role = ServerRole.SLAVE
        assert await config_client.poll_servers() is None
        assert config_client.master is None
        dedup_store.reconnect.assert_not_awaited()


class TestSystemChannel:
    @pytest.mark.asyncio
    async def test_client_follows_failover(self, settings, redis_servers, clock, config_client, dedup_store):
        """r1 down longer than retry_timeout: client repoints its store to r2."""
        server = RedisConfigurationServer(settings, servers=redis_servers.__getitem__, clock=clock)
        config_client.start()
        try:
            await wait_until(lambda: config_client.master == "r1:6379")
            await wait_until(lambda: all(
                get_server(b).subscribers.get(CHANNEL) for b in ("brokerA:5672", "brokerB:5672")))

            await server.check_cycle()
            redis_servers["r1:6379"].available = False
            await server.check_cycle()
            clock.advance(10)
            await server.check_cycle()

            await wait_until(lambda: config_client.master == "r2:6379")
        finally:
            await config_client.stop()
            await server.stop()

        assert config_client.epoch == 1
        assert dedup_store.reconnect.await_args_list[-1].args == ("r2:6379",)

    @pytest.mark.asyncio
    async def test_one_broker_down_still_delivers(self, settings, redis_servers, config_client):
        config_client.start()
        try:
            await wait_until(lambda: get_server("brokerB:5672").subscribers.get(CHANNEL))
            get_server("brokerA:5672").available = False
            await get_server("brokerB:5672").subscribers[CHANNEL][0].put(
                MasterAnnouncement(address="r2:6379", epoch=9).to_bytes())
            await wait_until(lambda: config_client.epoch == 9)
        finally:
            await config_client.stop()

    @pytest.mark.asyncio
    async def test_polls_when_channel_is_unreachable(self, settings, redis_servers, config_client):
        settings.failover.retry_timeout = 0.01
        get_server("brokerA:5672").available = False
        get_server("brokerB:5672").available = False
        config_client.start()
        try:
            await wait_until(lambda: config_client.master == "r1:6379")
            redis_servers["r1:6379"].current_role = ServerRole.SLAVE
            redis_servers["r2:6379"].current_role = ServerRole.MASTER
            redis_servers["r2:6379"].epoch = 1
            await wait_until(lambda: config_client.master == "r2:6379")
        finally:
            await config_client.stop()

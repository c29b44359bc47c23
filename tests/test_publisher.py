"""Tests for redundant and failover publishing, rpc and purge."""
import asyncio
import json

import pytest

from brokers.memory import InMemoryBroker, get_server
from messaging.publisher import Publisher
from messaging.topology import Topology
from models.errors import DeliveryFailed, RPCTimeout


@pytest.fixture
def topology():
    topology = Topology()
    topology.register_queue("invoices", exchange="orders", key="order.#")
    topology.register_message("order.created", exchange="orders", redundant=True)
    topology.register_message("order.updated", exchange="orders")
    return topology


@pytest.fixture
def publisher(topology, settings):
    return Publisher(topology, settings)


class TestRedundantPublish:
    @pytest.mark.asyncio
    async def test_reaches_every_server_with_same_msg_id(self, publisher):
        result = await publisher.publish("order.created", "payload")

        assert result.ok
        assert result.servers_acked == {"brokerA:5672", "brokerB:5672"}
        copies = [get_server(s).published[-1] for s in ("brokerA:5672", "brokerB:5672")]
        assert {c.msg_id for c in copies} == {result.msg_id}
        assert all(c.copies == 2 and c.redundant for c in copies)
        assert get_server("brokerA:5672").queue_length("invoices") == 1
        assert get_server("brokerB:5672").queue_length("invoices") == 1

    @pytest.mark.asyncio
    async def test_one_server_down_is_still_ok(self, publisher):
        get_server("brokerB:5672").available = False
        result = await publisher.publish("order.created", "payload")

        assert result.ok
        assert result.servers_acked == {"brokerA:5672"}

    @pytest.mark.asyncio
    async def test_slow_server_is_bounded_by_publish_timeout(self, publisher, monkeypatch):
        original = InMemoryBroker.publish

        async def slow_publish(self, envelope):
            if self.server == "brokerB:5672":
                await asyncio.sleep(5)
            return await original(self, envelope)

        monkeypatch.setattr(InMemoryBroker, "publish", slow_publish)
        result = await asyncio.wait_for(publisher.publish("order.created", "payload"), timeout=2)
        assert result.servers_acked == {"brokerA:5672"}

    @pytest.mark.asyncio
    async def test_all_servers_down_raises(self, publisher):
        get_server("brokerA:5672").available = False
        get_server("brokerB:5672").available = False
        with pytest.raises(DeliveryFailed) as excinfo:
            await publisher.publish("order.created", "payload")
        assert set(excinfo.value.errors) == {"brokerA:5672", "brokerB:5672"}

    @pytest.mark.asyncio
    async def test_published_before_consumers_exist_is_kept(self, publisher):
        """Queues bound to the exchange are declared on first publish."""
        await publisher.publish("order.created", "early")
        assert get_server("brokerA:5672").bindings["orders"]["invoices"] == ["order.#"]


class TestFailoverPublish:
    @pytest.mark.asyncio
    async def test_first_server_wins(self, publisher):
        result = await publisher.publish("order.updated", "payload")
        assert result.servers_acked == {"brokerA:5672"}
        assert get_server("brokerB:5672").published == []

    @pytest.mark.asyncio
    async def test_fails_over_and_cools_down(self, publisher):
        get_server("brokerA:5672").available = False
        first = await publisher.publish("order.updated", "1")
        assert first.servers_acked == {"brokerB:5672"}

        # A is back but still cooling down
        get_server("brokerA:5672").available = True
        second = await publisher.publish("order.updated", "2")
        assert second.servers_acked == {"brokerB:5672"}

    @pytest.mark.asyncio
    async def test_cooled_down_server_is_used_again(self, publisher):
        get_server("brokerA:5672").available = False
        await publisher.publish("order.updated", "1")
        get_server("brokerA:5672").available = True
        publisher._dead_until["brokerA:5672"] = 0

        result = await publisher.publish("order.updated", "2")
        assert result.servers_acked == {"brokerA:5672"}

    @pytest.mark.asyncio
    async def test_everything_cooling_down_is_tried_anyway(self, publisher):
        get_server("brokerA:5672").available = False
        get_server("brokerB:5672").available = False
        with pytest.raises(DeliveryFailed):
            await publisher.publish("order.updated", "1")

        get_server("brokerB:5672").available = True
        result = await publisher.publish("order.updated", "2")
        assert result.servers_acked == {"brokerB:5672"}

    @pytest.mark.asyncio
    async def test_options_override_registration(self, publisher):
        result = await publisher.publish("order.updated", "x", redundant=True, ttl=5, headers={"k": "v"})
        assert len(result.servers_acked) == 2
        envelope = get_server("brokerA:5672").published[-1]
        assert envelope.ttl == 5
        assert envelope.headers == {"k": "v"}


class TestRpc:
    @pytest.mark.asyncio
    async def test_reply_is_returned(self, publisher):
        async def answer():
            server = get_server("brokerA:5672")
            while not server.queue_length("invoices"):
                await asyncio.sleep(0.01)
            envelope = server.queue("invoices").get_nowait()
            payload = json.dumps({"status": "ok", "result": "invoice-7"}).encode()
            server.reply_queue(envelope.reply_to).put_nowait(payload)

        responder = asyncio.create_task(answer())
        status, result = await publisher.rpc("order.created", "payload", timeout=1)
        await responder

        assert (status, result) == ("ok", "invoice-7")

    @pytest.mark.asyncio
    async def test_rpc_is_never_redundant(self, publisher):
        with pytest.raises(RPCTimeout):
            await publisher.rpc("order.created", "payload", timeout=0.05)
        assert get_server("brokerB:5672").published == []

    @pytest.mark.asyncio
    async def test_rpc_timeout_is_a_timeout_error(self, publisher):
        with pytest.raises(TimeoutError):
            await publisher.rpc("order.updated", "payload", timeout=0.05)


class TestPurge:
    @pytest.mark.asyncio
    async def test_reports_per_server(self, publisher):
        await publisher.publish("order.created", "payload")
        get_server("brokerB:5672").available = False

        report = await publisher.purge(["invoices"])
        assert report["brokerA:5672"] == "ok"
        assert "unavailable" in report["brokerB:5672"]
        assert get_server("brokerA:5672").queue_length("invoices") == 0

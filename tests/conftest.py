"""Shared test fixtures for Beetle."""
import asyncio
import time

import pytest

from brokers.base import Delivery, MessageEnvelope
from brokers.memory import reset_servers
from config.settings import BrokerConfig, DedupConfig, FailoverConfig, Settings
from dedup.store_memory import InMemoryDeduplicationStore
from models.errors import StoreConnectionError
from models.schemas import ServerRole


@pytest.fixture(autouse=True)
def fresh_broker_servers():
    """Every test starts with empty simulated broker servers."""
    reset_servers()
    yield
    reset_servers()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        brokers=BrokerConfig(
            backend="memory",
            servers=["brokerA:5672", "brokerB:5672"],
            publish_timeout=0.5,
            server_cooldown=10.0,
            rpc_timeout=2.0,
        ),
        dedup=DedupConfig(backend="memory"),
        failover=FailoverConfig(
            redis_servers=["r1:6379", "r2:6379"],
            retry_timeout=10.0,
            poll_interval=0.01,
        ),
    )


@pytest.fixture
def store() -> InMemoryDeduplicationStore:
    return InMemoryDeduplicationStore()


def make_delivery(queue="orders", server="brokerA:5672", msg_id="42", ttl=60, **envelope_opts) -> Delivery:
    envelope = MessageEnvelope(
        body=envelope_opts.pop("body", b"payload"),
        exchange=envelope_opts.pop("exchange", "orders"),
        routing_key=envelope_opts.pop("routing_key", "order.created"),
        ttl=ttl,
        msg_id=msg_id,
        **envelope_opts,
    )
    return Delivery(envelope=envelope, queue=queue, server=server, delivery_tag="1")


async def wait_until(condition, timeout: float = 2.0, interval: float = 0.01):
    """Poll condition() until it holds; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


# ──────────────────────────────────────────────────────────────
#  Fake redis servers for failover scenarios
# ──────────────────────────────────────────────────────────────

class FakeRedisServer:
    """Stands in for failover.redis_server.RedisServer."""

    def __init__(self, address: str, role: ServerRole = ServerRole.SLAVE, epoch: int = 0):
        self.address = address
        self.current_role = role
        self.epoch = epoch
        self.available = True
        self.refuse_promotion = False
        self.master_address = None
        self.calls = []

    def _check(self):
        if not self.available:
            raise StoreConnectionError(f"redis {self.address}: connection refused")

    async def ping(self):
        self._check()
        return True

    async def role(self):
        self._check()
        return self.current_role

    async def promote(self):
        self._check()
        if self.refuse_promotion:
            raise StoreConnectionError(f"redis {self.address}: promotion refused")
        self.calls.append("promote")
        self.current_role = ServerRole.MASTER
        self.master_address = None

    async def slave_of(self, master: str):
        self._check()
        self.calls.append(f"slave_of {master}")
        self.current_role = ServerRole.SLAVE
        self.master_address = master

    async def get_epoch(self):
        self._check()
        return self.epoch

    async def set_epoch(self, epoch: int):
        self._check()
        self.epoch = epoch

    async def close(self):
        pass


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def redis_servers():
    return {
        "r1:6379": FakeRedisServer("r1:6379", ServerRole.MASTER),
        "r2:6379": FakeRedisServer("r2:6379", ServerRole.SLAVE),
    }


@pytest.fixture
def clock():
    return FakeClock()

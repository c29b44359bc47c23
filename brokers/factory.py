"""
Broker Factory — Create broker server connections from configuration.

Configuration in settings.yaml:
    brokers:
      # "redis"  — Redis Streams per broker server (production)
      # "memory" — simulated servers inside this process (development, testing)
      backend: "redis"
      servers: "broker1:6379, broker2:6379"
      additional_subscription_servers: "broker3:6379"

Usage:
    from brokers.factory import create_broker
    broker = create_broker("broker1:6379", settings.brokers)
"""
from __future__ import annotations

from typing import Callable

import structlog

from brokers.base import Broker
from config.settings import BrokerConfig

logger = structlog.get_logger()

BrokerFactory = Callable[[str], Broker]


def create_broker(server: str, config: BrokerConfig = None) -> Broker:
    """Factory: create the appropriate broker backend for one server address."""
    config = config or BrokerConfig()

    if config.backend == "redis":
        from brokers.redis_streams import RedisStreamsBroker
        broker = RedisStreamsBroker(server, consumer_group=config.consumer_group, block_ms=config.block_ms)
    else:  # "memory" or default
        from brokers.memory import InMemoryBroker
        broker = InMemoryBroker(server)

    logger.debug("broker_created", server=server, backend=config.backend)
    return broker


def broker_factory(config: BrokerConfig) -> BrokerFactory:
    return lambda server: create_broker(server, config)

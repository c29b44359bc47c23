"""
Topology — Exchanges, queues, bindings and messages known to a client.

Registration only builds up configuration; nothing talks to a broker here.
Publishers declare an exchange and every queue bound to it on demand, and
subscribers declare their queues when they start listening, so producers
and consumers can be started in any order without losing messages.

Conventions enforced at registration:
  - exchanges are always durable topic exchanges
  - queues are durable, never exclusive or passive
  - messages are persistent
  - exchange and binding/routing key default to the queue/message name
"""
from __future__ import annotations

from typing import Any, Iterable

from brokers.base import DEFAULT_TTL
from messaging.handler import HANDLER_KEYS
from models.errors import ConfigurationError, UnknownMessage, UnknownQueue

EXCHANGE_KEYS = {"auto_delete", "internal"}
QUEUE_KEYS = {"exchange", "key", "auto_delete", "amqp_name"}
BINDING_KEYS = {"exchange", "key"}
MESSAGE_KEYS = {"exchange", "key", "ttl", "redundant", "persistent"}


class Topology:
    """Static registry of messaging entities, read-only once listening starts."""

    def __init__(self):
        self.exchanges: dict[str, dict[str, Any]] = {}
        self.queues: dict[str, dict[str, Any]] = {}
        self.bindings: dict[str, list[dict[str, str]]] = {}
        self.messages: dict[str, dict[str, Any]] = {}

    def register_exchange(self, name: str, **options) -> dict[str, Any]:
        name = str(name)
        if name in self.exchanges:
            raise ConfigurationError(f"exchange {name} already configured")
        self.exchanges[name] = {**options, "type": "topic", "durable": True, "queues": []}
        return self.exchanges[name]

    def register_queue(self, name: str, exchange: str = None, key: str = None, **options) -> dict[str, Any]:
        name = str(name)
        if name in self.queues:
            raise ConfigurationError(f"queue {name} already configured")
        opts = {"auto_delete": False, "amqp_name": name, **options}
        opts.update(durable=True, passive=False, exclusive=False)
        self.queues[name] = opts
        self.register_binding(name, exchange=exchange, key=key)
        return opts

    def register_binding(self, queue_name: str, exchange: str = None, key: str = None):
        name = str(queue_name)
        if name not in self.queues:
            raise UnknownQueue(f"unknown queue {name}")
        exchange = str(exchange or name)
        key = str(key or name)
        binding = {"exchange": exchange, "key": key}
        if binding not in self.bindings.setdefault(name, []):
            self.bindings[name].append(binding)
        if exchange not in self.exchanges:
            self.register_exchange(exchange)
        queues = self.exchanges[exchange]["queues"]
        if name not in queues:
            queues.append(name)

    def register_message(self, message_name: str, exchange: str = None, key: str = None,
                         ttl: int = DEFAULT_TTL, redundant: bool = False, **options) -> dict[str, Any]:
        name = str(message_name)
        if name in self.messages:
            raise ConfigurationError(f"message {name} already configured")
        if ttl <= 0:
            raise ConfigurationError(f"message {name} needs a positive ttl")
        exchange = str(exchange or name)
        opts = {**options, "exchange": exchange, "key": str(key or name),
                "ttl": int(ttl), "redundant": bool(redundant), "persistent": True}
        if exchange not in self.exchanges:
            self.register_exchange(exchange)
        self.messages[name] = opts
        return opts

    # ── lookups ───────────────────────────────────────────────

    def queue_names(self, queues: Iterable[str] = ()) -> list[str]:
        """Validate queue names; an empty selection means all registered queues."""
        names = [str(q) for q in queues]
        if not names:
            return list(self.queues)
        for name in names:
            if name not in self.queues:
                raise UnknownQueue(f"unknown queue {name}")
        return names

    def message(self, message_name: str) -> dict[str, Any]:
        name = str(message_name)
        if name not in self.messages:
            raise UnknownMessage(f"unknown message {name}")
        return self.messages[name]

    def queue_bindings(self, queue: str) -> list[tuple[str, str]]:
        return [(b["exchange"], b["key"]) for b in self.bindings.get(queue, [])]

    def exchange_queues(self, exchange: str) -> list[str]:
        return list(self.exchanges.get(exchange, {}).get("queues", []))


def _pick(options: dict[str, Any], keys: set[str]) -> dict[str, Any]:
    return {k: v for k, v in options.items() if k in keys}


class TopologyBuilder:
    """
    Registers entities with a shared set of default options.

    Usage:
        with client.configure(exchange="orders") as config:
            config.queue("invoices", key="order.invoice")
            config.message("order.invoice", redundant=True)
            config.handler("invoices", handle_invoice, exceptions=2)
    """

    def __init__(self, client, **defaults):
        self.client = client
        self.defaults = defaults

    def __enter__(self) -> TopologyBuilder:
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def _merged(self, options: dict[str, Any], keys: set[str]) -> dict[str, Any]:
        """Shared defaults apply where they fit; explicit options must all fit."""
        unknown = set(options) - keys
        if unknown:
            raise ConfigurationError(f"unknown options: {', '.join(sorted(unknown))}")
        return {**_pick(self.defaults, keys), **options}

    def exchange(self, name: str, **options):
        return self.client.register_exchange(name, **self._merged(options, EXCHANGE_KEYS))

    def queue(self, name: str, **options):
        return self.client.register_queue(name, **self._merged(options, QUEUE_KEYS))

    def binding(self, queue_name: str, **options):
        return self.client.register_binding(queue_name, **self._merged(options, BINDING_KEYS))

    def message(self, name: str, **options):
        return self.client.register_message(name, **self._merged(options, MESSAGE_KEYS))

    def handler(self, queues, target=None, **options):
        return self.client.register_handler(queues, target, **self._merged(options, HANDLER_KEYS))

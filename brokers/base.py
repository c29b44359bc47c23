"""
Broker — Abstract interface for one broker server, plus the wire envelope.

Topology on a broker server:
  exchange       — topic exchange, routes by binding key patterns
                   ("*" matches one word, "#" matches zero or more)
  queue          — durable, consumed by every subscriber sharing the
                   consumer group (competing consumers)
  reply channel  — transient per-rpc channel for exactly one reply
  system channel — broadcast channel for redis master announcements

Envelope Schema (stored as flat string fields, body kept as bytes):
  {
      "msg_id":         unique id, identical across redundant copies/redeliveries,
      "body":           payload bytes,
      "exchange":       exchange the message was published to,
      "routing_key":    routing key used for binding matches,
      "ttl":            seconds the message stays valid,
      "expires_at":     absolute unix timestamp (publish time + ttl),
      "persistent":     "1" | "0",
      "redundant":      "1" | "0",
      "copies":         number of broker servers the message was sent to,
      "reply_to":       rpc reply channel ("" if none),
      "headers":        JSON object of custom headers,
      "format_version": envelope format version,
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

DEFAULT_TTL = 24 * 60 * 60
FORMAT_VERSION = 1


# ──────────────────────────────────────────────────────────────
#  Envelope
# ──────────────────────────────────────────────────────────────

def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


@dataclass
class MessageEnvelope:
    """One logical message as it travels through the brokers."""
    body: bytes
    exchange: str
    routing_key: str
    ttl: int = DEFAULT_TTL
    persistent: bool = True
    redundant: bool = False
    copies: int = 1
    reply_to: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    msg_id: str = ""
    expires_at: int = 0
    format_version: int = FORMAT_VERSION

    def __post_init__(self):
        if isinstance(self.body, str):
            self.body = self.body.encode()
        if not self.msg_id:
            self.msg_id = str(uuid.uuid4())
        if not self.expires_at:
            self.expires_at = int(time.time()) + int(self.ttl)

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "msg_id": self.msg_id,
            "body": self.body,
            "exchange": self.exchange,
            "routing_key": self.routing_key,
            "ttl": str(self.ttl),
            "expires_at": str(self.expires_at),
            "persistent": "1" if self.persistent else "0",
            "redundant": "1" if self.redundant else "0",
            "copies": str(self.copies),
            "reply_to": self.reply_to,
            "headers": json.dumps(self.headers),
            "format_version": str(self.format_version),
        }

    @classmethod
    def from_dict(cls, data: dict[Any, Any]) -> MessageEnvelope:
        data = {_text(k): v for k, v in data.items()}
        body = data.get("body", b"")
        if isinstance(body, str):
            body = body.encode()
        headers = data.get("headers") or "{}"
        return cls(
            body=body,
            exchange=_text(data.get("exchange", "")),
            routing_key=_text(data.get("routing_key", "")),
            ttl=int(_text(data.get("ttl", DEFAULT_TTL))),
            persistent=_text(data.get("persistent", "1")) == "1",
            redundant=_text(data.get("redundant", "0")) == "1",
            copies=int(_text(data.get("copies", 1))),
            reply_to=_text(data.get("reply_to", "")),
            headers=json.loads(_text(headers)),
            msg_id=_text(data.get("msg_id", "")),
            expires_at=int(_text(data.get("expires_at", 0))),
            format_version=int(_text(data.get("format_version", FORMAT_VERSION))),
        )


@dataclass
class Delivery:
    """An envelope as received from one queue on one broker server."""
    envelope: MessageEnvelope
    queue: str
    server: str
    delivery_tag: str
    redelivered: bool = False


DeliveryCallback = Callable[[Delivery], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Topic matching
# ──────────────────────────────────────────────────────────────

def topic_matches(binding_key: str, routing_key: str) -> bool:
    """AMQP topic semantics: words separated by dots, "*" one word, "#" any."""
    return _match_words(binding_key.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class Broker(ABC):
    """Connection to a single broker server."""

    def __init__(self, server: str):
        self.server = server
        self._running = False
        self._flow: dict[str, asyncio.Event] = {}

    # ── flow control, shared by all backends ──────────────────

    def _flow_event(self, queue: str) -> asyncio.Event:
        event = self._flow.get(queue)
        if event is None:
            event = self._flow[queue] = asyncio.Event()
            event.set()
        return event

    def pause(self, queue: str):
        """Stop handing out deliveries for queue without closing anything."""
        self._flow_event(queue).clear()

    def resume(self, queue: str):
        self._flow_event(queue).set()

    def is_paused(self, queue: str) -> bool:
        return not self._flow_event(queue).is_set()

    async def wait_for_flow(self, queue: str):
        await self._flow_event(queue).wait()

    def stop_consuming(self):
        self._running = False

    # ── backend operations ────────────────────────────────────

    @abstractmethod
    async def connect(self):
        """Establish connection to the broker server."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def declare_queue(self, queue: str, bindings: list[tuple[str, str]]):
        """Create a durable queue and bind it with (exchange, key) pairs."""
        ...

    @abstractmethod
    async def publish(self, envelope: MessageEnvelope) -> int:
        """Route an envelope through its exchange. Returns number of queues reached."""
        ...

    @abstractmethod
    async def consume(self, queue: str, callback: DeliveryCallback, consumer_name: str = ""):
        """Blocks and calls callback for each delivery until stopped."""
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery):
        ...

    @abstractmethod
    async def reject(self, delivery: Delivery):
        """Hand the delivery back to the queue for redelivery."""
        ...

    @abstractmethod
    async def purge(self, queue: str) -> int:
        ...

    @abstractmethod
    async def delete_queue(self, queue: str):
        """Remove the queue and all of its bindings."""
        ...

    @abstractmethod
    async def send_reply(self, reply_to: str, payload: bytes):
        ...

    @abstractmethod
    async def wait_reply(self, reply_to: str, timeout: float) -> Optional[bytes]:
        ...

    @abstractmethod
    async def broadcast(self, channel: str, payload: bytes):
        ...

    @abstractmethod
    def listen_channel(self, channel: str) -> AsyncIterator[bytes]:
        """Async iterator over payloads broadcast on channel."""
        ...

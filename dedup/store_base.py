"""
Abstract Deduplication Store — Interface for all backends.

Implementations:
  - RedisDeduplicationStore  (replicated redis, master found via failover)
  - InMemoryDeduplicationStore (dict-based, single-process)

Every operation touches exactly one delivery record and is atomic in the
backend, so any number of processes may share one store and a client that
reconnects to a freshly promoted master sees the same keyspace.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import DeliveryRecord, ProcessDecision


class DeduplicationStore(ABC):
    """Interface that all deduplication store backends must implement."""

    @abstractmethod
    async def should_process(self, queue: str, msg_id: str, expires_at: float, lease: float) -> ProcessDecision:
        """
        Decide whether this process may run the handler for msg_id.

        Creates the record on first sight and takes the mutex (lease in
        seconds). Existing in-progress records are only handed out when
        their mutex is free and no retry delay is pending.
        """
        ...

    @abstractmethod
    async def mark_completed(self, queue: str, msg_id: str) -> None:
        ...

    @abstractmethod
    async def mark_failed(self, queue: str, msg_id: str) -> None:
        ...

    @abstractmethod
    async def increment_exceptions(self, queue: str, msg_id: str) -> int:
        ...

    @abstractmethod
    async def increment_ack_count(self, queue: str, msg_id: str) -> int:
        ...

    @abstractmethod
    async def delay(self, queue: str, msg_id: str, until: float) -> None:
        """No new attempt may start before `until` (unix seconds)."""
        ...

    @abstractmethod
    async def release_mutex(self, queue: str, msg_id: str) -> None:
        ...

    @abstractmethod
    async def get_record(self, queue: str, msg_id: str) -> Optional[DeliveryRecord]:
        ...

    @abstractmethod
    async def garbage_collect(self) -> int:
        """Drop records past their expiry. Returns number removed."""
        ...

    async def reconnect(self, address: str) -> None:
        """Point the store at a new backend master."""

    async def close(self) -> None:
        ...

"""
InMemoryDeduplicationStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no Redis)
  - Same decisions as RedisDeduplicationStore
  - Atomic because no operation awaits between read and write
  - All data lost on process restart
"""
from __future__ import annotations

import time
from typing import Optional

import structlog

from dedup.store_base import DeduplicationStore
from models.schemas import DeliveryRecord, DeliveryStatus, ProcessDecision

logger = structlog.get_logger()


class InMemoryDeduplicationStore(DeduplicationStore):

    def __init__(self):
        self._records: dict[tuple[str, str], DeliveryRecord] = {}
        self._mutex_until: dict[tuple[str, str], float] = {}
        logger.info("inmemory_dedup_store_initialized")

    def _live(self, key: tuple[str, str]) -> Optional[DeliveryRecord]:
        record = self._records.get(key)
        if record is not None and record.expired:
            self._drop(key)
            return None
        return record

    def _drop(self, key: tuple[str, str]):
        self._records.pop(key, None)
        self._mutex_until.pop(key, None)

    def _mutex_held(self, key: tuple[str, str], now: float) -> bool:
        return self._mutex_until.get(key, 0.0) > now

    async def should_process(self, queue: str, msg_id: str, expires_at: float, lease: float) -> ProcessDecision:
        key = (queue, msg_id)
        now = time.time()
        record = self._live(key)

        if record is None:
            self._records[key] = DeliveryRecord(
                queue=queue, msg_id=msg_id, attempt_count=1,
                created_at=now, expires_at=expires_at,
            )
            self._mutex_until[key] = now + lease
            return ProcessDecision.PROCEED

        if record.status == DeliveryStatus.COMPLETED:
            return ProcessDecision.ALREADY_COMPLETED
        if record.status == DeliveryStatus.FAILED:
            return ProcessDecision.ALREADY_FAILED
        if record.delay_until > now:
            return ProcessDecision.DELAYED
        if self._mutex_held(key, now):
            return ProcessDecision.DUPLICATE_IN_PROGRESS

        self._mutex_until[key] = now + lease
        record.attempt_count += 1
        return ProcessDecision.PROCEED

    def _set_status(self, queue: str, msg_id: str, status: DeliveryStatus):
        key = (queue, msg_id)
        record = self._live(key)
        if record is not None:
            record.status = status
        self._mutex_until.pop(key, None)

    async def mark_completed(self, queue: str, msg_id: str) -> None:
        self._set_status(queue, msg_id, DeliveryStatus.COMPLETED)

    async def mark_failed(self, queue: str, msg_id: str) -> None:
        self._set_status(queue, msg_id, DeliveryStatus.FAILED)

    async def increment_exceptions(self, queue: str, msg_id: str) -> int:
        record = self._live((queue, msg_id))
        if record is None:
            return 0
        record.handler_exception_count += 1
        return record.handler_exception_count

    async def increment_ack_count(self, queue: str, msg_id: str) -> int:
        record = self._live((queue, msg_id))
        if record is None:
            return 0
        record.ack_count += 1
        return record.ack_count

    async def delay(self, queue: str, msg_id: str, until: float) -> None:
        record = self._live((queue, msg_id))
        if record is not None:
            record.delay_until = until

    async def release_mutex(self, queue: str, msg_id: str) -> None:
        self._mutex_until.pop((queue, msg_id), None)

    async def get_record(self, queue: str, msg_id: str) -> Optional[DeliveryRecord]:
        key = (queue, msg_id)
        record = self._live(key)
        if record is None:
            return None
        return record.model_copy(update={"mutex": self._mutex_held(key, time.time())})

    async def garbage_collect(self) -> int:
        expired = [key for key, record in self._records.items() if record.expired]
        for key in expired:
            self._drop(key)
        if expired:
            logger.info("dedup_records_collected", count=len(expired))
        return len(expired)

"""
Message — consumer-side view of one delivery and the dispatch algorithm.

Flow for every inbound delivery:
  1. expired                      → skip handler, ack
  2. store.should_process         → proceed | duplicate | completed | failed | delayed
  3. handler.call                 → success | recoverable | permanent
  4. bookkeeping in the store     → completed | retry later | failed
Store connection errors at any step reject the delivery so it comes back
later; a delivery is never acknowledged without a decision about it.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from brokers.base import Delivery
from dedup.store_base import DeduplicationStore
from messaging.handler import Handler
from models.errors import StoreConnectionError
from models.schemas import HandlerOutcome, HandlerResult, ProcessDecision

logger = structlog.get_logger()


class Action(str, Enum):
    ACK = "ack"
    REJECT = "reject"


class Reason(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_FAILED = "already_failed"
    MUTEX_LOCKED = "mutex_locked"
    DELAYED = "delayed"
    HANDLER_FAILED = "handler_failed"
    EXCEPTIONS_LIMIT_REACHED = "exceptions_limit_reached"
    ATTEMPTS_LIMIT_REACHED = "attempts_limit_reached"
    PERMANENT_FAILURE = "permanent_failure"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ProcessingResult:
    action: Action
    reason: Reason
    handler_result: Optional[HandlerResult] = None

    @property
    def value(self) -> Any:
        return self.handler_result.value if self.handler_result else None


_SKIPS = {
    ProcessDecision.ALREADY_COMPLETED: Reason.ALREADY_COMPLETED,
    ProcessDecision.ALREADY_FAILED: Reason.ALREADY_FAILED,
    ProcessDecision.DUPLICATE_IN_PROGRESS: Reason.MUTEX_LOCKED,
}


class Message:
    """What a handler receives: payload, routing data and bookkeeping."""

    def __init__(self, delivery: Delivery, store: DeduplicationStore):
        self.delivery = delivery
        self.envelope = delivery.envelope
        self.store = store

    @property
    def msg_id(self) -> str:
        return self.envelope.msg_id

    @property
    def data(self) -> bytes:
        return self.envelope.body

    @property
    def text(self) -> str:
        return self.envelope.body.decode()

    @property
    def queue(self) -> str:
        return self.delivery.queue

    @property
    def server(self) -> str:
        return self.delivery.server

    @property
    def routing_key(self) -> str:
        return self.envelope.routing_key

    @property
    def headers(self) -> dict[str, str]:
        return self.envelope.headers

    @property
    def redundant(self) -> bool:
        return self.envelope.redundant

    @property
    def expired(self) -> bool:
        return self.envelope.expired

    def __repr__(self):
        return f"<Message {self.msg_id} queue={self.queue} server={self.server}>"

    async def process(self, handler: Handler) -> ProcessingResult:
        log = logger.bind(msg_id=self.msg_id, queue=self.queue, server=self.server)

        if self.expired:
            log.warning("message_expired", expires_at=self.envelope.expires_at)
            return ProcessingResult(Action.ACK, Reason.EXPIRED)

        options = handler.options
        try:
            decision = await self.store.should_process(
                self.queue, self.msg_id, self.envelope.expires_at, lease=options.timeout)
        except StoreConnectionError as e:
            log.warning("dedup_store_error", error=str(e))
            return ProcessingResult(Action.REJECT, Reason.INTERNAL_ERROR)

        if decision in _SKIPS:
            log.debug("message_skipped", decision=decision.value)
            return ProcessingResult(Action.ACK, _SKIPS[decision])
        if decision == ProcessDecision.DELAYED:
            return ProcessingResult(Action.REJECT, Reason.DELAYED)

        result = await handler.call(self)
        try:
            return await self._settle(handler, result, log)
        except StoreConnectionError as e:
            log.warning("dedup_store_error", error=str(e), outcome=result.outcome.value)
            return ProcessingResult(Action.REJECT, Reason.INTERNAL_ERROR, result)

    async def _settle(self, handler: Handler, result: HandlerResult, log) -> ProcessingResult:
        if result.succeeded:
            await self.store.mark_completed(self.queue, self.msg_id)
            log.debug("message_completed")
            return ProcessingResult(Action.ACK, Reason.OK, result)

        if result.unexpected:
            log.error("handler_crashed", error=result.detail)
            await handler.process_exception(result.exception)

        if result.outcome == HandlerOutcome.PERMANENT_FAILURE:
            return await self._give_up(handler, result, Reason.PERMANENT_FAILURE, log)

        exceptions = await self.store.increment_exceptions(self.queue, self.msg_id)
        record = await self.store.get_record(self.queue, self.msg_id)
        attempts = record.attempt_count if record else 0
        options = handler.options

        if exceptions > options.exceptions:
            return await self._give_up(handler, result, Reason.EXCEPTIONS_LIMIT_REACHED, log)
        if attempts >= options.attempts_limit:
            return await self._give_up(handler, result, Reason.ATTEMPTS_LIMIT_REACHED, log)

        if options.delay:
            await self.store.delay(self.queue, self.msg_id, time.time() + options.delay)
        await self.store.release_mutex(self.queue, self.msg_id)
        log.info("message_rejected_for_retry", exceptions=exceptions, attempts=attempts, error=result.detail)
        return ProcessingResult(Action.REJECT, Reason.HANDLER_FAILED, result)

    async def _give_up(self, handler: Handler, result: HandlerResult, reason: Reason, log) -> ProcessingResult:
        await self.store.mark_failed(self.queue, self.msg_id)
        log.error("message_failed", reason=reason.value, error=result.detail)
        await handler.process_failure(result)
        return ProcessingResult(Action.ACK, reason, result)

"""
Core data models for Beetle.
These are the bookkeeping types shared by the messaging, deduplication and
failover layers.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class DeliveryStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessDecision(str, Enum):
    """Answer of the deduplication store for one inbound delivery."""
    PROCEED = "proceed"
    DUPLICATE_IN_PROGRESS = "duplicate_in_progress"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_FAILED = "already_failed"
    DELAYED = "delayed"


class HandlerOutcome(str, Enum):
    SUCCESS = "success"
    RECOVERABLE_FAILURE = "recoverable_failure"
    PERMANENT_FAILURE = "permanent_failure"


class ServerRole(str, Enum):
    MASTER = "master"
    SLAVE = "slave"
    UNKNOWN = "unknown"


class ServerState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    UP_MASTER = "up_master"
    UP_SLAVE = "up_slave"
    DOWN = "down"


class QueueState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    LISTENING = "listening"
    PAUSED = "paused"
    STOPPED = "stopped"


# ──────────────────────────────────────────────────────────────
#  Deduplication
# ──────────────────────────────────────────────────────────────

class DeliveryRecord(BaseModel):
    """Bookkeeping for one (queue, msg_id) pair held by the dedup store."""
    queue: str
    msg_id: str
    status: DeliveryStatus = DeliveryStatus.IN_PROGRESS
    attempt_count: int = 0
    handler_exception_count: int = 0
    ack_count: int = 0
    created_at: float = Field(default_factory=time.time)
    expires_at: float = 0.0
    delay_until: float = 0.0
    mutex: bool = False

    @property
    def expired(self) -> bool:
        return bool(self.expires_at) and time.time() >= self.expires_at

    @classmethod
    def from_redis(cls, queue: str, msg_id: str, data: dict[str, Any], mutex: bool) -> DeliveryRecord:
        return cls(
            queue=queue,
            msg_id=msg_id,
            status=data.get("status", DeliveryStatus.IN_PROGRESS.value),
            attempt_count=int(data.get("attempts", 0)),
            handler_exception_count=int(data.get("exceptions", 0)),
            ack_count=int(data.get("ack_count", 0)),
            created_at=float(data.get("created_at", 0)),
            expires_at=float(data.get("expires_at", 0)),
            delay_until=float(data.get("delay", 0)),
            mutex=mutex,
        )


# ──────────────────────────────────────────────────────────────
#  Handler results
# ──────────────────────────────────────────────────────────────

class HandlerResult(BaseModel):
    """What a handler invocation produced, inspected by the dispatcher."""
    outcome: HandlerOutcome
    detail: str = ""
    value: Any = None
    unexpected: bool = False          # raised something other than a HandlerException
    exception: Any = Field(default=None, exclude=True)

    @property
    def succeeded(self) -> bool:
        return self.outcome == HandlerOutcome.SUCCESS

    @classmethod
    def success(cls, value: Any = None) -> HandlerResult:
        return cls(outcome=HandlerOutcome.SUCCESS, value=value)

    @classmethod
    def recoverable(cls, detail: str = "", unexpected: bool = False, exception: Any = None) -> HandlerResult:
        return cls(outcome=HandlerOutcome.RECOVERABLE_FAILURE, detail=detail,
                   unexpected=unexpected, exception=exception)

    @classmethod
    def permanent(cls, detail: str = "", exception: Any = None) -> HandlerResult:
        return cls(outcome=HandlerOutcome.PERMANENT_FAILURE, detail=detail, exception=exception)


# ──────────────────────────────────────────────────────────────
#  Publishing
# ──────────────────────────────────────────────────────────────

class PublishResult(BaseModel):
    status: str = "ok"                        # ok | failed
    msg_id: str = ""
    servers_acked: set[str] = set()

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# ──────────────────────────────────────────────────────────────
#  Redis failover
# ──────────────────────────────────────────────────────────────

class RedisServerEntry(BaseModel):
    """Registry entry the configuration server keeps per watched redis."""
    server_id: str
    address: str
    role: ServerRole = ServerRole.UNKNOWN
    state: ServerState = ServerState.UNKNOWN
    last_seen: Optional[float] = None
    first_failure_at: Optional[float] = None
    consecutive_failures: int = 0


class MasterAnnouncement(BaseModel):
    """Payload broadcast on the system channel after a master change."""
    address: str
    epoch: int

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_bytes(cls, data: bytes | str) -> MasterAnnouncement:
        return cls.model_validate_json(data)

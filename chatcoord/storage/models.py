from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

# All timestamps are epoch milliseconds, matching the job wire format.


@dataclass
class Session:
    user_id: str
    state: Dict[str, Any]
    updated_at: int
    tenant_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "tenantId": self.tenant_id,
            "state": self.state,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=str(data["userId"]),
            tenant_id=data.get("tenantId"),
            state=data.get("state") or {},
            updated_at=int(data.get("updatedAt") or 0),
        )


@dataclass
class BatchState:
    batch_id: str
    user_id: str
    timestamp: int
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchState":
        return cls(
            batch_id=str(data["batchId"]),
            user_id=str(data["userId"]),
            timestamp=int(data.get("timestamp") or 0),
            payload=data.get("payload") or {},
        )


@dataclass
class LockHandle:
    """Proof of holding a lock; only the owner token can release it."""

    key: str
    owner_token: str
    ttl_ms: int
    acquired_at: float


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass
class BackoffPolicy:
    type: str = "exponential"
    delay_ms: int = 2000

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the next run after ``attempts_made`` failed executions."""
        if attempts_made <= 0:
            return 0
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * (2 ** (attempts_made - 1))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "delayMs": self.delay_ms}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BackoffPolicy":
        if not data:
            return cls()
        return cls(type=data.get("type", "exponential"), delay_ms=int(data.get("delayMs", 2000)))


@dataclass
class JobOptions:
    attempts: int = 1
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None
    delay_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict(),
            "removeOnComplete": self.remove_on_complete,
            "removeOnFail": self.remove_on_fail,
            "delay": self.delay_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobOptions":
        if not data:
            return cls()
        return cls(
            attempts=int(data.get("attempts", 1)),
            backoff=BackoffPolicy.from_dict(data.get("backoff")),
            remove_on_complete=data.get("removeOnComplete"),
            remove_on_fail=data.get("removeOnFail"),
            delay_ms=int(data.get("delay", 0)),
        )


@dataclass
class Job:
    id: str
    type: str
    payload: Dict[str, Any]
    options: JobOptions
    created_at: int
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    attempts_made: int = 0
    run_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    failure_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "options": self.options.to_dict(),
            "status": self.status.value,
            "progress": self.progress,
            "attemptsMade": self.attempts_made,
            "createdAt": self.created_at,
            "runAt": self.run_at,
            "processedOn": self.processed_at,
            "finishedOn": self.finished_at,
            "failedReason": self.failure_reason,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=str(data["id"]),
            type=data["type"],
            payload=data.get("payload") or {},
            options=JobOptions.from_dict(data.get("options")),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            progress=int(data.get("progress") or 0),
            attempts_made=int(data.get("attemptsMade") or 0),
            created_at=int(data["createdAt"]),
            run_at=int(data.get("runAt") or 0),
            processed_at=data.get("processedOn"),
            finished_at=data.get("finishedOn"),
            failure_reason=data.get("failedReason"),
            result=data.get("result"),
        )

from __future__ import annotations

from typing import Optional


class CoordinationError(Exception):
    """Base class for coordination-layer exceptions.

    Each subclass carries a stable ``error_code`` so the request layer can
    choose a user message without parsing text, and an HTTP ``status_code``
    used by the ops API.
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class StoreUnavailableError(CoordinationError):
    """The shared key-value store cannot be reached (503)."""
    status_code = 503
    error_code = "store_unavailable"


class LockTimeoutError(CoordinationError):
    """Lock acquisition retries were exhausted (409)."""
    status_code = 409
    error_code = "lock_timeout"

    def __init__(self, key: str, attempts: int, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            f"could not acquire lock '{key}' after {attempts} attempts",
            detail={"key": key, "attempts": attempts, **(detail or {})},
        )
        self.key = key
        self.attempts = attempts


class SerializationError(CoordinationError):
    """Payload is not representable as JSON; never retried (400)."""
    status_code = 400
    error_code = "serialization_error"


class JobExecutionError(CoordinationError):
    """A job body raised while executing (500)."""
    status_code = 500
    error_code = "job_execution_error"


class StaleBatchReferenceError(CoordinationError):
    """Batch id not found, either expired or never created (410).

    This is a user-facing condition, not a fatal error.
    """
    status_code = 410
    error_code = "batch_expired"

    def __init__(self, user_id: str, batch_id: str) -> None:
        super().__init__(
            "data expired, please retry",
            detail={"user_id": user_id, "batch_id": batch_id},
        )
        self.user_id = user_id
        self.batch_id = batch_id


class LockPolicyError(CoordinationError):
    """A lock policy is implausible for its operation class (500)."""
    status_code = 500
    error_code = "lock_policy_error"


class QuotaExceededError(CoordinationError):
    """The tenant quota check refused the operation (403)."""
    status_code = 403
    error_code = "quota_exceeded"


class JobNotFoundError(CoordinationError):
    """Requested job does not exist (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "CoordinationError",
    "StoreUnavailableError",
    "LockTimeoutError",
    "SerializationError",
    "JobExecutionError",
    "StaleBatchReferenceError",
    "LockPolicyError",
    "QuotaExceededError",
    "JobNotFoundError",
]

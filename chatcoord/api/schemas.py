from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatcoord.logging import get_correlation_id

# Maximum nested JSON depth accepted in report filters
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


# Stable error codes exposed by the API
_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "not_found",
    "forbidden",
    "conflict",
    "rate_limited",
    "server_error",
    "store_unavailable",
    "lock_timeout",
    "serialization_error",
    "job_execution_error",
    "batch_expired",
    "lock_policy_error",
    "quota_exceeded",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class ReportJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., min_length=1, max_length=128, alias="tenantId")
    user_id: str = Field(..., min_length=1, max_length=128, alias="userId")
    chat_id: Optional[str] = Field(default=None, max_length=128, alias="chatId")
    request_id: Optional[str] = Field(default=None, max_length=128, alias="requestId")
    estimated_invoices: Optional[int] = Field(default=None, ge=0, alias="estimatedInvoices")
    filters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tenant_id")
    @classmethod
    def _validate_tenant_id(cls, value: str) -> str:
        if "/" in value or "\\" in value or value in {".", ".."}:
            raise ValueError("tenantId must not contain path separators")
        return value

    @field_validator("filters")
    @classmethod
    def _validate_filters(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "chatId": self.chat_id,
            "requestId": self.request_id,
            "estimatedInvoices": self.estimated_invoices,
            "filters": self.filters,
        }


class JobCleanupRequest(BaseModel):
    completed_age_seconds: Optional[int] = Field(default=None, gt=0)
    failed_age_seconds: Optional[int] = Field(default=None, gt=0)

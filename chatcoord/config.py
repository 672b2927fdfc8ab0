from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatcoord.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the coordination layer.

    Every field maps to one environment variable; values found in a local
    ``.env`` file are used when the variable is not exported.
    """

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Run on the worker-local store only (single process deployments and tests)",
    )
    allow_store_fallback: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Start even when the shared store is unreachable",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    store_socket_timeout_seconds: float = env_field(5.0, "STORE_SOCKET_TIMEOUT_SECONDS")

    # Session and batch state
    session_ttl_seconds: int = env_field(3600, "SESSION_TTL_SECONDS")
    batch_ttl_seconds: int = env_field(
        900,
        "BATCH_TTL_SECONDS",
        description="Lifetime of abandoned multi-document workflows",
    )
    local_cache_max_entries: int = env_field(10000, "LOCAL_CACHE_MAX_ENTRIES")

    # Distributed locks
    lock_default_ttl_ms: int = env_field(10000, "LOCK_DEFAULT_TTL_MS")
    lock_default_retries: int = env_field(5, "LOCK_DEFAULT_RETRIES")
    lock_retry_base_ms: int = env_field(100, "LOCK_RETRY_BASE_MS")
    lock_retry_max_ms: int = env_field(1000, "LOCK_RETRY_MAX_MS")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow requests when the rate limiter cannot reach its lock or the store",
    )

    # Job queue
    job_completed_retention_seconds: int = env_field(
        24 * 60 * 60, "JOB_COMPLETED_RETENTION_SECONDS"
    )
    job_failed_retention_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "JOB_FAILED_RETENTION_SECONDS",
        description="Failed jobs are kept longer for diagnosis",
    )
    job_max_concurrency: int = env_field(3, "JOB_MAX_CONCURRENCY")
    job_poll_interval_seconds: float = env_field(1.0, "JOB_POLL_INTERVAL_SECONDS")
    job_stall_timeout_seconds: int = env_field(300, "JOB_STALL_TIMEOUT_SECONDS")
    job_cleanup_interval_seconds: int = env_field(3600, "JOB_CLEANUP_INTERVAL_SECONDS")
    job_worker_enabled: bool = env_field(True, "JOB_WORKER_ENABLED")
    report_output_dir: str = env_field("/tmp/chatcoord/reports", "REPORT_OUTPUT_DIR")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_seconds",
        "batch_ttl_seconds",
        "local_cache_max_entries",
        "lock_default_ttl_ms",
        "lock_default_retries",
        "job_completed_retention_seconds",
        "job_failed_retention_seconds",
        "job_max_concurrency",
        "job_stall_timeout_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("lock_retry_base_ms", "lock_retry_max_ms")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("job_poll_interval_seconds", "store_socket_timeout_seconds")
    @classmethod
    def _ensure_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

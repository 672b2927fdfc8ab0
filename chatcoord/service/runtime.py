from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, Optional, Union

from chatcoord.config import Settings, get_settings, reset_settings_cache
from chatcoord.logging import get_logger
from chatcoord.service.batch_state import BatchStateStore
from chatcoord.service.collaborators import (
    InvoiceService,
    Notifier,
    ReportGenerator,
    TenantService,
)
from chatcoord.service.job_queue import JobQueue
from chatcoord.service.job_worker import JobWorker
from chatcoord.service.locks import DistributedLock
from chatcoord.service.reports import (
    CLEANUP_JOB_TYPE,
    REPORT_JOB_TYPE,
    cleanup_temp_file_handler,
    make_report_handler,
)
from chatcoord.service.safe_ops import SafeOperations, SlidingWindowRateLimiter
from chatcoord.service.session_cache import SessionCache
from chatcoord.storage.memory import MemoryKeyValueStore
from chatcoord.storage.redis_store import RedisKeyValueStore

logger = get_logger(__name__)

REPORT_QUEUE_NAME = "reports"


def _build_store(settings: Settings) -> Union[RedisKeyValueStore, MemoryKeyValueStore]:
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemoryKeyValueStore(settings.local_cache_max_entries)

    store_error: Exception | None = None
    try:
        store = RedisKeyValueStore(
            settings.redis_url, socket_timeout=settings.store_socket_timeout_seconds
        )
        store.verify_connection()
        logger.info(
            "runtime_store_initialized",
            store_type="redis",
            redis_url=settings.redis_url,
        )
        return store
    except Exception as exc:
        store_error = exc

    if not settings.test_mode and not settings.allow_store_fallback:
        raise RuntimeError(
            "Redis is required for sessions, locks, batches and jobs; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a worker-local fallback."
        ) from store_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=settings.redis_url,
        error=str(store_error),
        message=(
            f"Running without Redis under {fallback_mode}; locks, batches and jobs "
            "are only coordinated within this process."
        ),
        mode=fallback_mode,
    )
    return MemoryKeyValueStore(settings.local_cache_max_entries)


class Runtime:
    """Holds the coordination components shared by the app and the worker."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)
        self.sessions = SessionCache(
            self.store,
            local=MemoryKeyValueStore(self.settings.local_cache_max_entries),
            default_ttl_seconds=self.settings.session_ttl_seconds,
        )
        self.batches = BatchStateStore(self.store, ttl_seconds=self.settings.batch_ttl_seconds)
        self.locks = DistributedLock(
            self.store,
            default_ttl_ms=self.settings.lock_default_ttl_ms,
            default_max_retries=self.settings.lock_default_retries,
            retry_base_ms=self.settings.lock_retry_base_ms,
            retry_max_ms=self.settings.lock_retry_max_ms,
        )
        self.safe_ops = SafeOperations(
            self.locks,
            rate_limiter=SlidingWindowRateLimiter(
                self.store, self.locks, fail_open=self.settings.rate_limit_fail_open
            ),
        )
        self.jobs = JobQueue(
            self.store,
            REPORT_QUEUE_NAME,
            completed_retention_seconds=self.settings.job_completed_retention_seconds,
            failed_retention_seconds=self.settings.job_failed_retention_seconds,
        )
        self.worker = JobWorker(
            self.jobs,
            {CLEANUP_JOB_TYPE: cleanup_temp_file_handler},
            concurrency=self.settings.job_max_concurrency,
            poll_interval=self.settings.job_poll_interval_seconds,
            cleanup_interval=self.settings.job_cleanup_interval_seconds,
            stall_timeout=self.settings.job_stall_timeout_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=self.store.backend,
            worker_concurrency=self.settings.job_max_concurrency,
        )

    def attach_collaborators(
        self,
        *,
        tenants: Optional[TenantService] = None,
        invoices: Optional[InvoiceService] = None,
        report_generator: Optional[ReportGenerator] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        """Wire the external business services into the coordination layer."""
        if tenants is not None:
            self.safe_ops.tenants = tenants
        if invoices is not None:
            self.safe_ops.invoices = invoices
        if report_generator is not None:
            self.worker.register(
                REPORT_JOB_TYPE,
                make_report_handler(report_generator, self.settings.report_output_dir),
            )
        if notifier is not None:
            self.worker.notifier = notifier

    async def health(self) -> Dict[str, Any]:
        return {
            "store": self.store.backend,
            "store_reachable": await self.store.ping(),
            "session_cache_degraded": self.sessions.degraded,
            "worker_running": self.worker.running,
            "worker_inflight": self.worker.inflight,
        }

    async def close(self) -> None:
        await self.worker.stop()
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        previous = runtime
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None and isinstance(previous.store, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(previous.store.close())
            except RuntimeError:
                asyncio.run(previous.store.close())
        runtime = Runtime(settings)
        return runtime

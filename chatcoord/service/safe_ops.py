"""Business operations wrapped in distributed locks with per-class fallbacks.

Every operation runs under a lock named ``{domain}:{tenant_id}[:{resource}]``
and follows the fallback policy of its operation class when the lock cannot
be taken:

- IDEMPOTENT_READ: run the check without the lock (fail-open). A stale read
  is acceptable, a hard failure is not.
- COUNTER: propagate the LockTimeoutError (fail-closed). A duplicated
  increment is worse than a failed request.
- COMPOSITE: one lock spans the whole sequence, single attempt, fail-closed.
  Re-running a partially completed sequence risks duplicate side effects.

Policies declare their worst-case duration. Registration refuses a TTL that
is shorter than that estimate or than the floor for the class.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from chatcoord.logging import get_logger
from chatcoord.service.collaborators import InvoiceService, TenantService
from chatcoord.service.errors import (
    LockPolicyError,
    LockTimeoutError,
    QuotaExceededError,
    StoreUnavailableError,
)
from chatcoord.service.locks import DistributedLock
from chatcoord.storage.kv import KeyValueStore, dumps, loads, rate_limit_key

logger = get_logger(__name__)

T = TypeVar("T")


async def _call(fn: Callable[[], Union[T, Awaitable[T]]]) -> T:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class OperationClass(str, Enum):
    IDEMPOTENT_READ = "idempotent_read"
    COUNTER = "counter"
    COMPOSITE = "composite"


# Shortest TTL accepted per class regardless of the declared duration
MIN_TTL_MS: Dict[OperationClass, int] = {
    OperationClass.IDEMPOTENT_READ: 1000,
    OperationClass.COUNTER: 2000,
    OperationClass.COMPOSITE: 5000,
}


@dataclass(frozen=True)
class LockPolicy:
    name: str
    domain: str
    operation_class: OperationClass
    ttl_ms: int
    max_retries: int
    expected_duration_ms: int

    @property
    def fail_open(self) -> bool:
        return self.operation_class is OperationClass.IDEMPOTENT_READ

    def validate(self) -> None:
        if self.expected_duration_ms <= 0:
            raise LockPolicyError(
                f"policy '{self.name}' must declare a positive worst-case duration",
                detail={"policy": self.name},
            )
        floor = MIN_TTL_MS[self.operation_class]
        if self.ttl_ms < floor or self.ttl_ms < self.expected_duration_ms:
            raise LockPolicyError(
                f"policy '{self.name}' ttl {self.ttl_ms}ms is implausibly short",
                detail={
                    "policy": self.name,
                    "ttl_ms": self.ttl_ms,
                    "expected_duration_ms": self.expected_duration_ms,
                    "class_floor_ms": floor,
                },
            )
        if self.max_retries < 1:
            raise LockPolicyError(
                f"policy '{self.name}' needs at least one acquisition attempt",
                detail={"policy": self.name},
            )
        if self.operation_class is OperationClass.COMPOSITE and self.max_retries != 1:
            raise LockPolicyError(
                f"composite policy '{self.name}' must use a single attempt",
                detail={"policy": self.name, "max_retries": self.max_retries},
            )


DEFAULT_POLICIES = (
    LockPolicy("folio", "folio", OperationClass.COUNTER, 5000, 3, 2000),
    LockPolicy("invoice_limit", "invoice_limit", OperationClass.IDEMPOTENT_READ, 3000, 2, 1000),
    LockPolicy("invoice_count", "invoice_count", OperationClass.COUNTER, 3000, 2, 1000),
    LockPolicy("invoice_generation", "invoice_generation", OperationClass.COMPOSITE, 15000, 1, 12000),
    LockPolicy("batch_process", "batch_process", OperationClass.COMPOSITE, 60000, 1, 45000),
)


class SlidingWindowRateLimiter:
    """Sliding-window log limiter keyed by ``(user_id, operation)``.

    The window log is a JSON list of request timestamps stored under
    ``ratelimit:{user_id}:{operation}``. It is only read and rewritten inside
    a DistributedLock critical section on the same name, so it relies on the
    same atomic primitives as the lock and nothing more.

    When the lock or the store fails the limiter answers "allowed"
    (``fail_open=True``). That is a deliberate availability choice: this
    limiter shapes traffic, it does not guard money.
    """

    def __init__(
        self,
        store: KeyValueStore,
        locks: DistributedLock,
        *,
        fail_open: bool = True,
        lock_ttl_ms: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.locks = locks
        self.fail_open = fail_open
        self.lock_ttl_ms = lock_ttl_ms
        self._clock = clock

    async def hit(
        self, user_id: str, operation: str, max_requests: int, window_ms: int
    ) -> bool:
        if max_requests <= 0:
            return True
        key = rate_limit_key(user_id, operation)

        async def _check_and_record() -> bool:
            now_ms = int(self._clock() * 1000)
            window_start = now_ms - window_ms
            log = loads(await self.store.get(key))
            hits = [int(ts) for ts in log if int(ts) > window_start] if isinstance(log, list) else []
            if len(hits) >= max_requests:
                return False
            hits.append(now_ms)
            ttl_seconds = max(1, (window_ms + 999) // 1000)
            await self.store.set(key, dumps(hits), ttl_seconds=ttl_seconds)
            return True

        try:
            return await self.locks.with_lock(
                f"rate_limit:{user_id}:{operation}",
                _check_and_record,
                ttl_ms=self.lock_ttl_ms,
                max_retries=1,
            )
        except (LockTimeoutError, StoreUnavailableError) as exc:
            logger.warning(
                "rate_limit_check_failed",
                user_id=user_id,
                operation=operation,
                error=exc.message,
                fail_open=self.fail_open,
            )
            return self.fail_open


class SafeOperations:
    def __init__(
        self,
        locks: DistributedLock,
        *,
        tenants: Optional[TenantService] = None,
        invoices: Optional[InvoiceService] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        policies: Optional[List[LockPolicy]] = None,
    ) -> None:
        self.locks = locks
        self.tenants = tenants
        self.invoices = invoices
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(locks.store, locks)
        self._policies: Dict[str, LockPolicy] = {}
        for policy in policies if policies is not None else DEFAULT_POLICIES:
            self.register_policy(policy)

    def register_policy(self, policy: LockPolicy) -> LockPolicy:
        policy.validate()
        self._policies[policy.name] = policy
        return policy

    def policy(self, name: str) -> LockPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise LockPolicyError(f"unknown lock policy '{name}'", detail={"policy": name}) from None

    @staticmethod
    def lock_name(policy: LockPolicy, tenant_id: str, resource: Optional[str] = None) -> str:
        if resource:
            return f"{policy.domain}:{tenant_id}:{resource}"
        return f"{policy.domain}:{tenant_id}"

    async def run(
        self,
        policy_name: str,
        tenant_id: str,
        fn: Callable[[], Union[T, Awaitable[T]]],
        *,
        resource: Optional[str] = None,
    ) -> T:
        """Run ``fn`` under the lock for ``(tenant_id, resource)`` per policy.

        Only a failure to take the lock triggers the fallback; errors raised
        by ``fn`` itself, lock timeouts from nested locks included, propagate.
        """
        policy = self.policy(policy_name)
        name = self.lock_name(policy, tenant_id, resource)
        try:
            handle = await self.locks.acquire_with_retries(
                name, policy.ttl_ms, policy.max_retries
            )
        except LockTimeoutError as exc:
            if not policy.fail_open:
                logger.error(
                    "safe_operation_lock_failed",
                    policy=policy.name,
                    tenant_id=tenant_id,
                    resource=resource,
                    error=exc.message,
                )
                raise
            logger.warning(
                "safe_operation_unlocked_fallback",
                policy=policy.name,
                tenant_id=tenant_id,
                resource=resource,
                error=exc.message,
            )
            return await _call(fn)
        try:
            return await _call(fn)
        finally:
            await self.locks.release(handle)

    def _require_tenants(self) -> TenantService:
        if self.tenants is None:
            raise RuntimeError("SafeOperations was built without a tenant service")
        return self.tenants

    async def get_next_folio(self, tenant_id: str, series: str = "A") -> int:
        tenants = self._require_tenants()
        return await self.run(
            "folio",
            tenant_id,
            lambda: tenants.get_next_folio(tenant_id, series),
            resource=series,
        )

    async def can_generate_invoice(self, tenant_id: str) -> Dict[str, Any]:
        tenants = self._require_tenants()
        return await self.run("invoice_limit", tenant_id, lambda: tenants.can_generate_invoice(tenant_id))

    async def increment_invoice_count(self, tenant_id: str) -> Any:
        tenants = self._require_tenants()
        return await self.run(
            "invoice_count", tenant_id, lambda: tenants.increment_invoice_count(tenant_id)
        )

    async def generate_invoice(
        self, data: Dict[str, Any], tenant_id: str, *, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Check quota, create the invoice and bump the quota under one lock."""
        tenants = self._require_tenants()
        if self.invoices is None:
            raise RuntimeError("SafeOperations was built without an invoice service")
        invoices = self.invoices

        async def _critical_section() -> Dict[str, Any]:
            check = await tenants.can_generate_invoice(tenant_id)
            if not check.get("canGenerate"):
                raise QuotaExceededError(
                    f"cannot generate invoice: {check.get('reason')}",
                    detail={"tenant_id": tenant_id, "reason": check.get("reason")},
                )
            invoice = await invoices.generate_invoice(data, tenant_id)
            await tenants.increment_invoice_count(tenant_id)
            logger.info(
                "invoice_generated_locked",
                tenant_id=tenant_id,
                user_id=user_id,
                invoice_id=invoice.get("id"),
                folio=invoice.get("folio_number"),
            )
            return invoice

        logger.info("invoice_generation_started", tenant_id=tenant_id, user_id=user_id)
        return await self.run("invoice_generation", tenant_id, _critical_section)

    async def process_batch(
        self,
        tenant_id: str,
        items: List[Any],
        processor: Callable[[Any], Awaitable[Any]],
    ) -> List[Dict[str, Any]]:
        """Process items sequentially under one tenant lock.

        A failing item is recorded and does not stop the rest of the batch.
        """

        async def _critical_section() -> List[Dict[str, Any]]:
            logger.info("batch_processing_locked", tenant_id=tenant_id, item_count=len(items))
            results: List[Dict[str, Any]] = []
            for item in items:
                try:
                    results.append({"success": True, "item": item, "result": await processor(item)})
                except Exception as exc:
                    results.append({"success": False, "item": item, "error": str(exc)})
            return results

        return await self.run("batch_process", tenant_id, _critical_section)

    async def get_lock_stats(self) -> Dict[str, Any]:
        stats = await self.locks.get_stats()
        stats["policies"] = {
            name: {
                "class": policy.operation_class.value,
                "ttl_ms": policy.ttl_ms,
                "max_retries": policy.max_retries,
            }
            for name, policy in sorted(self._policies.items())
        }
        return stats

    async def check_rate_limit(
        self,
        user_id: str,
        operation: str,
        max_requests: int = 10,
        window_ms: int = 60000,
    ) -> bool:
        """True if the user may perform ``operation`` now; fails open on lock errors."""
        return await self.rate_limiter.hit(user_id, operation, max_requests, window_ms)

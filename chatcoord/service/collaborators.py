"""Contracts for the services this layer coordinates but does not implement.

Invoicing, tenant quotas, report rendering and chat delivery live outside the
coordination layer; they are injected wherever a component calls them.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

ProgressCallback = Callable[[float], Awaitable[None]]


class TenantService(Protocol):
    async def get_next_folio(self, tenant_id: str, series: str) -> int:
        ...

    async def can_generate_invoice(self, tenant_id: str) -> Dict[str, Any]:
        """Return ``{"canGenerate": bool, "reason": str | None}``."""
        ...

    async def increment_invoice_count(self, tenant_id: str) -> Any:
        ...


class InvoiceService(Protocol):
    async def generate_invoice(self, data: Dict[str, Any], tenant_id: str) -> Dict[str, Any]:
        ...


class ReportGenerator(Protocol):
    async def generate(
        self,
        tenant_id: str,
        *,
        filters: Dict[str, Any],
        output_path: str,
        progress: ProgressCallback,
    ) -> Dict[str, Any]:
        """Render a report to ``output_path``; returns summary statistics."""
        ...


class Notifier(Protocol):
    async def notify(
        self, user_id: Optional[str], chat_id: Optional[str], notification: Dict[str, Any]
    ) -> bool:
        """Deliver a finished job to the user.

        ``notification`` is ``{resultLocation, summaryStats, requestId, jobId}``
        for a completed job and ``{error, requestId, jobId}`` for a failed one.
        """
        ...

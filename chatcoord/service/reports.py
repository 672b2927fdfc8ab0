"""Report generation and temp-file cleanup jobs."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Dict, Optional

from chatcoord.logging import get_logger
from chatcoord.service.collaborators import ReportGenerator
from chatcoord.service.errors import JobExecutionError
from chatcoord.service.job_queue import JobQueue
from chatcoord.service.job_worker import JobContext, JobHandler
from chatcoord.storage.models import BackoffPolicy, Job, JobOptions

logger = get_logger(__name__)

REPORT_JOB_TYPE = "generate-report"
CLEANUP_JOB_TYPE = "cleanup-temp-file"
REPORT_FILE_TTL_MS = 24 * 60 * 60 * 1000

# Generator progress is mapped into this band of the job's progress
GENERATION_PROGRESS_START = 15
GENERATION_PROGRESS_END = 85


class PathTraversalError(ValueError):
    """Raised when a report path escapes the output directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base``; the result must resolve inside ``base``."""
    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def report_output_path(output_dir: str, tenant_id: str, job_id: str) -> Path:
    """Deterministic per-job location, so a retried job overwrites its own file."""
    return safe_join(Path(output_dir), f"{tenant_id}/{job_id}.xlsx")


def report_job_options() -> JobOptions:
    return JobOptions(
        attempts=3,
        backoff=BackoffPolicy(type="exponential", delay_ms=2000),
        remove_on_complete=10,
        remove_on_fail=5,
        delay_ms=1000,
    )


async def enqueue_report_job(queue: JobQueue, payload: Dict[str, Any]) -> Job:
    """Queue a report for ``payload['tenantId']``.

    The payload also carries ``userId``, ``chatId`` and ``requestId`` for the
    completion notice, plus optional ``filters`` and ``estimatedInvoices``.
    """
    if not payload.get("tenantId"):
        raise ValueError("report payload requires tenantId")
    job = await queue.enqueue(REPORT_JOB_TYPE, payload, report_job_options())
    logger.info(
        "report_job_enqueued",
        job_id=job.id,
        tenant_id=payload.get("tenantId"),
        estimated_invoices=payload.get("estimatedInvoices"),
    )
    return job


async def enqueue_cleanup_job(
    queue: JobQueue, file_path: str, *, delay_ms: int = REPORT_FILE_TTL_MS
) -> Job:
    options = JobOptions(attempts=1, remove_on_complete=1, remove_on_fail=1, delay_ms=delay_ms)
    return await queue.enqueue(
        CLEANUP_JOB_TYPE,
        {"filePath": file_path, "fileName": os.path.basename(file_path)},
        options,
    )


def make_report_handler(
    generator: ReportGenerator,
    output_dir: str,
    *,
    schedule_cleanup: bool = True,
) -> JobHandler:
    """Build the handler for report jobs.

    Re-running a job rewrites the same file, so a retry after a partial
    failure leaves a single report behind.
    """

    async def handle(ctx: JobContext) -> Dict[str, Any]:
        job = ctx.job
        tenant_id = str(job.payload.get("tenantId"))
        filters = job.payload.get("filters") or {}
        path = report_output_path(output_dir, tenant_id, job.id)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await ctx.progress(5)

        async def on_progress(fraction: float) -> None:
            value = max(0.0, min(100.0, fraction))
            span = GENERATION_PROGRESS_END - GENERATION_PROGRESS_START
            await ctx.progress(GENERATION_PROGRESS_START + value * span / 100)

        await ctx.progress(GENERATION_PROGRESS_START)
        summary = await generator.generate(
            tenant_id, filters=filters, output_path=str(path), progress=on_progress
        )
        if isinstance(summary, dict) and summary.get("success") is False:
            raise JobExecutionError(
                summary.get("error") or "report generation failed",
                detail={"tenant_id": tenant_id},
            )
        await ctx.progress(95)

        if schedule_cleanup:
            await enqueue_cleanup_job(ctx.queue, str(path))

        stats = dict(summary or {})
        stats.pop("success", None)
        logger.info("report_generated", job_id=job.id, tenant_id=tenant_id, path=str(path))
        return {
            "resultLocation": str(path),
            "fileName": path.name,
            "summaryStats": stats,
        }

    return handle


async def cleanup_temp_file_handler(ctx: JobContext) -> Dict[str, Any]:
    """Delete a generated file. A file that is already gone counts as success."""
    file_path = ctx.job.payload.get("filePath")
    if not file_path:
        raise JobExecutionError("cleanup job requires filePath")
    try:
        await asyncio.to_thread(os.unlink, file_path)
    except FileNotFoundError:
        logger.info("temp_file_already_removed", file_path=file_path)
        return {"deleted": False, "filePath": file_path}
    logger.info("temp_file_removed", file_path=file_path)
    return {"deleted": True, "filePath": file_path}


def estimate_processing_time(invoice_count: Optional[int]) -> str:
    """Rough wall-clock estimate shown to the user when a report is queued."""
    count = invoice_count or 0
    if count <= 100:
        return "30 seconds"
    if count <= 500:
        return "1-2 minutes"
    if count <= 1000:
        return "3-5 minutes"
    if count <= 2000:
        return "8-12 minutes"
    if count <= 5000:
        return "20-30 minutes"
    return "30+ minutes"

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from chatcoord.api.schemas import Envelope, JobCleanupRequest, ReportJobRequest
from chatcoord.logging import get_logger
from chatcoord.service.reports import enqueue_report_job, estimate_processing_time
from chatcoord.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@router.get("/ops/health", response_model=Envelope, tags=["ops"])
async def ops_health():
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.health())


@router.get("/ops/sessions", response_model=Envelope, tags=["ops"])
async def session_stats():
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.sessions.get_stats())


@router.get("/ops/locks", response_model=Envelope, tags=["ops"])
async def lock_stats():
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.safe_ops.get_lock_stats())


@router.get("/ops/jobs", response_model=Envelope, tags=["ops"])
async def job_stats():
    runtime = get_runtime()
    stats = await runtime.jobs.get_stats()
    return Envelope(status="ok", data={"queue": runtime.jobs.name, **stats})


@router.post("/ops/jobs/cleanup", response_model=Envelope, tags=["ops"])
async def cleanup_jobs(body: Optional[JobCleanupRequest] = None):
    runtime = get_runtime()
    body = body or JobCleanupRequest()
    removed = await runtime.jobs.cleanup(
        completed_age_seconds=body.completed_age_seconds,
        failed_age_seconds=body.failed_age_seconds,
    )
    return Envelope(status="ok", data={"removed": removed})


@router.get("/jobs/{job_id}", response_model=Envelope, tags=["jobs"])
async def job_status(job_id: str):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.jobs.get_status(job_id))


@router.post("/jobs/reports", response_model=Envelope, status_code=202, tags=["jobs"])
async def create_report_job(body: ReportJobRequest):
    runtime = get_runtime()
    job = await enqueue_report_job(runtime.jobs, body.to_payload())
    return Envelope(
        status="ok",
        data={
            "jobId": job.id,
            "status": job.status.value,
            "estimatedTime": estimate_processing_time(body.estimated_invoices),
        },
    )

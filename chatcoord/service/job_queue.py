"""Persisted queue of long-running jobs.

Each job is one JSON record under ``job:{queue}:{id}`` in the shared store.
A worker claims a job by taking ``job:{queue}:{id}:claim`` with SET NX and a
lease TTL; a job whose lease lapses while ``active`` is returned to
``waiting`` by ``recover_stalled``. Delivery is therefore at-least-once:
a job can run again after a worker crash, and every handler must be
idempotent or check for its own earlier side effects before repeating them.

Lifecycle: waiting -> active -> completed | failed. A failed execution goes
back to waiting with exponential backoff while attempts remain.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from chatcoord.logging import get_logger
from chatcoord.service.errors import JobNotFoundError, StoreUnavailableError
from chatcoord.storage.kv import (
    JOB_PREFIX,
    KeyValueStore,
    dumps,
    job_claim_key,
    job_key,
    job_notified_key,
    loads,
)
from chatcoord.storage.models import Job, JobOptions, JobStatus

logger = get_logger(__name__)

DEFAULT_QUEUE_NAME = "reports"
DEFAULT_COMPLETED_RETENTION_SECONDS = 24 * 60 * 60
DEFAULT_FAILED_RETENTION_SECONDS = 7 * 24 * 60 * 60
DEFAULT_LEASE_SECONDS = 300
RECOVERY_LEASE_SECONDS = 30
STALLED_FAILURE_REASON = "job stalled: worker lease expired"


class JobQueue:
    def __init__(
        self,
        store: KeyValueStore,
        name: str = DEFAULT_QUEUE_NAME,
        *,
        completed_retention_seconds: int = DEFAULT_COMPLETED_RETENTION_SECONDS,
        failed_retention_seconds: int = DEFAULT_FAILED_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.name = name
        self.completed_retention_seconds = completed_retention_seconds
        self.failed_retention_seconds = failed_retention_seconds
        self._clock = clock
        # Claim tokens for jobs this process is executing
        self._claims: Dict[str, str] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _save(self, job: Job) -> None:
        await self.store.set(job_key(self.name, job.id), dumps(job.to_dict()))

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Job:
        """Persist a new waiting job.

        Contract: the handler registered for ``job_type`` may run more than
        once for the same job and must be safe to repeat.
        """
        opts = options or JobOptions()
        if opts.attempts < 1:
            raise ValueError("attempts must be at least 1")
        now = self._now_ms()
        job = Job(
            id=uuid.uuid4().hex,
            type=job_type,
            payload=payload,
            options=opts,
            created_at=now,
            run_at=now + max(0, opts.delay_ms),
        )
        await self._save(job)
        logger.info(
            "job_enqueued",
            queue=self.name,
            job_id=job.id,
            job_type=job_type,
            attempts=opts.attempts,
            delay_ms=opts.delay_ms,
        )
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        data = loads(await self.store.get(job_key(self.name, job_id)))
        if not isinstance(data, dict) or "id" not in data:
            return None
        return Job.from_dict(data)

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job '{job_id}' not found", detail={"job_id": job_id})
        return {
            "id": job.id,
            "type": job.type,
            "status": job.status.value,
            "progress": job.progress,
            "data": job.payload,
            "createdAt": job.created_at,
            "processedOn": job.processed_at,
            "finishedOn": job.finished_at,
            "failedReason": job.failure_reason,
            "attemptsMade": job.attempts_made,
            "result": job.result,
        }

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        prefix = f"{JOB_PREFIX}{self.name}:"
        jobs: List[Job] = []
        for key in await self.store.scan(prefix):
            # claim and notification markers share the prefix
            if ":" in key[len(prefix):]:
                continue
            data = loads(await self.store.get(key))
            if not isinstance(data, dict) or "id" not in data:
                continue
            job = Job.from_dict(data)
            if status is None or job.status is status:
                jobs.append(job)
        jobs.sort(key=lambda j: (j.created_at, j.id))
        return jobs

    async def report_progress(self, job_id: str, percent: float) -> Optional[Job]:
        """Record progress for an active job and renew this worker's lease."""
        job = await self.get(job_id)
        if job is None or job.status is not JobStatus.ACTIVE:
            logger.debug("job_progress_ignored", queue=self.name, job_id=job_id)
            return job
        value = int(min(100, max(0, percent)))
        if value > job.progress:
            job.progress = value
            await self._save(job)
            logger.info("job_progress", queue=self.name, job_id=job_id, progress=value)
        await self._renew_claim(job_id)
        return job

    async def _renew_claim(self, job_id: str) -> None:
        token = self._claims.get(job_id)
        if token is None:
            return
        key = job_claim_key(self.name, job_id)
        # not atomic; only the lease owner writes this key while it is live
        if await self.store.get(key) == token:
            lease_seconds = int(token.rsplit(":", 1)[-1])
            await self.store.set(key, token, ttl_seconds=lease_seconds)

    async def claim_next(
        self, worker_id: str, lease_seconds: int = DEFAULT_LEASE_SECONDS
    ) -> Optional[Job]:
        """Claim the oldest waiting job that is due, or return None."""
        now = self._now_ms()
        ready = [job for job in await self.list_jobs(JobStatus.WAITING) if job.run_at <= now]
        ready.sort(key=lambda j: (j.run_at, j.created_at))
        for candidate in ready:
            token = f"{worker_id}:{uuid.uuid4().hex}:{lease_seconds}"
            claim_key = job_claim_key(self.name, candidate.id)
            if not await self.store.set(claim_key, token, ttl_seconds=lease_seconds, nx=True):
                continue
            job = await self.get(candidate.id)
            if job is None or job.status is not JobStatus.WAITING:
                await self.store.compare_and_delete(claim_key, token)
                continue
            job.status = JobStatus.ACTIVE
            job.attempts_made += 1
            job.progress = 0
            job.processed_at = self._now_ms()
            await self._save(job)
            self._claims[job.id] = token
            logger.info(
                "job_claimed",
                queue=self.name,
                job_id=job.id,
                worker_id=worker_id,
                attempt=job.attempts_made,
            )
            return job
        return None

    async def release_claim(self, job_id: str) -> None:
        token = self._claims.pop(job_id, None)
        if token is None:
            return
        try:
            await self.store.compare_and_delete(job_claim_key(self.name, job_id), token)
        except StoreUnavailableError as exc:
            logger.warning("job_claim_release_failed", job_id=job_id, error=exc.message)

    async def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> Job:
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.finished_at = self._now_ms()
        job.result = result or {}
        job.failure_reason = None
        await self._save(job)
        await self.release_claim(job.id)
        logger.info(
            "job_completed",
            queue=self.name,
            job_id=job.id,
            attempts=job.attempts_made,
            duration_ms=job.finished_at - job.created_at,
        )
        await self.trim_terminal(JobStatus.COMPLETED, job.options.remove_on_complete)
        return job

    async def fail(self, job: Job, reason: str, *, retry: bool = True) -> Job:
        """Record a failed execution; reschedule while attempts remain."""
        job.failure_reason = reason
        if retry and job.attempts_made < job.options.attempts:
            delay = job.options.backoff.delay_for(job.attempts_made)
            job.status = JobStatus.WAITING
            job.run_at = self._now_ms() + delay
            await self._save(job)
            await self.release_claim(job.id)
            logger.warning(
                "job_attempt_failed",
                queue=self.name,
                job_id=job.id,
                attempt=job.attempts_made,
                max_attempts=job.options.attempts,
                retry_in_ms=delay,
                error=reason,
            )
            return job

        job.status = JobStatus.FAILED
        job.finished_at = self._now_ms()
        await self._save(job)
        await self.release_claim(job.id)
        logger.error(
            "job_failed",
            queue=self.name,
            job_id=job.id,
            attempts=job.attempts_made,
            error=reason,
        )
        await self.trim_terminal(JobStatus.FAILED, job.options.remove_on_fail)
        return job

    async def recover_stalled(self) -> List[Job]:
        """Return active jobs whose claim lease expired to the waiting state.

        A job out of attempts is failed instead. Each recovery holds the job's
        claim key for its duration, so it cannot race a concurrent recovery or
        a fresh claim of the same job. Returns the jobs that were recovered.
        """
        recovered: List[Job] = []
        for snapshot in await self.list_jobs(JobStatus.ACTIVE):
            claim_key = job_claim_key(self.name, snapshot.id)
            token = f"recovery:{uuid.uuid4().hex}:{RECOVERY_LEASE_SECONDS}"
            if not await self.store.set(
                claim_key, token, ttl_seconds=RECOVERY_LEASE_SECONDS, nx=True
            ):
                continue
            try:
                job = await self.get(snapshot.id)
                if job is None or job.status is not JobStatus.ACTIVE:
                    continue
                if job.attempts_made >= job.options.attempts:
                    job.status = JobStatus.FAILED
                    job.finished_at = self._now_ms()
                    job.failure_reason = STALLED_FAILURE_REASON
                else:
                    job.status = JobStatus.WAITING
                    job.run_at = self._now_ms()
                await self._save(job)
            finally:
                await self.store.compare_and_delete(claim_key, token)
            recovered.append(job)
            logger.warning(
                "job_stalled",
                queue=self.name,
                job_id=job.id,
                attempts=job.attempts_made,
                new_status=job.status.value,
            )
        return recovered

    async def remove(self, job_id: str) -> bool:
        removed = await self.store.delete(job_key(self.name, job_id))
        await self.store.delete(job_notified_key(self.name, job_id))
        return removed

    async def trim_terminal(self, status: JobStatus, keep: Optional[int]) -> int:
        """Keep only the ``keep`` most recently finished jobs in ``status``."""
        if keep is None or keep < 0:
            return 0
        jobs = await self.list_jobs(status)
        jobs.sort(key=lambda j: (j.finished_at or 0, j.created_at), reverse=True)
        removed = 0
        for job in jobs[keep:]:
            if await self.remove(job.id):
                removed += 1
        if removed:
            logger.debug("jobs_trimmed", queue=self.name, status=status.value, removed=removed)
        return removed

    async def cleanup(
        self,
        completed_age_seconds: Optional[int] = None,
        failed_age_seconds: Optional[int] = None,
    ) -> Dict[str, int]:
        """Purge terminal jobs older than their retention window.

        Failed jobs are kept longer than completed ones for diagnosis.
        Safe to call repeatedly.
        """
        now = self._now_ms()
        windows = {
            JobStatus.COMPLETED: completed_age_seconds or self.completed_retention_seconds,
            JobStatus.FAILED: failed_age_seconds or self.failed_retention_seconds,
        }
        removed = {JobStatus.COMPLETED.value: 0, JobStatus.FAILED.value: 0}
        for job in await self.list_jobs():
            window = windows.get(job.status)
            if window is None or job.finished_at is None:
                continue
            if job.finished_at < now - window * 1000 and await self.remove(job.id):
                removed[job.status.value] += 1
        if any(removed.values()):
            logger.info("jobs_cleaned", queue=self.name, **removed)
        return removed

    async def get_stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in await self.list_jobs():
            counts[job.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

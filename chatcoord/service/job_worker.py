"""Background worker that executes jobs from a JobQueue.

The worker polls the queue, claims due jobs up to its concurrency limit and
runs the handler registered for each job type. For notifying job types the
originating user hears exactly once how the job ended: the result location
when it completes, or the error once it has failed for good.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from chatcoord.logging import get_logger, job_log_context
from chatcoord.service.collaborators import Notifier
from chatcoord.service.errors import JobExecutionError, SerializationError
from chatcoord.service.job_queue import DEFAULT_LEASE_SECONDS, JobQueue
from chatcoord.storage.kv import job_notified_key
from chatcoord.storage.models import Job, JobStatus

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60
MAX_LOOP_BACKOFF_SECONDS = 300
NOTIFY_JOB_TYPES = frozenset({"generate-report"})


@dataclass
class JobContext:
    job: Job
    queue: JobQueue

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    async def progress(self, percent: float) -> None:
        await self.queue.report_progress(self.job.id, percent)


JobHandler = Callable[[JobContext], Awaitable[Optional[Dict[str, Any]]]]


class JobWorker:
    """Background worker for processing queued jobs.

    Delivery is at-least-once, so handlers must tolerate re-execution.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Optional[Dict[str, JobHandler]] = None,
        notifier: Optional[Notifier] = None,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        stall_timeout: int = DEFAULT_LEASE_SECONDS,
        notify_types: Iterable[str] = NOTIFY_JOB_TYPES,
        worker_id: Optional[str] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.notifier = notifier
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.cleanup_interval = cleanup_interval
        self.stall_timeout = stall_timeout
        self.notify_types = frozenset(notify_types)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._slots = asyncio.Semaphore(concurrency)
        self._inflight: Set[asyncio.Task] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup_run: float = 0.0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def register(self, job_type: str, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("job_worker_already_running", worker_id=self.worker_id)
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "job_worker_started",
            worker_id=self.worker_id,
            queue=self.queue.name,
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
        )

    async def stop(self) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("job_worker_stopped", worker_id=self.worker_id)

    async def drain(self) -> None:
        """Wait until every job started by this worker has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                await self._maybe_run_cleanup()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "job_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_LOOP_BACKOFF_SECONDS,
                        self.poll_interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "job_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> int:
        """Recover stalled jobs and start as many due jobs as free slots allow.

        Returns the number of jobs started. Started jobs run as tasks; call
        ``drain()`` to wait for them.
        """
        for job in await self.queue.recover_stalled():
            if job.status is JobStatus.FAILED and job.type in self.notify_types:
                await self._notify(job)
        started = 0
        while not self._slots.locked():
            await self._slots.acquire()
            try:
                job = await self.queue.claim_next(self.worker_id, self.stall_timeout)
            except BaseException:
                self._slots.release()
                raise
            if job is None:
                self._slots.release()
                break
            task = asyncio.create_task(self._execute(job))
            self._inflight.add(task)
            task.add_done_callback(self._job_done)
            started += 1
        return started

    def _job_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._slots.release()

    async def _maybe_run_cleanup(self) -> None:
        if self.cleanup_interval <= 0:
            return
        now = time.monotonic()
        if self._last_cleanup_run and (now - self._last_cleanup_run) < self.cleanup_interval:
            return
        self._last_cleanup_run = now
        try:
            await self.queue.cleanup()
        except Exception as exc:
            logger.warning("job_cleanup_failed", queue=self.queue.name, error=str(exc))

    async def _execute(self, job: Job) -> None:
        with job_log_context(job.id, job.type, self.worker_id, job.attempts_made):
            try:
                await self._run_job(job)
            except Exception as exc:
                # The job stays active until its lease lapses; give the lease
                # back so the next poll can recover it.
                logger.error(
                    "job_finalize_failed",
                    job_id=job.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await self.queue.release_claim(job.id)

    async def _run_job(self, job: Job) -> None:
        handler = self.handlers.get(job.type)
        if handler is None:
            logger.error("job_handler_missing", job_id=job.id)
            await self._fail(job, f"no handler registered for '{job.type}'", retry=False)
            return

        logger.info("job_starting", job_id=job.id)
        try:
            result = handler(JobContext(job=job, queue=self.queue))
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            error = JobExecutionError(
                str(exc) or type(exc).__name__,
                detail={"job_id": job.id, "error_type": type(exc).__name__},
            )
            logger.warning(
                "job_execution_failed",
                job_id=job.id,
                error_type=type(exc).__name__,
                error=error.message,
            )
            await self._fail(job, error.message)
            return

        try:
            completed = await self.queue.complete(job, result or {})
        except SerializationError as exc:
            logger.error("job_result_unserializable", job_id=job.id, error=exc.message)
            job.result = None
            await self._fail(job, exc.message, retry=False)
            return
        if completed.type in self.notify_types:
            await self._notify(completed)

    async def _fail(self, job: Job, reason: str, *, retry: bool = True) -> Job:
        failed = await self.queue.fail(job, reason, retry=retry)
        if failed.status is JobStatus.FAILED and failed.type in self.notify_types:
            await self._notify(failed)
        return failed

    @staticmethod
    def _notification_for(job: Job) -> Dict[str, Any]:
        if job.status is JobStatus.FAILED:
            return {
                "error": job.failure_reason,
                "requestId": job.payload.get("requestId"),
                "jobId": job.id,
            }
        result = job.result or {}
        return {
            "resultLocation": result.get("resultLocation") or result.get("filePath"),
            "summaryStats": result.get("summaryStats", {}),
            "requestId": job.payload.get("requestId"),
            "jobId": job.id,
        }

    async def _notify(self, job: Job) -> bool:
        """Tell the user how a finished job ended, once however often it ran."""
        if self.notifier is None:
            return False
        marker = job_notified_key(self.queue.name, job.id)
        if job.status is JobStatus.FAILED:
            retention = self.queue.failed_retention_seconds
        else:
            retention = self.queue.completed_retention_seconds
        if not await self.queue.store.set(
            marker, str(int(time.time() * 1000)), ttl_seconds=max(retention, 1), nx=True
        ):
            logger.info("job_notification_skipped", job_id=job.id, reason="already_notified")
            return False

        payload = job.payload
        try:
            delivered = await self.notifier.notify(
                payload.get("userId"), payload.get("chatId"), self._notification_for(job)
            )
        except Exception as exc:
            logger.error(
                "job_notification_failed",
                job_id=job.id,
                user_id=payload.get("userId"),
                error=str(exc),
            )
            return False
        if not delivered:
            logger.warning("job_notification_rejected", job_id=job.id, user_id=payload.get("userId"))
            return False
        logger.info(
            "job_notification_sent",
            job_id=job.id,
            user_id=payload.get("userId"),
            outcome=job.status.value,
        )
        return True

"""JobWorker: bounded concurrency, retries, and exactly-once completion or failure notices."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from chatcoord.service.errors import StoreUnavailableError
from chatcoord.service.job_queue import JobQueue
from chatcoord.service.job_worker import JobWorker
from chatcoord.storage.kv import job_claim_key
from chatcoord.storage.models import BackoffPolicy, JobOptions, JobStatus


@pytest.fixture
def queue(store, clock):
    return JobQueue(store, "reports", clock=clock)


def notifier_mock(delivered=True):
    notifier = AsyncMock()
    notifier.notify.return_value = delivered
    return notifier


async def run_round(worker):
    started = await worker.run_once()
    await worker.drain()
    return started


class TestExecution:
    async def test_completes_job_and_notifies_once(self, queue):
        notifier = notifier_mock()

        async def handler(ctx):
            await ctx.progress(50)
            return {"resultLocation": "/reports/t1/x.xlsx", "summaryStats": {"invoices": 12}}

        worker = JobWorker(queue, {"generate-report": handler}, notifier)
        job = await queue.enqueue(
            "generate-report", {"userId": "u1", "chatId": "c1", "requestId": "r1"}
        )

        assert await run_round(worker) == 1

        status = await queue.get_status(job.id)
        assert status["status"] == "completed"
        notifier.notify.assert_awaited_once_with(
            "u1",
            "c1",
            {
                "resultLocation": "/reports/t1/x.xlsx",
                "summaryStats": {"invoices": 12},
                "requestId": "r1",
                "jobId": job.id,
            },
        )

    async def test_notification_is_not_repeated_for_the_same_job(self, queue):
        notifier = notifier_mock()
        worker = JobWorker(queue, {"generate-report": AsyncMock(return_value={})}, notifier)
        job = await queue.enqueue("generate-report", {"userId": "u1"})
        await run_round(worker)

        # a redelivered completion must not reach the user twice
        assert await worker._notify(await queue.get(job.id)) is False
        assert notifier.notify.await_count == 1

    async def test_retries_until_success(self, queue, clock):
        notifier = notifier_mock()
        calls = []

        async def flaky(ctx):
            calls.append(ctx.job.attempts_made)
            if len(calls) < 3:
                raise RuntimeError("generator crashed")
            return {"resultLocation": "/r.xlsx"}

        worker = JobWorker(queue, {"generate-report": flaky}, notifier)
        job = await queue.enqueue(
            "generate-report",
            {"userId": "u1"},
            JobOptions(attempts=3, backoff=BackoffPolicy("exponential", 2000)),
        )

        await run_round(worker)
        assert (await queue.get(job.id)).failure_reason == "generator crashed"
        clock.advance(2)
        await run_round(worker)
        clock.advance(4)
        await run_round(worker)

        final = await queue.get(job.id)
        assert final.status is JobStatus.COMPLETED
        assert final.attempts_made == 3
        assert calls == [1, 2, 3]
        notifier.notify.assert_awaited_once()

    async def test_final_failure_notifies_the_error_once(self, queue, clock):
        notifier = notifier_mock()

        async def broken(ctx):
            raise ValueError("bad filters")

        worker = JobWorker(queue, {"generate-report": broken}, notifier)
        job = await queue.enqueue(
            "generate-report",
            {"userId": "u1", "chatId": "c1", "requestId": "r1"},
            JobOptions(attempts=2, backoff=BackoffPolicy("fixed", 1000)),
        )

        await run_round(worker)
        notifier.notify.assert_not_awaited()

        clock.advance(1)
        await run_round(worker)

        assert (await queue.get(job.id)).status is JobStatus.FAILED
        notifier.notify.assert_awaited_once_with(
            "u1", "c1", {"error": "bad filters", "requestId": "r1", "jobId": job.id}
        )
        assert await worker._notify(await queue.get(job.id)) is False
        assert notifier.notify.await_count == 1

    async def test_stalled_report_out_of_attempts_notifies(self, queue, clock):
        notifier = notifier_mock()
        worker = JobWorker(queue, {}, notifier)
        job = await queue.enqueue("generate-report", {"userId": "u1", "chatId": "c1"})
        await queue.claim_next("crashed-worker", lease_seconds=30)
        clock.advance(31)

        await run_round(worker)

        assert (await queue.get(job.id)).status is JobStatus.FAILED
        notification = notifier.notify.await_args.args[2]
        assert notification["jobId"] == job.id
        assert "lease expired" in notification["error"]

    async def test_finalize_failure_is_logged_and_lease_released(self, queue, store):
        worker = JobWorker(queue, {"a": AsyncMock(return_value={})})
        job = await queue.enqueue("a", {}, JobOptions(attempts=2))

        with patch.object(
            queue, "complete", AsyncMock(side_effect=StoreUnavailableError("store down"))
        ), patch("chatcoord.service.job_worker.logger") as log:
            await run_round(worker)

        events = [c.args[0] for c in log.error.call_args_list]
        assert "job_finalize_failed" in events
        assert await store.get(job_claim_key("reports", job.id)) is None
        # the next poll hands the job out again instead of waiting out the lease
        assert [j.id for j in await queue.recover_stalled()] == [job.id]
        assert (await queue.get(job.id)).status is JobStatus.WAITING

    async def test_notifier_errors_do_not_fail_the_job(self, queue):
        notifier = AsyncMock()
        notifier.notify.side_effect = ConnectionError("telegram down")
        worker = JobWorker(queue, {"generate-report": AsyncMock(return_value={})}, notifier)
        job = await queue.enqueue("generate-report", {"userId": "u1"})

        await run_round(worker)

        assert (await queue.get(job.id)).status is JobStatus.COMPLETED

    async def test_only_report_jobs_notify(self, queue):
        notifier = notifier_mock()
        worker = JobWorker(queue, {"cleanup-temp-file": AsyncMock(return_value={})}, notifier)
        await queue.enqueue("cleanup-temp-file", {"filePath": "/tmp/x"})
        await run_round(worker)
        notifier.notify.assert_not_awaited()

    async def test_missing_handler_fails_without_retry(self, queue):
        worker = JobWorker(queue, {})
        job = await queue.enqueue("unknown", {}, JobOptions(attempts=3))
        await run_round(worker)
        final = await queue.get(job.id)
        assert final.status is JobStatus.FAILED
        assert "no handler" in final.failure_reason

    async def test_unserializable_result_fails_job(self, queue):
        worker = JobWorker(queue, {"a": AsyncMock(return_value={"when": object()})})
        job = await queue.enqueue("a", {})
        await run_round(worker)
        assert (await queue.get(job.id)).status is JobStatus.FAILED


class TestConcurrency:
    async def test_never_runs_more_than_concurrency_jobs(self, queue):
        gate = asyncio.Event()
        running = 0
        peak = 0

        async def slow(ctx):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await gate.wait()
            running -= 1
            return {}

        worker = JobWorker(queue, {"a": slow}, concurrency=3)
        for _ in range(5):
            await queue.enqueue("a", {})

        assert await worker.run_once() == 3
        await asyncio.sleep(0)
        assert worker.inflight == 3
        assert await worker.run_once() == 0

        gate.set()
        await worker.drain()
        assert await run_round(worker) == 2
        assert peak == 3
        assert (await queue.get_stats())["completed"] == 5

    def test_rejects_zero_concurrency(self, queue):
        with pytest.raises(ValueError):
            JobWorker(queue, {}, concurrency=0)


class TestLoop:
    async def test_start_processes_jobs_and_stop_drains(self, queue):
        done = asyncio.Event()

        async def handler(ctx):
            done.set()
            return {}

        worker = JobWorker(queue, {"a": handler}, poll_interval=0.01, cleanup_interval=0)
        job = await queue.enqueue("a", {})

        await worker.start()
        assert worker.running
        await asyncio.wait_for(done.wait(), timeout=2)
        await worker.stop()

        assert not worker.running
        assert (await queue.get(job.id)).status is JobStatus.COMPLETED

    async def test_periodic_cleanup_runs(self, queue, clock):
        worker = JobWorker(queue, {"a": AsyncMock(return_value={})}, cleanup_interval=3600)
        job = await queue.enqueue("a", {})
        await run_round(worker)
        clock.advance(2 * 24 * 60 * 60)

        await worker._maybe_run_cleanup()

        assert await queue.get(job.id) is None

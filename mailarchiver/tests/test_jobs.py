"""
Unit tests for the job registry and runner.

Covers queueing, account locks, cooperative cancellation, cleanup,
audit rows and retry scheduling.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from mailarchiver.workers.jobs import (
    JobAlreadyRunningError,
    JobFamily,
    JobRegistry,
    JobRunner,
    JobSetupError,
    JobStatus,
    RetryPolicy,
)


async def wait_until_terminal(job, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not job.is_terminal:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Job {job.id} stuck in {job.status}")
        await asyncio.sleep(0.01)


def sync_registry() -> JobRegistry:
    return JobRegistry(JobFamily.SYNC, retention=timedelta(days=1), account_scoped=True)


class TestJobRegistry:
    """Tests for JobRegistry."""

    def test_submit_queues_job(self):
        """Submitted jobs start queued and are listed as active."""
        registry = sync_registry()
        job = registry.submit({"account_id": "a1"}, account_id="a1")

        assert job.status == JobStatus.QUEUED
        assert registry.get(job.id) is job
        assert registry.list_active() == [job]
        assert registry.active_job_for_account("a1") == job.id

    def test_second_submit_for_account_rejected(self):
        """Only one active job per account."""
        registry = sync_registry()
        first = registry.submit({}, account_id="a1")

        with pytest.raises(JobAlreadyRunningError) as exc_info:
            registry.submit({}, account_id="a1")

        assert exc_info.value.job_id == first.id
        assert len(registry.list_all()) == 1

    def test_other_accounts_not_blocked(self):
        registry = sync_registry()
        registry.submit({}, account_id="a1")
        registry.submit({}, account_id="a2")
        assert len(registry.list_active()) == 2

    def test_submit_after_finish_succeeds(self):
        """The account lock is released when the job reaches a terminal state."""
        registry = sync_registry()
        job = registry.submit({}, account_id="a1")
        registry.mark_running(job)
        registry.finish(job, JobStatus.COMPLETED)

        again = registry.submit({}, account_id="a1")
        assert again.id != job.id

    def test_account_scoped_requires_account(self):
        registry = sync_registry()
        with pytest.raises(JobSetupError):
            registry.submit({})

    def test_unscoped_family_allows_parallel_jobs(self):
        registry = JobRegistry(JobFamily.RESTORE, retention=timedelta(hours=24))
        registry.submit({}, account_id="a1")
        registry.submit({}, account_id="a1")
        assert len(registry.list_active()) == 2

    def test_cancel_queued_job(self):
        """Cancelling a queued job is an immediate state change."""
        registry = sync_registry()
        job = registry.submit({}, account_id="a1")

        assert registry.cancel(job.id) is True
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert registry.active_job_for_account("a1") is None

        # Already terminal
        assert registry.cancel(job.id) is False

    def test_cancel_running_job_only_signals(self):
        registry = sync_registry()
        job = registry.submit({}, account_id="a1")
        registry.mark_running(job)

        assert registry.cancel(job.id) is True
        assert job.status == JobStatus.RUNNING
        assert job.cancel_requested is True
        assert registry.active_job_for_account("a1") == job.id

    def test_mark_running_refuses_cancelled_job(self):
        """A job cancelled after dequeue stays cancelled."""
        registry = sync_registry()
        job = registry.submit({}, account_id="a1")
        assert registry.dequeue() is job
        registry.cancel(job.id)

        assert registry.mark_running(job) is False
        assert job.status == JobStatus.CANCELLED
        assert job.started_at is None

    def test_cancel_unknown_job(self):
        assert sync_registry().cancel("missing") is False

    def test_dequeue_fifo(self):
        registry = JobRegistry(JobFamily.IMPORT, retention=timedelta(hours=24))
        first = registry.submit("one")
        second = registry.submit("two")

        assert registry.dequeue() is first
        assert registry.dequeue() is second
        assert registry.dequeue() is None

    def test_cleanup_removes_expired_jobs(self):
        """Terminal jobs past retention are removed, others stay."""
        registry = sync_registry()
        old = registry.submit({}, account_id="a1")
        registry.finish(old, JobStatus.COMPLETED)
        old.completed_at = datetime.utcnow() - timedelta(days=2)

        recent = registry.submit({}, account_id="a2")
        registry.finish(recent, JobStatus.FAILED, "boom")
        queued = registry.submit({}, account_id="a3")

        removed = registry.cleanup()

        assert removed == 1
        assert registry.get(old.id) is None
        assert registry.get(recent.id) is recent
        assert registry.get(queued.id) is queued

    def test_progress_counters(self):
        registry = sync_registry()
        job = registry.submit({}, account_id="a1")
        job.add_total(5)
        job.record_success()
        job.record_failure()
        job.record_skipped(2)

        progress = job.to_dict()["progress"]
        assert progress["total"] == 5
        assert progress["processed"] == 4
        assert progress["succeeded"] == 1
        assert progress["failed"] == 1
        assert progress["skipped"] == 2


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_delay(self):
        policy = RetryPolicy(max_attempts=3, delay_seconds=30)
        assert policy.delay_for(0) == 30
        assert policy.delay_for(1) == 900

    def test_attempt_limit(self):
        policy = RetryPolicy(max_attempts=2)
        assert policy.allows(1) is True
        assert policy.allows(2) is False


class TestJobRunner:
    """Tests for JobRunner."""

    def _runner(self, registry, handler, **kwargs):
        audit = AsyncMock()
        runner = JobRunner(
            registry,
            handler,
            asyncio.Event(),
            poll_interval=0.01,
            error_backoff=0.01,
            audit=audit,
            **kwargs,
        )
        return runner, audit

    @pytest.mark.asyncio
    async def test_execute_success(self):
        """A handler that returns marks the job completed and writes an audit row."""
        registry = sync_registry()
        handler = AsyncMock()
        runner, audit = self._runner(registry, handler)
        job = registry.submit({}, account_id="a1")

        await runner.execute(job)

        assert job.status == JobStatus.COMPLETED
        assert job.started_at is not None and job.completed_at is not None
        handler.assert_awaited_once()
        audit.assert_awaited_once()
        assert audit.await_args.args[0]["status"] == "completed"
        assert registry.active_job_for_account("a1") is None

    @pytest.mark.asyncio
    async def test_execute_setup_error(self):
        registry = sync_registry()
        runner, audit = self._runner(registry, AsyncMock(side_effect=JobSetupError("Account a1 not found")))
        job = registry.submit({}, account_id="a1")

        await runner.execute(job)

        assert job.status == JobStatus.FAILED
        assert job.error == "Account a1 not found"
        assert registry.active_job_for_account("a1") is None
        audit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_execute_unexpected_error(self):
        registry = sync_registry()
        runner, _ = self._runner(registry, AsyncMock(side_effect=RuntimeError("socket closed")))
        job = registry.submit({}, account_id="a1")

        await runner.execute(job)

        assert job.status == JobStatus.FAILED
        assert job.error == "socket closed"

    @pytest.mark.asyncio
    async def test_execute_cancelled(self):
        """CancelledError from the handler always yields Cancelled."""
        registry = sync_registry()
        runner, _ = self._runner(registry, AsyncMock(side_effect=asyncio.CancelledError()))
        job = registry.submit({}, account_id="a1")

        await runner.execute(job)

        assert job.status == JobStatus.CANCELLED
        assert registry.active_job_for_account("a1") is None

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_job(self):
        registry = sync_registry()
        runner, audit = self._runner(registry, AsyncMock())
        audit.side_effect = RuntimeError("mongo down")
        job = registry.submit({}, account_id="a1")

        await runner.execute(job)

        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_queued_job_never_runs(self):
        """A job cancelled while queued is skipped without calling the handler."""
        registry = sync_registry()
        handler = AsyncMock()
        runner, audit = self._runner(registry, handler)
        job = registry.submit({}, account_id="a1")
        registry.cancel(job.id)

        runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

        handler.assert_not_awaited()
        audit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_after_dequeue_never_runs(self):
        """Cancellation between dequeue and start wins over the runner."""
        registry = sync_registry()
        handler = AsyncMock()
        runner, audit = self._runner(registry, handler)
        job = registry.submit({}, account_id="a1")
        original_dequeue = registry.dequeue

        def dequeue_then_cancel():
            dequeued = original_dequeue()
            if dequeued is not None:
                registry.cancel(dequeued.id)
            return dequeued

        registry.dequeue = dequeue_then_cancel
        runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()

        assert job.status == JobStatus.CANCELLED
        assert job.started_at is None
        handler.assert_not_awaited()
        audit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_running_job(self):
        """Cancelling a running job ends it as cancelled and frees the account."""
        registry = sync_registry()
        started = asyncio.Event()

        async def handler(job, ctx):
            started.set()
            await ctx.sleep(30)

        runner, _ = self._runner(registry, handler)
        runner.start()
        job = registry.submit({}, account_id="a1")

        await asyncio.wait_for(started.wait(), timeout=2)
        assert registry.cancel(job.id) is True
        await wait_until_terminal(job)
        await runner.stop()

        assert job.status == JobStatus.CANCELLED
        registry.submit({}, account_id="a1")

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_running_job(self):
        registry = sync_registry()
        started = asyncio.Event()

        async def handler(job, ctx):
            started.set()
            await ctx.sleep(30)

        runner, _ = self._runner(registry, handler)
        runner.start()
        job = registry.submit({}, account_id="a1")
        await asyncio.wait_for(started.wait(), timeout=2)

        await runner.stop(timeout=2)

        assert job.status == JobStatus.CANCELLED
        assert job.error == "Interrupted by shutdown"

    @pytest.mark.asyncio
    async def test_failed_job_is_retried(self):
        """With a retry policy a failed job is resubmitted with retry_count + 1."""
        registry = JobRegistry(JobFamily.SYNC, retention=timedelta(days=1))
        runner, _ = self._runner(
            registry,
            AsyncMock(side_effect=RuntimeError("boom")),
            retry_policy=RetryPolicy(max_attempts=1, delay_seconds=0),
        )
        job = registry.submit({"account_id": "a1"}, account_id="a1")

        await runner.execute(job)
        await asyncio.sleep(0.05)

        jobs = registry.list_all()
        assert len(jobs) == 2
        retry = next(j for j in jobs if j.id != job.id)
        assert retry.retry_count == 1
        assert retry.status == JobStatus.QUEUED
        await runner.stop()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Job Registry and Runner

Generic machinery shared by every long-running operation family (sync,
batch restore, batch deletion, mbox and EML import, account deletion):

- JobRegistry owns the job table, the FIFO queue and, for account scoped
  families, the account lock table. All writes go through one lock;
  readers get snapshot copies.
- JobRunner is the single worker loop of a family. It dequeues jobs, runs
  the family handler under a linked cancellation context, records the
  terminal status and optionally schedules a retry.

Cancellation is cooperative: ``cancel()`` on a running job only sets its
event, and the handler stops at its next checkpoint.
"""

import asyncio
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.providers.base import MailArchiveError

logger = logging.getLogger(__name__)

P = TypeVar("P")


class JobStatus(str, Enum):
    """Lifecycle state of a job."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobFamily(str, Enum):
    """Operation families, each with its own queue and runner."""
    SYNC = "sync"
    RESTORE = "restore"
    DELETION = "deletion"
    IMPORT = "import"
    EML_IMPORT = "eml_import"
    ACCOUNT_DELETION = "account_deletion"


class JobSetupError(MailArchiveError):
    """Job cannot start: missing target, disabled account or bad payload."""
    pass


class JobAlreadyRunningError(MailArchiveError):
    """An account scoped job is already active for the account."""

    def __init__(self, account_id: str, job_id: str):
        super().__init__(f"A job is already running for account {account_id} ({job_id})")
        self.account_id = account_id
        self.job_id = job_id


@dataclass
class JobProgress:
    """Progress counters; they only ever grow while a job runs."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    phase: str = "queued"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "phase": self.phase,
        }


@dataclass
class Job(Generic[P]):
    """One invocation of an operation."""
    family: JobFamily
    payload: P
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    account_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: JobProgress = field(default_factory=JobProgress)
    error: Optional[str] = None
    retry_count: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def set_phase(self, phase: str):
        self.progress.phase = phase

    def add_total(self, count: int):
        if count > 0:
            self.progress.total += count

    def record_success(self, count: int = 1):
        self.progress.processed += count
        self.progress.succeeded += count

    def record_failure(self, count: int = 1):
        self.progress.processed += count
        self.progress.failed += count

    def record_skipped(self, count: int = 1):
        self.progress.processed += count
        self.progress.skipped += count

    def to_dict(self) -> Dict[str, Any]:
        payload = self.payload.to_dict() if hasattr(self.payload, "to_dict") else self.payload
        return {
            "job_id": self.id,
            "family": self.family.value,
            "account_id": self.account_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "progress": self.progress.to_dict(),
            "error": self.error,
            "retry_count": self.retry_count,
            "payload": payload,
        }


@dataclass
class RetryPolicy:
    """Resubmission of failed jobs with exponential backoff."""
    max_attempts: int = 3
    delay_seconds: int = 30

    def delay_for(self, retry_count: int) -> float:
        return float(self.delay_seconds ** (retry_count + 1))

    def allows(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts


class JobRegistry(Generic[P]):
    """Job table, queue and account locks of one operation family."""

    def __init__(
        self,
        family: JobFamily,
        retention: timedelta,
        account_scoped: bool = False,
    ):
        self.family = family
        self.retention = retention
        self.account_scoped = account_scoped
        self._jobs: Dict[str, Job[P]] = {}
        self._queue: Deque[str] = deque()
        self._account_locks: Dict[str, str] = {}
        self._lock = threading.Lock()

    def submit(self, payload: P, account_id: Optional[str] = None, retry_count: int = 0) -> Job[P]:
        """
        Queue a new job.

        Raises:
            JobSetupError: account scoped family without an account id
            JobAlreadyRunningError: the account already has an active job
        """
        job = Job(family=self.family, payload=payload, account_id=account_id, retry_count=retry_count)

        with self._lock:
            if self.account_scoped:
                if not account_id:
                    raise JobSetupError(f"{self.family.value} jobs require an account id")
                active_id = self._account_locks.get(account_id)
                if active_id is not None:
                    raise JobAlreadyRunningError(account_id, active_id)
                self._account_locks[account_id] = job.id
            self._jobs[job.id] = job
            self._queue.append(job.id)

        logger.info(f"Queued {self.family.value} job {job.id}" + (f" for account {account_id}" if account_id else ""))
        return job

    def get(self, job_id: str) -> Optional[Job[P]]:
        return self._jobs.get(job_id)

    def list_all(self) -> List[Job[P]]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def list_active(self) -> List[Job[P]]:
        return [job for job in self.list_all() if not job.is_terminal]

    def active_job_for_account(self, account_id: str) -> Optional[str]:
        return self._account_locks.get(account_id)

    def dequeue(self) -> Optional[Job[P]]:
        with self._lock:
            while self._queue:
                job = self._jobs.get(self._queue.popleft())
                if job is not None:
                    return job
        return None

    def mark_running(self, job: Job[P]) -> bool:
        """Claim a dequeued job. False when it was cancelled in the meantime."""
        with self._lock:
            if job.status != JobStatus.QUEUED:
                return False
            job.status = JobStatus.RUNNING
            job.started_at = datetime.utcnow()
            job.progress.phase = "running"
        return True

    def finish(self, job: Job[P], status: JobStatus, error: Optional[str] = None):
        """Move a job to a terminal status and release its account lock."""
        with self._lock:
            job.status = status
            job.completed_at = datetime.utcnow()
            job.error = error
            job.progress.phase = status.value
            self._release_account(job)

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job.

        A queued job becomes Cancelled right away. A running job is only
        signalled; it stops at its next checkpoint. Returns False for
        unknown or finished jobs.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False

            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.CANCELLED
                job.completed_at = datetime.utcnow()
                job.progress.phase = JobStatus.CANCELLED.value
                self._release_account(job)
                logger.info(f"Cancelled queued {self.family.value} job {job_id}")
            else:
                job.cancel_event.set()
                logger.info(f"Cancellation requested for running {self.family.value} job {job_id}")
        return True

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop finished jobs older than the retention window."""
        cutoff = (now or datetime.utcnow()) - self.retention
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at and job.completed_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]

            for account_id, job_id in list(self._account_locks.items()):
                job = self._jobs.get(job_id)
                if job is None or job.is_terminal:
                    del self._account_locks[account_id]

        if expired:
            logger.info(f"Cleaned up {len(expired)} {self.family.value} jobs")
        return len(expired)

    def _release_account(self, job: Job[P]):
        if job.account_id and self._account_locks.get(job.account_id) == job.id:
            del self._account_locks[job.account_id]


JobHandler = Callable[[Job[P], CancellationContext], Awaitable[None]]
AuditWriter = Callable[[Dict[str, Any]], Awaitable[None]]


class JobRunner(Generic[P]):
    """Single worker loop for one operation family."""

    def __init__(
        self,
        registry: JobRegistry[P],
        handler: JobHandler,
        shutdown_event: asyncio.Event,
        poll_interval: float = 1.0,
        error_backoff: float = 5.0,
        cleanup_interval: Optional[timedelta] = None,
        retry_policy: Optional[RetryPolicy] = None,
        audit: Optional[AuditWriter] = None,
    ):
        self.registry = registry
        self.handler = handler
        self.shutdown_event = shutdown_event
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.cleanup_interval = cleanup_interval
        self.retry_policy = retry_policy
        self.audit = audit
        self._shutdown_ctx = CancellationContext(shutdown_event)
        self._tasks: List[asyncio.Task] = []
        self._retry_tasks: set = set()

    @property
    def family(self) -> JobFamily:
        return self.registry.family

    def start(self):
        """Start the worker loop and the cleanup loop as background tasks."""
        self._tasks.append(asyncio.create_task(self.run(), name=f"{self.family.value}-runner"))
        if self.cleanup_interval:
            self._tasks.append(asyncio.create_task(self.run_cleanup(), name=f"{self.family.value}-cleanup"))

    async def stop(self, timeout: float = 30.0):
        """Wait for the loops to notice shutdown, cancelling them after timeout."""
        self.shutdown_event.set()
        tasks = self._tasks + list(self._retry_tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    async def run(self):
        """Main worker loop."""
        logger.info(f"{self.family.value} job runner started")

        while not self.shutdown_event.is_set():
            try:
                job = self.registry.dequeue()
                if job is None:
                    await self._pause(self.poll_interval)
                    continue

                await self.execute(job)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"{self.family.value} runner loop error: {e}")
                await self._pause(self.error_backoff)

        logger.info(f"{self.family.value} job runner stopped")

    async def run_cleanup(self):
        while not self.shutdown_event.is_set():
            try:
                await self._pause(self.cleanup_interval.total_seconds())
                self.registry.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"{self.family.value} job cleanup failed: {e}")

    async def execute(self, job: Job[P]):
        """Run one job to a terminal status."""
        if not self.registry.mark_running(job):
            logger.debug(f"Skipping {job.status.value} job {job.id}")
            return
        ctx = CancellationContext(self.shutdown_event, job.cancel_event)
        status, error = JobStatus.COMPLETED, None

        logger.info(f"Starting {self.family.value} job {job.id}")
        try:
            ctx.raise_if_cancelled()
            await self.handler(job, ctx)
        except asyncio.CancelledError:
            status = JobStatus.CANCELLED
            if self.shutdown_event.is_set() and not job.cancel_requested:
                error = "Interrupted by shutdown"
            logger.info(f"{self.family.value} job {job.id} cancelled")
        except JobSetupError as e:
            status, error = JobStatus.FAILED, str(e)
            logger.error(f"{self.family.value} job {job.id} could not start: {e}")
        except Exception as e:
            status, error = JobStatus.FAILED, str(e) or type(e).__name__
            logger.exception(f"{self.family.value} job {job.id} failed: {e}")

        self.registry.finish(job, status, error)
        progress = job.progress
        logger.info(
            f"{self.family.value} job {job.id} {status.value}: "
            f"{progress.succeeded} succeeded, {progress.skipped} skipped, {progress.failed} failed"
        )

        await self._write_audit(job)
        if status == JobStatus.FAILED:
            self._schedule_retry(job)

    async def _write_audit(self, job: Job[P]):
        if not self.audit:
            return
        try:
            await self.audit(job.to_dict())
        except Exception as e:
            logger.warning(f"Failed to write job log for {job.id}: {e}")

    def _schedule_retry(self, job: Job[P]):
        policy = self.retry_policy
        if policy is None or not policy.allows(job.retry_count):
            return
        delay = policy.delay_for(job.retry_count)
        logger.info(f"Retrying {self.family.value} job {job.id} in {delay:.0f}s (attempt {job.retry_count + 1})")
        task = asyncio.create_task(self._resubmit_later(job, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _resubmit_later(self, job: Job[P], delay: float):
        try:
            await self._shutdown_ctx.sleep(delay)
        except asyncio.CancelledError:
            return
        try:
            self.registry.submit(job.payload, account_id=job.account_id, retry_count=job.retry_count + 1)
        except JobAlreadyRunningError as e:
            logger.warning(f"Retry of job {job.id} skipped: {e}")

    async def _pause(self, seconds: float):
        try:
            await self._shutdown_ctx.sleep(seconds)
        except asyncio.CancelledError:
            if not self.shutdown_event.is_set():
                raise

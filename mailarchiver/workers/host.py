"""
Job Host

Owns the registry and runner of every operation family for the lifetime
of the application. Created in the FastAPI lifespan, started after the
database connects and stopped before it disconnects.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from mailarchiver.providers.registry import create_transport
from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.account_deletion_worker import AccountDeletionWorker, AccountInUseError
from mailarchiver.workers.deletion_worker import DeletionWorker
from mailarchiver.workers.eml_import_worker import EmlImportWorker
from mailarchiver.workers.import_worker import ImportWorker
from mailarchiver.workers.jobs import (
    Job,
    JobAlreadyRunningError,
    JobFamily,
    JobHandler,
    JobRegistry,
    JobRunner,
    RetryPolicy,
)
from mailarchiver.workers.restore_worker import RestoreWorker
from mailarchiver.workers.sync_worker import SyncWorker, TransportFactory

logger = logging.getLogger(__name__)

# One active job per account within these families
ACCOUNT_SCOPED_FAMILIES = frozenset({JobFamily.SYNC, JobFamily.ACCOUNT_DELETION})
IMPORT_FAMILIES = frozenset({JobFamily.IMPORT, JobFamily.EML_IMPORT})


class JobHost:
    """Registries and runners of every job family."""

    def __init__(
        self,
        store: ArchiveStore,
        writer: ArchiveWriter,
        settings,
        transport_factory: TransportFactory = create_transport,
        handlers: Optional[Dict[JobFamily, JobHandler]] = None,
    ):
        self.store = store
        self.settings = settings
        self.shutdown_event = asyncio.Event()

        self.handlers: Dict[JobFamily, JobHandler] = {
            JobFamily.SYNC: SyncWorker(store, writer, settings, transport_factory),
            JobFamily.RESTORE: RestoreWorker(store, settings, transport_factory),
            JobFamily.DELETION: DeletionWorker(store, settings),
            JobFamily.IMPORT: ImportWorker(store, writer, settings),
            JobFamily.EML_IMPORT: EmlImportWorker(store, writer, settings),
            JobFamily.ACCOUNT_DELETION: AccountDeletionWorker(store, settings, self.active_jobs_for_account),
        }
        if handlers:
            self.handlers.update(handlers)

        retention = {
            JobFamily.SYNC: settings.sync_job_retention_hours,
            JobFamily.RESTORE: settings.restore_job_retention_hours,
            JobFamily.DELETION: settings.deletion_job_retention_hours,
            JobFamily.IMPORT: settings.import_job_retention_hours,
            JobFamily.EML_IMPORT: settings.eml_import_job_retention_hours,
            JobFamily.ACCOUNT_DELETION: settings.account_deletion_job_retention_hours,
        }
        self.registries: Dict[JobFamily, JobRegistry] = {
            family: JobRegistry(
                family,
                retention=timedelta(hours=hours),
                account_scoped=family in ACCOUNT_SCOPED_FAMILIES,
            )
            for family, hours in retention.items()
        }

        sync_retry = None
        if settings.sync_auto_retry:
            sync_retry = RetryPolicy(
                max_attempts=settings.sync_max_retry_attempts,
                delay_seconds=settings.sync_retry_delay_seconds,
            )

        cleanup_interval = timedelta(hours=settings.job_cleanup_interval_hours)
        self.runners: Dict[JobFamily, JobRunner] = {
            family: JobRunner(
                registry,
                self.handlers[family],
                self.shutdown_event,
                poll_interval=(
                    settings.import_poll_interval_seconds
                    if family in IMPORT_FAMILIES
                    else settings.job_poll_interval_seconds
                ),
                error_backoff=settings.job_error_backoff_seconds,
                cleanup_interval=cleanup_interval,
                retry_policy=sync_retry if family == JobFamily.SYNC else None,
                audit=store.insert_job_log,
            )
            for family, registry in self.registries.items()
        }
        self._started = False

    def registry(self, family: JobFamily) -> JobRegistry:
        return self.registries[family]

    def submit(self, family: JobFamily, payload: Any, account_id: Optional[str] = None) -> Job:
        """
        Queue a job of the given family.

        Raises:
            AccountInUseError: account deletion while other jobs reference the account
            JobAlreadyRunningError: the account is being deleted, or the family allows
                one active job per account and it already has one
        """
        if family == JobFamily.ACCOUNT_DELETION and account_id:
            busy = self.active_jobs_for_account(account_id)
            if busy:
                raise AccountInUseError(account_id, busy)
        elif account_id:
            deleting = self.registries[JobFamily.ACCOUNT_DELETION].active_job_for_account(account_id)
            if deleting is not None:
                raise JobAlreadyRunningError(account_id, deleting)
        return self.registries[family].submit(payload, account_id=account_id)

    def active_jobs_for_account(self, account_id: str, exclude: Optional[Job] = None) -> List[Job]:
        """Unfinished jobs of any family that work on the account."""
        jobs = []
        for registry in self.registries.values():
            for job in registry.list_active():
                if job is exclude:
                    continue
                if job.account_id == account_id or getattr(job.payload, "account_id", None) == account_id:
                    jobs.append(job)
        return jobs

    def start(self):
        if self._started:
            return
        for runner in self.runners.values():
            runner.start()
        self._started = True
        logger.info(f"Job host started with {len(self.runners)} runners")

    async def stop(self, timeout: float = 30.0):
        """Signal shutdown and wait for every runner to finish its current job."""
        self.shutdown_event.set()
        if not self._started:
            return
        await asyncio.gather(*(runner.stop(timeout) for runner in self.runners.values()))
        self._started = False
        logger.info("Job host stopped")

"""
Periodic Mail Sync Scheduler

Submits a sync job for every enabled account at a fixed interval. Accounts
that still have a sync in flight are skipped until the next round.
"""

import asyncio
import logging
from typing import Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.host import JobHost
from mailarchiver.workers.jobs import JobAlreadyRunningError, JobFamily
from mailarchiver.workers.sync_worker import SyncJobRequest

logger = logging.getLogger(__name__)


class MailSyncScheduler:
    """Background loop feeding the sync queue."""

    def __init__(self, store: ArchiveStore, host: JobHost, settings):
        self.store = store
        self.host = host
        self.interval = settings.mail_sync_interval_minutes * 60
        self.account_pause = settings.account_pause_seconds
        self._ctx = CancellationContext(host.shutdown_event)
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="mail-sync-scheduler")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def run(self):
        logger.info(f"Mail sync scheduler started, interval {self.interval / 60:.0f} minutes")
        try:
            while not self._ctx.cancelled:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Scheduled sync round failed: {e}")
                await self._ctx.sleep(self.interval)
        except asyncio.CancelledError:
            pass
        logger.info("Mail sync scheduler stopped")

    async def run_once(self) -> int:
        """Submit one sync job per enabled account; returns how many were queued."""
        accounts = await self.store.list_enabled_accounts()
        submitted = 0

        for index, account in enumerate(accounts):
            if index:
                await self._ctx.sleep(self.account_pause)
            try:
                self.host.submit(JobFamily.SYNC, SyncJobRequest(account_id=account.id), account_id=account.id)
                submitted += 1
            except JobAlreadyRunningError:
                logger.info(f"Skipping scheduled sync of {account.name}: a sync is already running")

        if accounts:
            logger.info(f"Scheduled sync round queued {submitted} of {len(accounts)} accounts")
        return submitted

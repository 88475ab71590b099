"""
Account Deletion Worker

Removes a mail account together with its whole archive. The account is
disabled first so the scheduler and new sync jobs leave it alone; the
job then refuses to continue while any other active job still references
the account. Emails and their attachments are deleted in batches and the
account document goes last.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.jobs import Job, JobSetupError

logger = logging.getLogger(__name__)

# account id, job to ignore -> active jobs referencing the account
ReferenceLookup = Callable[[str, Optional[Job]], List[Job]]


class AccountInUseError(JobSetupError):
    """Active jobs still reference the account."""

    def __init__(self, account_id: str, jobs: List[Job]):
        names = ", ".join(f"{job.family.value} {job.id}" for job in jobs)
        super().__init__(f"Account {account_id} is still referenced by active jobs: {names}")
        self.account_id = account_id
        self.job_ids = [job.id for job in jobs]


@dataclass
class AccountDeletionJobRequest:
    """Payload of an account deletion job."""
    account_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AccountDeletionWorker:
    """Deletes an account and everything archived for it."""

    def __init__(self, store: ArchiveStore, settings, find_references: ReferenceLookup):
        self.store = store
        self.settings = settings
        self.find_references = find_references

    async def __call__(self, job: Job[AccountDeletionJobRequest], ctx: CancellationContext):
        account_id = job.payload.account_id
        account = await self.store.get_account(account_id)
        if account is None:
            raise JobSetupError(f"Account {account_id} not found")

        was_enabled = account.is_enabled
        await self.store.set_account_enabled(account_id, False)
        busy = self.find_references(account_id, job)
        if busy:
            if was_enabled:
                await self.store.set_account_enabled(account_id, True)
            raise AccountInUseError(account_id, busy)

        job.set_phase("counting")
        job.add_total(await self.store.count_emails(account_id))
        logger.info(f"Deleting account {account.name} ({account_id}) with {job.progress.total} archived emails")

        batch_size = self.settings.deletion_batch_size
        batch_pause = self.settings.pause_between_batches_ms / 1000
        job.set_phase("deleting emails")
        while True:
            ctx.raise_if_cancelled()
            deleted = await self.store.delete_account_emails(account_id, batch_size)
            if not deleted:
                break
            job.record_success(deleted)
            await ctx.sleep(batch_pause)

        ctx.raise_if_cancelled()
        job.set_phase("deleting account")
        await self.store.delete_account(account_id)
        logger.info(f"Deleted account {account.name} ({account_id}) and {job.progress.succeeded} archived emails")

"""
Batch Restore Worker

Copies archived emails back into a folder of a mailbox. Emails are
restored in throttled batches; a failing email is counted and skipped.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.providers.base import MailFolder, MailTransport, TransportError
from mailarchiver.providers.registry import create_transport
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.jobs import Job, JobSetupError
from mailarchiver.workers.sync_worker import TransportFactory, close_transport, load_account

logger = logging.getLogger(__name__)


@dataclass
class RestoreJobRequest:
    """Payload of a batch restore job."""
    target_account_id: str
    target_folder: str
    email_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["email_count"] = len(data.pop("email_ids"))
        return data


def find_folder(folders: List[MailFolder], wanted: str) -> Optional[MailFolder]:
    """Match a folder by id first, then by display path ignoring case."""
    for folder in folders:
        if folder.id == wanted:
            return folder
    lowered = wanted.strip().strip("/").lower()
    for folder in folders:
        if folder.name.lower() == lowered:
            return folder
    return None


class RestoreWorker:
    """Appends archived emails to a target mailbox folder."""

    def __init__(self, store: ArchiveStore, settings, transport_factory: TransportFactory = create_transport):
        self.store = store
        self.settings = settings
        self.transport_factory = transport_factory

    async def __call__(self, job: Job[RestoreJobRequest], ctx: CancellationContext):
        request = job.payload
        if not request.email_ids:
            raise JobSetupError("No emails selected for restore")
        account = await load_account(self.store, request.target_account_id)

        transport = self.transport_factory(account, self.settings)
        try:
            job.set_phase("connecting")
            await ctx.run(transport.connect(), timeout=self.settings.connection_timeout_seconds)

            folders = await ctx.run(transport.list_folders(), timeout=self.settings.command_timeout_seconds)
            folder = find_folder(folders, request.target_folder)
            if folder is None:
                raise JobSetupError(f"Folder {request.target_folder} not found in {account.email_address}")

            job.add_total(len(request.email_ids))
            job.set_phase(f"restoring to {folder.name}")
            await self._restore_all(transport, folder, request.email_ids, job, ctx)
        finally:
            await close_transport(transport)

        logger.info(
            f"Restore to {account.email_address}/{request.target_folder}: "
            f"{job.progress.succeeded} restored, {job.progress.failed} failed"
        )

    async def _restore_all(
        self,
        transport: MailTransport,
        folder: MailFolder,
        email_ids: List[str],
        job: Job,
        ctx: CancellationContext,
    ):
        batch_size = self.settings.batch_size
        email_pause = self.settings.pause_between_emails_ms / 1000
        batch_pause = self.settings.pause_between_batches_ms / 1000

        for start in range(0, len(email_ids), batch_size):
            if start:
                await ctx.sleep(batch_pause)

            for index, email_id in enumerate(email_ids[start:start + batch_size]):
                ctx.raise_if_cancelled()
                if index:
                    await ctx.sleep(email_pause)

                try:
                    restored = await self._restore_one(transport, folder, email_id, ctx)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Failed to restore email {email_id}: {e}")
                    job.record_failure()
                    continue

                if restored:
                    job.record_success()
                else:
                    job.record_failure()

    async def _restore_one(
        self,
        transport: MailTransport,
        folder: MailFolder,
        email_id: str,
        ctx: CancellationContext,
    ) -> bool:
        archived = await self.store.get_email(email_id)
        if archived is None:
            logger.warning(f"Archived email {email_id} not found, skipping restore")
            return False

        attachments = await self.store.list_attachments(email_id)
        timeout = self.settings.command_timeout_seconds
        try:
            await ctx.run(transport.append_message(folder, archived, attachments), timeout=timeout)
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Append of {email_id} failed, reconnecting: {e}")
            await ctx.run(transport.reconnect(), timeout=timeout)
            await ctx.run(transport.append_message(folder, archived, attachments), timeout=timeout)
        return True

"""
Mbox Import Worker

Bulk-imports an mbox file into the archive of an account. Messages go
through the same ArchiveWriter as synced mail, so duplicates of messages
already archived by sync are skipped.
"""

import asyncio
import logging
import mailbox
import os
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any, Dict

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import MailAccount
from mailarchiver.providers.base import MailFolder, MessageRef, parse_rfc822
from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.jobs import Job, JobSetupError

logger = logging.getLogger(__name__)


def _close_when_done(mbox: mailbox.mbox, scan: asyncio.Future):
    if not scan.cancelled() and scan.exception() is not None:
        logger.debug(f"Abandoned mbox scan failed: {scan.exception()}")
    mbox.close()


@dataclass
class ImportJobRequest:
    """Payload of an mbox import job."""
    file_path: str
    account_id: str
    folder_name: str = "Imported"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ImportWorker:
    """Reads an mbox file and archives each message."""

    def __init__(self, store: ArchiveStore, writer: ArchiveWriter, settings):
        self.store = store
        self.writer = writer
        self.settings = settings

    async def __call__(self, job: Job[ImportJobRequest], ctx: CancellationContext):
        request = job.payload
        # Import into disabled accounts is allowed
        account = await self.store.get_account(request.account_id)
        if account is None:
            raise JobSetupError(f"Account {request.account_id} not found")
        if not os.path.isfile(request.file_path):
            raise JobSetupError(f"Import file {request.file_path} not found")

        folder = MailFolder(id=request.folder_name, name=request.folder_name)
        ctx.raise_if_cancelled()
        # mbox access is blocking file I/O; keep it off the event loop
        loop = asyncio.get_running_loop()
        mbox = await loop.run_in_executor(None, partial(mailbox.mbox, request.file_path, create=False))
        job.set_phase("scanning")
        scan = loop.run_in_executor(None, mbox.keys)
        try:
            keys = await ctx.run(asyncio.shield(scan))
            job.add_total(len(keys))
            job.set_phase(f"importing {os.path.basename(request.file_path)}")
            await self._import_all(account, mbox, keys, folder, job, ctx)
        finally:
            if scan.done():
                mbox.close()
            else:
                # An abandoned scan still reads the file
                scan.add_done_callback(partial(_close_when_done, mbox))

        progress = job.progress
        logger.info(
            f"Imported {request.file_path} into {account.email_address}: "
            f"{progress.succeeded} new, {progress.skipped} duplicates, {progress.failed} failed"
        )

    async def _import_all(
        self,
        account: MailAccount,
        mbox: mailbox.mbox,
        keys,
        folder: MailFolder,
        job: Job,
        ctx: CancellationContext,
    ):
        pause_every = self.settings.import_pause_every
        pause = self.settings.import_pause_ms / 1000

        loop = asyncio.get_running_loop()

        for index, key in enumerate(keys, start=1):
            ctx.raise_if_cancelled()
            try:
                raw = await loop.run_in_executor(None, mbox.get_bytes, key)
                message = parse_rfc822(raw, MessageRef(folder_id=folder.id, remote_id=str(key)))
                result = await self.writer.archive(account, message, folder)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Skipping malformed message #{index}: {e}")
                job.record_failure()
            else:
                if result.created:
                    job.record_success()
                else:
                    job.record_skipped()

            if pause_every and index % pause_every == 0:
                await ctx.sleep(pause)

"""
EML Import Worker

Imports a single .eml file or a zip archive of .eml files. Each entry is
archived into the folder named by its last directory inside the archive;
entries at the top level go to the configured default folder. Like the
mbox import, everything goes through ArchiveWriter so already archived
messages are skipped.
"""

import asyncio
import logging
import os
import posixpath
import zipfile
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import MailAccount
from mailarchiver.providers.base import MailFolder, MessageRef, parse_rfc822
from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.jobs import Job, JobSetupError

logger = logging.getLogger(__name__)


def folder_for_entry(entry_name: str, default: str) -> str:
    """Last directory of a zip entry path, or default for top-level entries."""
    directory = posixpath.dirname(entry_name.replace("\\", "/"))
    parts = [part for part in directory.split("/") if part]
    return parts[-1] if parts else default


def read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def list_eml_entries(archive: zipfile.ZipFile) -> List[zipfile.ZipInfo]:
    return [
        info for info in archive.infolist()
        if not info.is_dir() and info.filename.lower().endswith(".eml")
    ]


@dataclass
class EmlImportJobRequest:
    """Payload of an EML import job."""
    file_path: str
    account_id: str
    folder_name: Optional[str] = None  # Overrides the folders taken from the archive

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EmlImportWorker:
    """Archives the messages of an .eml file or a zip of them."""

    def __init__(self, store: ArchiveStore, writer: ArchiveWriter, settings):
        self.store = store
        self.writer = writer
        self.settings = settings

    async def __call__(self, job: Job[EmlImportJobRequest], ctx: CancellationContext):
        request = job.payload
        account = await self.store.get_account(request.account_id)
        if account is None:
            raise JobSetupError(f"Account {request.account_id} not found")
        if not os.path.isfile(request.file_path):
            raise JobSetupError(f"Import file {request.file_path} not found")

        ctx.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        job.set_phase("scanning")
        if not await loop.run_in_executor(None, zipfile.is_zipfile, request.file_path):
            if not request.file_path.lower().endswith(".eml"):
                raise JobSetupError(f"{request.file_path} is neither a zip archive nor an .eml file")
            await self._import_single(account, request, job)
        else:
            try:
                archive = await loop.run_in_executor(None, zipfile.ZipFile, request.file_path)
            except zipfile.BadZipFile as e:
                raise JobSetupError(f"Cannot open {request.file_path}: {e}")
            try:
                await self._import_archive(account, archive, request, job, ctx)
            finally:
                archive.close()

        progress = job.progress
        logger.info(
            f"Imported {request.file_path} into {account.email_address}: "
            f"{progress.succeeded} new, {progress.skipped} duplicates, {progress.failed} failed"
        )

    async def _import_single(self, account: MailAccount, request: EmlImportJobRequest, job: Job):
        folder_name = request.folder_name or self.settings.eml_import_default_folder
        job.add_total(1)
        job.set_phase(f"importing {os.path.basename(request.file_path)}")

        raw = await asyncio.get_running_loop().run_in_executor(None, read_file, request.file_path)
        await self._archive_one(account, raw, os.path.basename(request.file_path), folder_name, job)

    async def _import_archive(
        self,
        account: MailAccount,
        archive: zipfile.ZipFile,
        request: EmlImportJobRequest,
        job: Job,
        ctx: CancellationContext,
    ):
        entries = list_eml_entries(archive)
        job.add_total(len(entries))
        job.set_phase(f"importing {os.path.basename(request.file_path)}")
        logger.info(f"Found {len(entries)} .eml entries in {request.file_path}")

        pause_every = self.settings.import_pause_every
        pause = self.settings.import_pause_ms / 1000
        default_folder = self.settings.eml_import_default_folder
        loop = asyncio.get_running_loop()

        for index, info in enumerate(entries, start=1):
            ctx.raise_if_cancelled()
            folder_name = request.folder_name or folder_for_entry(info.filename, default_folder)
            try:
                raw = await loop.run_in_executor(None, archive.read, info)
            except (zipfile.BadZipFile, OSError) as e:
                logger.warning(f"Cannot read entry {info.filename}: {e}")
                job.record_failure()
            else:
                await self._archive_one(account, raw, info.filename, folder_name, job)

            if pause_every and index % pause_every == 0:
                await ctx.sleep(pause)

    async def _archive_one(self, account: MailAccount, raw: bytes, name: str, folder_name: str, job: Job):
        folder = MailFolder(id=folder_name, name=folder_name)
        try:
            message = parse_rfc822(raw, MessageRef(folder_id=folder.id, remote_id=name))
            result = await self.writer.archive(account, message, folder)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Skipping malformed message {name}: {e}")
            job.record_failure()
            return

        if result.created:
            job.record_success()
        else:
            job.record_skipped()

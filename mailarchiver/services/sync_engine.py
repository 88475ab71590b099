"""
Mailbox Synchronization Engine

Reconciles one account against its remote mailbox:

    listing folders -> per folder (searching -> fetching -> archiving)
    -> old message deletion -> local retention -> finalizing

The engine only talks to the MailTransport protocol, so IMAP and Graph
accounts follow the same algorithm. Messages are processed in throttled
batches; a failing message is counted and skipped. The account checkpoint
moves forward only after a run without any failure, so a partially failed
window is examined again on the next run and the dedup index absorbs
whatever was already archived.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import MailAccount
from mailarchiver.providers.base import (
    MailFolder,
    MailTransport,
    MessageRef,
    RateLimitError,
    RemoteMessage,
    TransportError,
)
from mailarchiver.services.archive import ArchiveResult, ArchiveWriter
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.jobs import Job

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT = 60


@dataclass
class SyncOptions:
    """Throttling and window options for one sync run."""
    batch_size: int = 50
    pause_between_emails: float = 0.05  # seconds
    pause_between_batches: float = 0.25  # seconds
    lookback: timedelta = timedelta(hours=12)
    force_full: bool = False
    command_timeout: Optional[float] = 300.0

    @classmethod
    def from_settings(cls, settings, force_full: bool = False) -> "SyncOptions":
        return cls(
            batch_size=settings.batch_size,
            pause_between_emails=settings.pause_between_emails_ms / 1000,
            pause_between_batches=settings.pause_between_batches_ms / 1000,
            lookback=timedelta(hours=settings.sync_lookback_hours),
            force_full=force_full or settings.always_force_full_sync,
            command_timeout=settings.command_timeout_seconds,
        )


@dataclass
class SyncReport:
    """Outcome of one account run."""
    account_id: str
    started_at: datetime
    full_sync: bool = False
    folders_synced: List[str] = field(default_factory=list)
    new_messages: int = 0
    duplicates: int = 0
    failed: int = 0
    failed_folders: int = 0
    deleted_remote: int = 0
    deleted_local: int = 0
    checkpoint_advanced: bool = False

    @property
    def clean(self) -> bool:
        return self.failed == 0 and self.failed_folders == 0


class SyncEngine:
    """Per-account, per-folder reconciliation."""

    def __init__(self, store: ArchiveStore, writer: ArchiveWriter, options: Optional[SyncOptions] = None):
        self.store = store
        self.writer = writer
        self.options = options or SyncOptions()

    async def sync_account(
        self,
        account: MailAccount,
        transport: MailTransport,
        job: Job,
        ctx: CancellationContext,
    ) -> SyncReport:
        """
        Reconcile an account whose transport is already connected.

        Raises asyncio.CancelledError when the context is cancelled; the
        checkpoint is left untouched in that case.
        """
        options = self.options
        report = SyncReport(account_id=account.id, started_at=datetime.utcnow())
        report.full_sync = options.force_full or account.last_sync is None
        since = None if report.full_sync else account.last_sync - options.lookback

        logger.info(
            f"Syncing account {account.name} ({account.email_address}): "
            + ("full sync" if since is None else f"messages since {since.isoformat()}")
        )

        job.set_phase("listing folders")
        folders = await ctx.run(transport.list_folders(), timeout=options.command_timeout)

        synced: List[MailFolder] = []
        for folder in folders:
            ctx.raise_if_cancelled()
            if not folder.selectable:
                logger.debug(f"Skipping non-selectable folder {folder.name}")
                continue
            if account.is_folder_excluded(folder.name):
                logger.info(f"Skipping excluded folder {folder.name}")
                continue

            await self._sync_folder(account, transport, folder, since, job, ctx, report)
            synced.append(folder)
            report.folders_synced.append(folder.name)

        if account.delete_after_days:
            job.set_phase("deleting old messages")
            await self.delete_old_messages(account, transport, synced, ctx, report)

        if account.local_retention_days:
            job.set_phase("applying local retention")
            cutoff = datetime.utcnow() - timedelta(days=account.local_retention_days)
            report.deleted_local = await self.store.delete_emails_older_than(account.id, cutoff)

        job.set_phase("finalizing")
        if report.clean:
            await self.store.update_checkpoint(account.id, report.started_at)
            account.last_sync = report.started_at
            report.checkpoint_advanced = True
        else:
            logger.warning(
                f"Account {account.name}: {report.failed} messages and {report.failed_folders} folders failed, "
                f"checkpoint left at {account.last_sync}"
            )

        logger.info(
            f"Account {account.name} synced: {report.new_messages} new, "
            f"{report.duplicates} already archived, {report.failed} failed"
        )
        return report

    async def _sync_folder(
        self,
        account: MailAccount,
        transport: MailTransport,
        folder: MailFolder,
        since: Optional[datetime],
        job: Job,
        ctx: CancellationContext,
        report: SyncReport,
    ):
        job.set_phase(f"syncing {folder.name}")
        batch: List[MessageRef] = []
        try:
            async for ref in transport.fetch_since(folder, since, ctx):
                job.add_total(1)
                batch.append(ref)
                if len(batch) >= self.options.batch_size:
                    await self._process_batch(account, transport, folder, batch, job, ctx, report)
                    batch = []
                    await ctx.sleep(self.options.pause_between_batches)

            if batch:
                await self._process_batch(account, transport, folder, batch, job, ctx, report)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            report.failed_folders += 1
            logger.error(f"Folder {folder.name} of account {account.name} failed: {e}")

    async def _process_batch(
        self,
        account: MailAccount,
        transport: MailTransport,
        folder: MailFolder,
        batch: List[MessageRef],
        job: Job,
        ctx: CancellationContext,
        report: SyncReport,
    ):
        for index, ref in enumerate(batch):
            ctx.raise_if_cancelled()
            if index:
                await ctx.sleep(self.options.pause_between_emails)

            try:
                result = await self._archive_one(account, transport, folder, ref, ctx)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                report.failed += 1
                job.record_failure()
                logger.warning(f"Failed to archive message {ref.remote_id} in {folder.name}: {e}")
                continue

            if result.created:
                report.new_messages += 1
                job.record_success()
            else:
                report.duplicates += 1
                job.record_skipped()

    async def _archive_one(
        self,
        account: MailAccount,
        transport: MailTransport,
        folder: MailFolder,
        ref: MessageRef,
        ctx: CancellationContext,
    ) -> ArchiveResult:
        message = await self._fetch_with_retry(transport, ref, ctx)
        attachments = transport.list_attachments(message)
        return await self.writer.archive(account, message, folder, attachments)

    async def _fetch_with_retry(
        self,
        transport: MailTransport,
        ref: MessageRef,
        ctx: CancellationContext,
    ) -> RemoteMessage:
        timeout = self.options.command_timeout
        try:
            return await ctx.run(transport.fetch_full(ref), timeout=timeout)
        except RateLimitError as e:
            wait = e.retry_after or DEFAULT_RATE_LIMIT_WAIT
            logger.warning(f"Rate limited fetching {ref.remote_id}, waiting {wait}s")
            await ctx.sleep(wait)
            return await ctx.run(transport.fetch_full(ref), timeout=timeout)
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Transport error fetching {ref.remote_id}, reconnecting: {e}")
            await ctx.run(transport.reconnect(), timeout=timeout)
            return await ctx.run(transport.fetch_full(ref), timeout=timeout)

    async def delete_old_messages(
        self,
        account: MailAccount,
        transport: MailTransport,
        folders: List[MailFolder],
        ctx: CancellationContext,
        report: SyncReport,
    ):
        """
        Remove remote messages older than the account's retention.

        A message is only deleted when an archived copy exists; anything
        never archived stays on the server regardless of its age.
        """
        cutoff = datetime.utcnow() - timedelta(days=account.delete_after_days)
        batch_size = self.options.batch_size

        for folder in folders:
            ctx.raise_if_cancelled()
            try:
                refs = await ctx.run(transport.fetch_before(folder, cutoff, ctx), timeout=self.options.command_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Could not search {folder.name} for old messages: {e}")
                continue

            if not refs:
                continue
            logger.info(f"Found {len(refs)} messages older than {cutoff.date()} in {folder.name}")

            for start in range(0, len(refs), batch_size):
                ctx.raise_if_cancelled()
                batch = refs[start:start + batch_size]

                archived: List[MessageRef] = []
                for ref in batch:
                    if ref.envelope is None:
                        continue
                    if await self.writer.dedup.is_archived(account.id, ref.envelope):
                        archived.append(ref)

                kept = len(batch) - len(archived)
                if kept:
                    logger.info(f"Keeping {kept} old messages in {folder.name} that have no archived copy")

                if archived:
                    report.deleted_remote += await self._delete_with_retry(transport, folder, archived, ctx)

                await ctx.sleep(self.options.pause_between_batches)

    async def _delete_with_retry(
        self,
        transport: MailTransport,
        folder: MailFolder,
        refs: List[MessageRef],
        ctx: CancellationContext,
    ) -> int:
        timeout = self.options.command_timeout
        try:
            return await ctx.run(transport.flag_for_deletion(folder, refs), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Deleting {len(refs)} messages from {folder.name} failed, reconnecting: {e}")

        try:
            await ctx.run(transport.reconnect(), timeout=timeout)
            return await ctx.run(transport.flag_for_deletion(folder, refs), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Skipping deletion of {len(refs)} messages in {folder.name} after retry: {e}")
            return 0

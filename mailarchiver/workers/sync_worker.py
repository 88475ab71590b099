"""
Mail Sync Worker

Job handler for the sync family: loads the account, opens its transport
and hands it to the SyncEngine under the overall sync timeout.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import MailAccount
from mailarchiver.providers.base import MailArchiveError, MailTransport
from mailarchiver.providers.registry import create_transport
from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.store import ArchiveStore
from mailarchiver.services.sync_engine import SyncEngine, SyncOptions, SyncReport
from mailarchiver.workers.jobs import Job, JobSetupError

logger = logging.getLogger(__name__)

TransportFactory = Callable[[MailAccount, Any], MailTransport]


@dataclass
class SyncJobRequest:
    """Payload of a sync job."""
    account_id: str
    force_full: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def load_account(store: ArchiveStore, account_id: str) -> MailAccount:
    """Fetch an enabled account or fail the job before any work starts."""
    account = await store.get_account(account_id)
    if account is None:
        raise JobSetupError(f"Account {account_id} not found")
    if not account.is_enabled:
        raise JobSetupError(f"Account {account.name} is disabled")
    return account


async def close_transport(transport: MailTransport):
    try:
        await transport.close()
    except Exception as e:
        logger.warning(f"Error closing transport: {e}")


class SyncWorker:
    """Runs one account sync per job."""

    def __init__(
        self,
        store: ArchiveStore,
        writer: ArchiveWriter,
        settings,
        transport_factory: TransportFactory = create_transport,
    ):
        self.store = store
        self.writer = writer
        self.settings = settings
        self.transport_factory = transport_factory

    async def __call__(self, job: Job[SyncJobRequest], ctx: CancellationContext) -> SyncReport:
        request = job.payload
        account = await load_account(self.store, request.account_id)
        options = SyncOptions.from_settings(self.settings, force_full=request.force_full)
        engine = SyncEngine(self.store, self.writer, options)

        transport = self.transport_factory(account, self.settings)
        try:
            job.set_phase("connecting")
            await ctx.run(transport.connect(), timeout=self.settings.connection_timeout_seconds)

            timeout_minutes = self.settings.sync_timeout_minutes
            try:
                report = await asyncio.wait_for(
                    engine.sync_account(account, transport, job, ctx),
                    timeout=timeout_minutes * 60,
                )
            except asyncio.TimeoutError:
                raise MailArchiveError(f"Sync of account {account.name} exceeded {timeout_minutes} minutes")
        finally:
            await close_transport(transport)

        job.set_phase("completed")
        return report

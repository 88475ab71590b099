"""
Batch Deletion Worker

Removes archived emails and their attachments from the local archive.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.services.store import ArchiveStore
from mailarchiver.workers.jobs import Job, JobSetupError

logger = logging.getLogger(__name__)


@dataclass
class DeletionJobRequest:
    """Payload of a batch deletion job."""
    email_ids: List[str] = field(default_factory=list)
    account_id: Optional[str] = None  # Restricts deletion to one account

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["email_count"] = len(data.pop("email_ids"))
        return data


class DeletionWorker:
    """Deletes archived emails in large batches."""

    def __init__(self, store: ArchiveStore, settings):
        self.store = store
        self.settings = settings

    async def __call__(self, job: Job[DeletionJobRequest], ctx: CancellationContext):
        request = job.payload
        if not request.email_ids:
            raise JobSetupError("No emails selected for deletion")

        email_ids = list(dict.fromkeys(request.email_ids))
        batch_size = self.settings.deletion_batch_size
        batch_pause = self.settings.pause_between_batches_ms / 1000
        job.add_total(len(email_ids))
        job.set_phase("deleting")

        for start in range(0, len(email_ids), batch_size):
            ctx.raise_if_cancelled()
            if start:
                await ctx.sleep(batch_pause)

            batch = email_ids[start:start + batch_size]
            try:
                deleted = await self.store.delete_emails(batch, account_id=request.account_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Deleting batch of {len(batch)} emails failed: {e}")
                job.record_failure(len(batch))
                continue

            job.record_success(deleted)
            # Unknown ids or ids of another account
            job.record_skipped(len(batch) - deleted)

        logger.info(f"Deleted {job.progress.succeeded} of {len(email_ids)} archived emails")

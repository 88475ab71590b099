"""
Archive writer.

Turns a fetched RemoteMessage into a stored ArchivedEmail: dedup check,
direction classification, size bounding and attachment harvesting. Used by
the sync engine for every folder message and directly by bulk import.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from mailarchiver.models.archive import ArchivedEmail, EmailAttachment, MailAccount
from mailarchiver.providers.base import MailFolder, RemoteMessage, is_drafts_folder_name
from mailarchiver.providers.mime import split_addresses
from mailarchiver.services.attachments import AttachmentHarvester
from mailarchiver.services.dedup import DedupIndex
from mailarchiver.services.sanitizer import ContentSanitizer
from mailarchiver.services.store import ArchiveStore, DuplicateMessageError

logger = logging.getLogger(__name__)


class ArchiveOutcome(str, Enum):
    """What happened to one message."""
    CREATED = "created"
    DUPLICATE = "duplicate"
    MOVED = "moved"  # Already archived, folder name updated


@dataclass
class ArchiveResult:
    outcome: ArchiveOutcome
    dedup_key: str
    email_id: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.outcome == ArchiveOutcome.CREATED


def is_outgoing_message(account: MailAccount, from_address: str, folder: MailFolder) -> bool:
    """Sent by the account owner or filed in a sent folder, and never a draft."""
    if folder.is_drafts or is_drafts_folder_name(folder.name):
        return False
    account_address = (account.email_address or "").strip().lower()
    senders = [addr.lower() for addr in split_addresses(from_address)]
    if account_address and account_address in senders:
        return True
    return folder.is_outgoing


class ArchiveWriter:
    """Stores remote messages once per account and dedup key."""

    def __init__(
        self,
        store: ArchiveStore,
        dedup: DedupIndex,
        sanitizer: Optional[ContentSanitizer] = None,
        harvester: Optional[AttachmentHarvester] = None,
    ):
        self.store = store
        self.dedup = dedup
        self.sanitizer = sanitizer or ContentSanitizer()
        self.harvester = harvester or AttachmentHarvester()

    def build_record(
        self,
        account: MailAccount,
        message: RemoteMessage,
        folder: MailFolder,
        dedup_key: str,
        attachments: List[EmailAttachment],
    ) -> ArchivedEmail:
        content = self.sanitizer.bound(
            subject=message.subject,
            from_address=message.from_address,
            to_addresses=message.to_addresses,
            cc_addresses=message.cc_addresses,
            bcc_addresses=message.bcc_addresses,
            text_body=message.text_body,
            html_body=message.html_body,
        )
        if content.truncated:
            logger.info(
                f"Body of '{content.subject[:80]}' truncated for indexing, original kept separately"
            )

        return ArchivedEmail(
            account_id=account.id,
            dedup_key=dedup_key,
            message_id=message.message_id,
            subject=content.subject,
            from_address=content.from_address,
            to_addresses=content.to_addresses,
            cc_addresses=content.cc_addresses,
            bcc_addresses=content.bcc_addresses,
            sent_date=message.sent_date,
            received_date=message.received_date,
            folder_name=folder.name,
            body=content.body,
            html_body=content.html_body,
            original_body_text=content.original_body_text,
            original_body_html=content.original_body_html,
            body_truncated=content.truncated,
            is_outgoing=is_outgoing_message(account, message.from_address, folder),
            has_attachments=bool(attachments),
            raw_headers=message.raw_headers,
            attachments=attachments,
            archived_at=datetime.utcnow(),
        )

    async def archive(
        self,
        account: MailAccount,
        message: RemoteMessage,
        folder: MailFolder,
        attachments: Optional[List[EmailAttachment]] = None,
    ) -> ArchiveResult:
        """Archive one message unless an archived copy already exists."""
        async with self.dedup.account_lock(account.id):
            resolution = await self.dedup.resolve(account.id, message.envelope)

            if resolution.is_duplicate:
                existing = resolution.existing
                if (
                    existing is not None
                    and existing.id
                    and resolution.matched_by == "key"
                    and existing.folder_name != folder.name
                ):
                    await self.store.update_folder(existing.id, folder.name)
                    logger.debug(f"Message {resolution.key} moved to folder {folder.name}")
                    return ArchiveResult(ArchiveOutcome.MOVED, resolution.key, existing.id)
                return ArchiveResult(
                    ArchiveOutcome.DUPLICATE,
                    resolution.key,
                    existing.id if existing else None,
                )

            if attachments is None:
                attachments = self.harvester.harvest(message.root)

            record = self.build_record(account, message, folder, resolution.key, attachments)
            try:
                email_id = await self.store.insert_email(record)
            except DuplicateMessageError:
                # Another writer won the race; the unique index has the final word
                logger.debug(f"Message {resolution.key} inserted concurrently, treating as duplicate")
                return ArchiveResult(ArchiveOutcome.DUPLICATE, resolution.key)

        return ArchiveResult(ArchiveOutcome.CREATED, resolution.key, email_id)

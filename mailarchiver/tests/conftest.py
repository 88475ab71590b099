"""
Mail Archiver Test Configuration.

Pytest fixtures shared by the unit tests: an in-memory archive store, a
scripted mail transport, message factories and a mocked Mongo database.
"""

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailarchiver.core.config import ArchiverSettings
from mailarchiver.models.archive import AccountProvider, ArchivedEmail, EmailAttachment, MailAccount
from mailarchiver.providers.base import MailFolder, MessageEnvelope, MessageRef, RemoteMessage
from mailarchiver.providers.mime import MimeLeaf, MimeMultipart
from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.attachments import AttachmentHarvester
from mailarchiver.services.dedup import DedupIndex
from mailarchiver.services.store import DuplicateMessageError

T0 = datetime(2024, 3, 1, 12, 0, 0)


class InMemoryArchiveStore:
    """ArchiveStore kept in dictionaries."""

    def __init__(self, accounts: Optional[List[MailAccount]] = None):
        self.accounts: Dict[str, MailAccount] = {a.id: a for a in accounts or []}
        self.emails: Dict[str, ArchivedEmail] = {}
        self.attachments: Dict[str, List[EmailAttachment]] = {}
        self.job_logs: List[dict] = []
        self.checkpoint_updates: List[datetime] = []
        self.fail_attachment_insert = False

    async def get_account(self, account_id):
        return self.accounts.get(account_id)

    async def list_enabled_accounts(self):
        return [a for a in self.accounts.values() if a.is_enabled]

    async def update_checkpoint(self, account_id, checkpoint):
        self.accounts[account_id].last_sync = checkpoint
        self.checkpoint_updates.append(checkpoint)

    async def reset_checkpoint(self, account_id):
        self.accounts[account_id].last_sync = None

    async def set_account_enabled(self, account_id, enabled):
        self.accounts[account_id].is_enabled = enabled

    async def delete_account(self, account_id):
        return self.accounts.pop(account_id, None) is not None

    async def find_by_dedup_key(self, account_id, dedup_key):
        for email in self.emails.values():
            if email.account_id == account_id and email.dedup_key == dedup_key:
                return email
        return None

    async def find_similar(self, account_id, fields, sent_from, sent_to):
        for email in self.emails.values():
            if email.account_id != account_id:
                continue
            if not sent_from < email.sent_date < sent_to:
                continue
            if all(getattr(email, name) == value for name, value in fields.items()):
                return email
        return None

    async def insert_email(self, email):
        if await self.find_by_dedup_key(email.account_id, email.dedup_key):
            raise DuplicateMessageError(email.account_id, email.dedup_key)
        if email.attachments and self.fail_attachment_insert:
            raise RuntimeError("attachment insert failed")
        email_id = uuid.uuid4().hex
        email.id = email_id
        self.emails[email_id] = email
        self.attachments[email_id] = list(email.attachments)
        return email_id

    async def update_folder(self, email_id, folder_name):
        self.emails[email_id].folder_name = folder_name

    async def exists(self, account_id, dedup_keys):
        return any(
            email.account_id == account_id and email.dedup_key in dedup_keys
            for email in self.emails.values()
        )

    async def get_email(self, email_id):
        return self.emails.get(email_id)

    async def list_attachments(self, email_id):
        return list(self.attachments.get(email_id, []))

    async def delete_emails(self, email_ids, account_id=None):
        deleted = 0
        for email_id in email_ids:
            email = self.emails.get(email_id)
            if email is None or (account_id and email.account_id != account_id):
                continue
            del self.emails[email_id]
            self.attachments.pop(email_id, None)
            deleted += 1
        return deleted

    async def delete_emails_older_than(self, account_id, cutoff):
        expired = [
            email_id for email_id, email in self.emails.items()
            if email.account_id == account_id and email.sent_date < cutoff
        ]
        return await self.delete_emails(expired)

    async def count_emails(self, account_id):
        return sum(1 for email in self.emails.values() if email.account_id == account_id)

    async def delete_account_emails(self, account_id, limit):
        owned = [email_id for email_id, email in self.emails.items() if email.account_id == account_id]
        return await self.delete_emails(owned[:limit])

    async def insert_job_log(self, entry):
        self.job_logs.append(entry)


def make_message(
    remote_id: str,
    folder_id: str = "INBOX",
    message_id: Optional[str] = None,
    subject: str = "Status report",
    from_address: str = "alice@example.com",
    to_addresses: str = "bob@example.com",
    sent_date: datetime = T0,
    text: str = "Hello Bob",
    extra_parts: Optional[list] = None,
) -> RemoteMessage:
    """Build a fetched message with a plain text body."""
    if message_id is None:
        message_id = f"<{remote_id}@example.com>"
    root = MimeMultipart(
        content_type="multipart/mixed",
        children=[MimeLeaf(content_type="text/plain", payload=text.encode(), charset="utf-8")]
        + list(extra_parts or []),
    )
    return RemoteMessage(
        ref=MessageRef(folder_id=folder_id, remote_id=remote_id, internal_date=sent_date),
        message_id=message_id,
        subject=subject,
        from_address=from_address,
        to_addresses=to_addresses,
        sent_date=sent_date,
        received_date=sent_date,
        root=root,
        text_body=text,
    )


class FakeTransport:
    """Scripted MailTransport recording every call."""

    def __init__(self, folders: Optional[List[MailFolder]] = None):
        self.folders = folders if folders is not None else [MailFolder(id="INBOX", name="INBOX")]
        self.messages: Dict[str, List[RemoteMessage]] = {}
        self.old_refs: Dict[str, List[MessageRef]] = {}
        self.fetch_errors: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.appended: List[tuple] = []
        self.deleted: List[str] = []
        self.harvester = AttachmentHarvester()

    def add_message(self, message: RemoteMessage):
        self.messages.setdefault(message.ref.folder_id, []).append(message)

    def fail_fetch(self, remote_id: str, *errors: Exception):
        """Raise the given errors, one per attempt, when fetching remote_id."""
        self.fetch_errors[remote_id] = list(errors)

    async def connect(self):
        self.calls.append("connect")

    async def reconnect(self):
        self.calls.append("reconnect")

    async def close(self):
        self.calls.append("close")

    async def list_folders(self):
        self.calls.append("list_folders")
        return list(self.folders)

    async def fetch_since(self, folder, since, ctx):
        self.calls.append(f"fetch_since:{folder.id}")
        for message in self.messages.get(folder.id, []):
            if since is None or message.sent_date >= since:
                yield message.ref

    async def fetch_before(self, folder, cutoff, ctx):
        self.calls.append(f"fetch_before:{folder.id}")
        return list(self.old_refs.get(folder.id, []))

    async def fetch_full(self, ref):
        self.calls.append(f"fetch_full:{ref.remote_id}")
        errors = self.fetch_errors.get(ref.remote_id)
        if errors:
            raise errors.pop(0)
        for message in self.messages.get(ref.folder_id, []):
            if message.ref.remote_id == ref.remote_id:
                return message
        raise KeyError(ref.remote_id)

    def list_attachments(self, message):
        return self.harvester.harvest(message.root)

    async def append_message(self, folder, archived, attachments):
        self.calls.append(f"append:{folder.id}")
        self.appended.append((folder.id, archived, attachments))

    async def flag_for_deletion(self, folder, refs):
        self.calls.append(f"delete:{folder.id}")
        self.deleted.extend(ref.remote_id for ref in refs)
        return len(refs)


def old_ref(remote_id: str, message_id: str, folder_id: str = "INBOX", days_old: int = 400) -> MessageRef:
    sent = datetime.utcnow() - timedelta(days=days_old)
    return MessageRef(
        folder_id=folder_id,
        remote_id=remote_id,
        envelope=MessageEnvelope(
            message_id=message_id,
            subject="Old news",
            from_address="alice@example.com",
            to_addresses="bob@example.com",
            sent_date=sent,
        ),
    )


@pytest.fixture
def account() -> MailAccount:
    """An enabled IMAP account that has never been synced."""
    return MailAccount(
        id="acc-1",
        name="Work",
        email_address="bob@example.com",
        provider=AccountProvider.IMAP,
        imap_server="imap.example.com",
        username="bob",
        password="secret",
    )


@pytest.fixture
def store(account) -> InMemoryArchiveStore:
    return InMemoryArchiveStore([account])


@pytest.fixture
def writer(store) -> ArchiveWriter:
    return ArchiveWriter(store, DedupIndex(store))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fast_settings() -> ArchiverSettings:
    """Settings with every pause and poll interval shrunk for tests."""
    return ArchiverSettings(
        mail_sync_enabled=False,
        pause_between_emails_ms=0,
        pause_between_batches_ms=0,
        import_pause_ms=0,
        account_pause_seconds=0,
        job_poll_interval_seconds=0.01,
        import_poll_interval_seconds=0.01,
        job_error_backoff_seconds=0.01,
        batch_size=2,
        deletion_batch_size=2,
        connection_timeout_seconds=5,
        command_timeout_seconds=5,
    )


@pytest.fixture
def mock_db():
    """Mocked motor database whose collections expose async methods."""
    collections: Dict[str, MagicMock] = {}

    def collection(name):
        if name not in collections:
            mock_collection = MagicMock()
            mock_collection.find_one = AsyncMock(return_value=None)
            mock_collection.insert_one = AsyncMock()
            mock_collection.insert_many = AsyncMock()
            mock_collection.update_one = AsyncMock()
            mock_collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
            mock_collection.delete_many = AsyncMock(return_value=MagicMock(deleted_count=0))
            mock_collection.count_documents = AsyncMock(return_value=0)
            mock_collection.create_index = AsyncMock()
            mock_collection.find = MagicMock(return_value=MagicMock(to_list=AsyncMock(return_value=[])))
            collections[name] = mock_collection
        return collections[name]

    db = MagicMock()
    db.__getitem__.side_effect = collection
    db.collections = collections
    return db

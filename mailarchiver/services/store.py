"""
Archive persistence.

ArchiveStore is the persistence boundary used by the sync engine, the
dedup index and the job handlers. MongoArchiveStore implements it on
MongoDB with a unique (account_id, dedup_key) index as the authoritative
duplicate guard.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from mailarchiver.models.archive import ArchivedEmail, EmailAttachment, MailAccount
from mailarchiver.providers.base import MailArchiveError

logger = logging.getLogger(__name__)

# Collection names
ACCOUNTS_COLLECTION = "mail_accounts"
EMAILS_COLLECTION = "archived_emails"
ATTACHMENTS_COLLECTION = "email_attachments"
JOB_LOGS_COLLECTION = "job_logs"


class DuplicateMessageError(MailArchiveError):
    """An archived email with the same account and dedup key already exists."""

    def __init__(self, account_id: str, dedup_key: str):
        super().__init__(f"Message {dedup_key} already archived for account {account_id}")
        self.account_id = account_id
        self.dedup_key = dedup_key


class ArchiveStore(Protocol):
    """Persistence operations the archiver depends on."""

    # Accounts
    async def get_account(self, account_id: str) -> Optional[MailAccount]: ...
    async def list_enabled_accounts(self) -> List[MailAccount]: ...
    async def update_checkpoint(self, account_id: str, checkpoint: datetime) -> None: ...
    async def reset_checkpoint(self, account_id: str) -> None: ...
    async def set_account_enabled(self, account_id: str, enabled: bool) -> None: ...
    async def delete_account(self, account_id: str) -> bool: ...

    # Archived emails
    async def find_by_dedup_key(self, account_id: str, dedup_key: str) -> Optional[ArchivedEmail]: ...
    async def find_similar(
        self,
        account_id: str,
        fields: Dict[str, str],
        sent_from: datetime,
        sent_to: datetime,
    ) -> Optional[ArchivedEmail]: ...
    async def insert_email(self, email: ArchivedEmail) -> str: ...
    async def update_folder(self, email_id: str, folder_name: str) -> None: ...
    async def exists(self, account_id: str, dedup_keys: List[str]) -> bool: ...
    async def get_email(self, email_id: str) -> Optional[ArchivedEmail]: ...
    async def list_attachments(self, email_id: str) -> List[EmailAttachment]: ...
    async def delete_emails(self, email_ids: List[str], account_id: Optional[str] = None) -> int: ...
    async def delete_emails_older_than(self, account_id: str, cutoff: datetime) -> int: ...
    async def count_emails(self, account_id: str) -> int: ...
    async def delete_account_emails(self, account_id: str, limit: int) -> int: ...

    # Audit
    async def insert_job_log(self, entry: Dict[str, Any]) -> None: ...


def _object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class MongoArchiveStore:
    """ArchiveStore on a motor database handle."""

    def __init__(self, db):
        self.db = db
        self.accounts = db[ACCOUNTS_COLLECTION]
        self.emails = db[EMAILS_COLLECTION]
        self.attachments = db[ATTACHMENTS_COLLECTION]
        self.job_logs = db[JOB_LOGS_COLLECTION]

    async def ensure_indexes(self):
        """Create the indexes the archive relies on."""
        await self.emails.create_index(
            [("account_id", ASCENDING), ("dedup_key", ASCENDING)],
            unique=True,
            name="account_dedup_key_unique",
        )
        await self.emails.create_index(
            [
                ("account_id", ASCENDING),
                ("from_address", ASCENDING),
                ("subject", ASCENDING),
                ("sent_date", ASCENDING),
            ],
            name="account_envelope",
        )
        await self.emails.create_index(
            [("account_id", ASCENDING), ("sent_date", DESCENDING)],
            name="account_sent_date",
        )
        await self.attachments.create_index([("email_id", ASCENDING)], name="email_id")
        await self.job_logs.create_index([("completed_at", DESCENDING)], name="completed_at")
        logger.info("Archive indexes ensured")

    # ============== Accounts ==============

    async def get_account(self, account_id: str) -> Optional[MailAccount]:
        oid = _object_id(account_id)
        if oid is None:
            return None
        doc = await self.accounts.find_one({"_id": oid})
        return MailAccount.from_dict(doc) if doc else None

    async def list_enabled_accounts(self) -> List[MailAccount]:
        cursor = self.accounts.find({"is_enabled": True})
        docs = await cursor.to_list(length=None)
        return [MailAccount.from_dict(doc) for doc in docs]

    async def update_checkpoint(self, account_id: str, checkpoint: datetime):
        await self.accounts.update_one(
            {"_id": ObjectId(account_id)},
            {"$set": {"last_sync": checkpoint}},
        )

    async def reset_checkpoint(self, account_id: str):
        await self.accounts.update_one(
            {"_id": ObjectId(account_id)},
            {"$set": {"last_sync": None}},
        )

    async def set_account_enabled(self, account_id: str, enabled: bool):
        await self.accounts.update_one(
            {"_id": ObjectId(account_id)},
            {"$set": {"is_enabled": enabled}},
        )

    async def delete_account(self, account_id: str) -> bool:
        """Remove the account document. Its archived emails must be gone already."""
        oid = _object_id(account_id)
        if oid is None:
            return False
        result = await self.accounts.delete_one({"_id": oid})
        return result.deleted_count > 0

    # ============== Archived emails ==============

    async def find_by_dedup_key(self, account_id: str, dedup_key: str) -> Optional[ArchivedEmail]:
        doc = await self.emails.find_one(
            {"account_id": account_id, "dedup_key": dedup_key},
            projection={"original_body_text": 0, "original_body_html": 0},
        )
        return ArchivedEmail.from_dict(doc) if doc else None

    async def find_similar(
        self,
        account_id: str,
        fields: Dict[str, str],
        sent_from: datetime,
        sent_to: datetime,
    ) -> Optional[ArchivedEmail]:
        """First email matching the given envelope fields strictly inside a sent-date window."""
        doc = await self.emails.find_one(
            {
                **fields,
                "account_id": account_id,
                "sent_date": {"$gt": sent_from, "$lt": sent_to},
            },
            projection={"original_body_text": 0, "original_body_html": 0},
        )
        return ArchivedEmail.from_dict(doc) if doc else None

    async def insert_email(self, email: ArchivedEmail) -> str:
        """Insert an email and its attachments; nothing is kept if any insert fails."""
        doc = email.to_dict()
        doc["archived_at"] = email.archived_at or datetime.utcnow()
        try:
            result = await self.emails.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateMessageError(email.account_id, email.dedup_key)

        email_id = str(result.inserted_id)
        if email.attachments:
            attachment_docs = []
            for attachment in email.attachments:
                attachment.email_id = email_id
                attachment_docs.append({**attachment.to_dict(), "email_id": result.inserted_id})
            try:
                await self.attachments.insert_many(attachment_docs)
            except Exception:
                await self.attachments.delete_many({"email_id": result.inserted_id})
                await self.emails.delete_one({"_id": result.inserted_id})
                raise

        email.id = email_id
        return email_id

    async def update_folder(self, email_id: str, folder_name: str):
        await self.emails.update_one(
            {"_id": ObjectId(email_id)},
            {"$set": {"folder_name": folder_name}},
        )

    async def exists(self, account_id: str, dedup_keys: List[str]) -> bool:
        count = await self.emails.count_documents(
            {"account_id": account_id, "dedup_key": {"$in": dedup_keys}},
            limit=1,
        )
        return count > 0

    async def get_email(self, email_id: str) -> Optional[ArchivedEmail]:
        oid = _object_id(email_id)
        if oid is None:
            return None
        doc = await self.emails.find_one({"_id": oid})
        return ArchivedEmail.from_dict(doc) if doc else None

    async def list_attachments(self, email_id: str) -> List[EmailAttachment]:
        oid = _object_id(email_id)
        if oid is None:
            return []
        cursor = self.attachments.find({"email_id": oid})
        docs = await cursor.to_list(length=None)
        return [EmailAttachment.from_dict(doc) for doc in docs]

    async def delete_emails(self, email_ids: List[str], account_id: Optional[str] = None) -> int:
        oids = [oid for oid in (_object_id(i) for i in email_ids) if oid is not None]
        if not oids:
            return 0
        query: Dict[str, Any] = {"_id": {"$in": oids}}
        if account_id:
            query["account_id"] = account_id
        # Only remove attachments of emails this query actually matches
        matched = [doc["_id"] for doc in await self.emails.find(query, projection={"_id": 1}).to_list(length=None)]
        if not matched:
            return 0
        await self.attachments.delete_many({"email_id": {"$in": matched}})
        result = await self.emails.delete_many({"_id": {"$in": matched}})
        return result.deleted_count

    async def delete_emails_older_than(self, account_id: str, cutoff: datetime) -> int:
        query = {"account_id": account_id, "sent_date": {"$lt": cutoff}}
        ids = [doc["_id"] for doc in await self.emails.find(query, projection={"_id": 1}).to_list(length=None)]
        if not ids:
            return 0
        await self.attachments.delete_many({"email_id": {"$in": ids}})
        result = await self.emails.delete_many({"_id": {"$in": ids}})
        logger.info(f"Local retention removed {result.deleted_count} emails for account {account_id}")
        return result.deleted_count

    async def count_emails(self, account_id: str) -> int:
        return await self.emails.count_documents({"account_id": account_id})

    async def delete_account_emails(self, account_id: str, limit: int) -> int:
        """Delete up to limit emails of an account with their attachments. 0 once none are left."""
        cursor = self.emails.find({"account_id": account_id}, projection={"_id": 1})
        ids = [doc["_id"] for doc in await cursor.to_list(length=limit)]
        if not ids:
            return 0
        await self.attachments.delete_many({"email_id": {"$in": ids}})
        result = await self.emails.delete_many({"_id": {"$in": ids}})
        return result.deleted_count

    # ============== Audit ==============

    async def insert_job_log(self, entry: Dict[str, Any]):
        await self.job_logs.insert_one(dict(entry))

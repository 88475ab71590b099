"""
Domain records for the mail archive.

Accounts, archived emails and their attachments as they are stored and
passed between the sync engine, the job handlers and the store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class AccountProvider(str, Enum):
    """Transport used to reach a mailbox."""
    IMAP = "imap"
    GRAPH = "graph"


@dataclass
class MailAccount:
    """A remote mailbox being archived."""
    id: str
    name: str
    email_address: str
    provider: AccountProvider = AccountProvider.IMAP

    # IMAP
    imap_server: str = ""
    imap_port: int = 993
    username: str = ""
    password: str = ""
    use_ssl: bool = True

    # Microsoft Graph (client credentials)
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""

    is_enabled: bool = True
    excluded_folders: List[str] = field(default_factory=list)
    delete_after_days: Optional[int] = None  # Remote retention
    local_retention_days: Optional[int] = None  # Archive retention
    last_sync: Optional[datetime] = None  # Checkpoint, None = never synced

    def is_folder_excluded(self, folder_name: str) -> bool:
        excluded = {f.strip().lower() for f in self.excluded_folders if f.strip()}
        return folder_name.strip().lower() in excluded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email_address": self.email_address,
            "provider": self.provider.value,
            "imap_server": self.imap_server,
            "imap_port": self.imap_port,
            "username": self.username,
            "password": self.password,
            "use_ssl": self.use_ssl,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "tenant_id": self.tenant_id,
            "is_enabled": self.is_enabled,
            "excluded_folders": self.excluded_folders,
            "delete_after_days": self.delete_after_days,
            "local_retention_days": self.local_retention_days,
            "last_sync": self.last_sync,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MailAccount":
        excluded = data.get("excluded_folders") or []
        if isinstance(excluded, str):
            # Stored as a ';' separated list by older configuration screens
            excluded = [f for f in excluded.split(";") if f.strip()]
        return cls(
            id=str(data.get("_id", data.get("id", ""))),
            name=data.get("name", ""),
            email_address=data.get("email_address", ""),
            provider=AccountProvider(data.get("provider", AccountProvider.IMAP.value)),
            imap_server=data.get("imap_server", ""),
            imap_port=data.get("imap_port", 993),
            username=data.get("username", ""),
            password=data.get("password", ""),
            use_ssl=data.get("use_ssl", True),
            client_id=data.get("client_id", ""),
            client_secret=data.get("client_secret", ""),
            tenant_id=data.get("tenant_id", ""),
            is_enabled=data.get("is_enabled", True),
            excluded_folders=list(excluded),
            delete_after_days=data.get("delete_after_days"),
            local_retention_days=data.get("local_retention_days"),
            last_sync=data.get("last_sync"),
        )


@dataclass
class EmailAttachment:
    """Binary part stored next to an archived email."""
    file_name: str
    content_type: str
    content: bytes
    content_id: Optional[str] = None  # For inline image resolution
    id: Optional[str] = None
    email_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email_id": self.email_id,
            "file_name": self.file_name,
            "content_type": self.content_type,
            "content_id": self.content_id,
            "size": self.size,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailAttachment":
        return cls(
            id=str(data["_id"]) if "_id" in data else data.get("id"),
            email_id=str(data["email_id"]) if data.get("email_id") else None,
            file_name=data.get("file_name", ""),
            content_type=data.get("content_type", "application/octet-stream"),
            content_id=data.get("content_id"),
            content=bytes(data.get("content") or b""),
        )


@dataclass
class ArchivedEmail:
    """An archived message, created once per dedup key and account."""
    account_id: str
    dedup_key: str
    message_id: str  # Provider identifier, may be empty
    subject: str
    from_address: str
    to_addresses: str
    sent_date: datetime
    received_date: datetime
    folder_name: str
    cc_addresses: str = ""
    bcc_addresses: str = ""
    body: str = ""  # Size bounded, indexed
    html_body: Optional[str] = None  # Size bounded, indexed
    original_body_text: Optional[str] = None  # Untruncated, never indexed
    original_body_html: Optional[str] = None  # Untruncated, never indexed
    body_truncated: bool = False
    is_outgoing: bool = False
    has_attachments: bool = False
    raw_headers: str = ""
    attachments: List[EmailAttachment] = field(default_factory=list)
    id: Optional[str] = None
    archived_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Document form without attachments, which are stored separately."""
        return {
            "account_id": self.account_id,
            "dedup_key": self.dedup_key,
            "message_id": self.message_id,
            "subject": self.subject,
            "from_address": self.from_address,
            "to_addresses": self.to_addresses,
            "cc_addresses": self.cc_addresses,
            "bcc_addresses": self.bcc_addresses,
            "sent_date": self.sent_date,
            "received_date": self.received_date,
            "folder_name": self.folder_name,
            "body": self.body,
            "html_body": self.html_body,
            "original_body_text": self.original_body_text,
            "original_body_html": self.original_body_html,
            "body_truncated": self.body_truncated,
            "is_outgoing": self.is_outgoing,
            "has_attachments": self.has_attachments,
            "raw_headers": self.raw_headers,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchivedEmail":
        return cls(
            id=str(data["_id"]) if "_id" in data else data.get("id"),
            account_id=str(data.get("account_id", "")),
            dedup_key=data.get("dedup_key", ""),
            message_id=data.get("message_id", ""),
            subject=data.get("subject", ""),
            from_address=data.get("from_address", ""),
            to_addresses=data.get("to_addresses", ""),
            cc_addresses=data.get("cc_addresses", ""),
            bcc_addresses=data.get("bcc_addresses", ""),
            sent_date=data.get("sent_date"),
            received_date=data.get("received_date"),
            folder_name=data.get("folder_name", ""),
            body=data.get("body", ""),
            html_body=data.get("html_body"),
            original_body_text=data.get("original_body_text"),
            original_body_html=data.get("original_body_html"),
            body_truncated=data.get("body_truncated", False),
            is_outgoing=data.get("is_outgoing", False),
            has_attachments=data.get("has_attachments", False),
            raw_headers=data.get("raw_headers", ""),
            archived_at=data.get("archived_at"),
        )

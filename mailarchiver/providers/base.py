"""
Mail Transport Interface and Data Classes

This module defines the interface both mailbox transports implement, the
folder and message records they exchange with the sync engine, and the
transport error hierarchy.

Transports are strategies: the sync engine only depends on the
MailTransport protocol, never on a concrete class.
"""

import email
import email.policy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, List, Optional, Protocol, runtime_checkable

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import ArchivedEmail, EmailAttachment
from mailarchiver.providers.mime import (
    MimeNode,
    build_part_tree,
    decode_header_value,
    extract_bodies,
    extract_message_date,
    format_addresses,
)

logger = logging.getLogger(__name__)


# Lowercase fragments identifying sent-mail folders across locales
OUTGOING_FOLDER_NAMES = (
    "sent",
    "sent items",
    "sent mail",
    "sent messages",
    "gesendet",
    "gesendete elemente",
    "gesendete objekte",
    "envoy",
    "éléments envoyés",
    "messages envoyés",
    "inviata",
    "inviati",
    "posta inviata",
    "enviado",
    "enviados",
    "elementos enviados",
    "verzonden",
    "skickat",
    "skickade",
    "sendt",
    "lähetetyt",
    "wysłane",
    "odeslané",
    "отправленные",
    "送信済み",
    "已发送",
)

DRAFTS_FOLDER_NAMES = (
    "drafts",
    "draft",
    "entwürfe",
    "brouillons",
    "bozze",
    "borradores",
    "concepten",
)


def is_outgoing_folder_name(name: str) -> bool:
    lowered = name.lower()
    return any(fragment in lowered for fragment in OUTGOING_FOLDER_NAMES)


def is_drafts_folder_name(name: str) -> bool:
    lowered = name.lower()
    return any(fragment in lowered for fragment in DRAFTS_FOLDER_NAMES)


@dataclass
class MailFolder:
    """A remote folder/mailbox."""
    id: str  # IMAP mailbox name or Graph folder id
    name: str  # Display path, e.g. "INBOX/Projects"
    selectable: bool = True
    is_sent: bool = False  # Reported by the server (\Sent, sentitems)
    is_drafts: bool = False
    message_count: int = 0
    flags: List[str] = field(default_factory=list)

    @property
    def is_outgoing(self) -> bool:
        """Outgoing classification used for message direction."""
        if self.is_drafts or is_drafts_folder_name(self.name):
            return False
        return self.is_sent or is_outgoing_folder_name(self.name)


@dataclass
class MessageEnvelope:
    """Header fields that identify a message."""
    message_id: str
    subject: str
    from_address: str
    to_addresses: str
    sent_date: datetime


@dataclass
class MessageRef:
    """Handle for a remote message, as returned by a search."""
    folder_id: str
    remote_id: str  # IMAP UID or Graph message id
    internal_date: Optional[datetime] = None
    envelope: Optional[MessageEnvelope] = None


@dataclass
class RemoteMessage:
    """A fully fetched remote message."""
    ref: MessageRef
    message_id: str
    subject: str
    from_address: str
    to_addresses: str
    sent_date: datetime
    received_date: datetime
    root: MimeNode
    cc_addresses: str = ""
    bcc_addresses: str = ""
    text_body: str = ""
    html_body: str = ""
    raw_headers: str = ""

    @property
    def envelope(self) -> MessageEnvelope:
        return MessageEnvelope(
            message_id=self.message_id,
            subject=self.subject,
            from_address=self.from_address,
            to_addresses=self.to_addresses,
            sent_date=self.sent_date,
        )


def parse_rfc822(
    raw: bytes,
    ref: MessageRef,
    received_date: Optional[datetime] = None,
) -> RemoteMessage:
    """Parse raw RFC 822 bytes into a RemoteMessage."""
    msg = email.message_from_bytes(raw, policy=email.policy.compat32)
    if not msg.keys():
        raise ValueError("Message has no headers")

    root = build_part_tree(msg)
    body_plain, body_html = extract_bodies(root)
    sent_date = extract_message_date(msg)
    raw_headers = "".join(f"{name}: {value}\n" for name, value in msg.items())

    return RemoteMessage(
        ref=ref,
        message_id=(msg.get("Message-ID") or "").strip(),
        subject=decode_header_value(msg.get("Subject")),
        from_address=format_addresses(msg.get("From")),
        to_addresses=format_addresses(msg.get("To")),
        cc_addresses=format_addresses(msg.get("Cc")),
        bcc_addresses=format_addresses(msg.get("Bcc")),
        sent_date=sent_date,
        received_date=received_date or ref.internal_date or sent_date,
        root=root,
        text_body=body_plain,
        html_body=body_html,
        raw_headers=raw_headers,
    )


def parse_envelope(raw_headers: bytes) -> MessageEnvelope:
    """Build an envelope from a header-only fetch."""
    msg = email.message_from_bytes(raw_headers, policy=email.policy.compat32)
    return MessageEnvelope(
        message_id=(msg.get("Message-ID") or "").strip(),
        subject=decode_header_value(msg.get("Subject")),
        from_address=format_addresses(msg.get("From")),
        to_addresses=format_addresses(msg.get("To")),
        sent_date=extract_message_date(msg),
    )


@runtime_checkable
class MailTransport(Protocol):
    """
    Capability surface the sync engine and job handlers consume.

    Implementations: ImapTransport (stateful stream protocol) and
    GraphTransport (stateless paginated API).
    """

    async def connect(self) -> None:
        """Open the connection or acquire a token."""
        ...

    async def reconnect(self) -> None:
        """Drop any session state and connect again."""
        ...

    async def close(self) -> None:
        ...

    async def list_folders(self) -> List[MailFolder]:
        ...

    def fetch_since(
        self,
        folder: MailFolder,
        since: Optional[datetime],
        ctx: CancellationContext,
    ) -> AsyncIterator[MessageRef]:
        """Messages at or after ``since``; all messages when ``since`` is None."""
        ...

    async def fetch_before(
        self,
        folder: MailFolder,
        cutoff: datetime,
        ctx: CancellationContext,
    ) -> List[MessageRef]:
        """Messages older than ``cutoff`` with their envelopes populated."""
        ...

    async def fetch_full(self, ref: MessageRef) -> RemoteMessage:
        ...

    def list_attachments(self, message: RemoteMessage) -> List[EmailAttachment]:
        ...

    async def append_message(
        self,
        folder: MailFolder,
        archived: ArchivedEmail,
        attachments: List[EmailAttachment],
    ) -> None:
        ...

    async def flag_for_deletion(self, folder: MailFolder, refs: List[MessageRef]) -> int:
        """Delete the given messages remotely; returns how many were removed."""
        ...


class MailArchiveError(Exception):
    """Base exception for mail archive operations."""
    pass


class TransportError(MailArchiveError):
    """Remote mailbox operation failed; usually worth one reconnect."""
    pass


class AuthenticationError(TransportError):
    """Authentication failed or credentials expired."""
    pass


class RateLimitError(TransportError):
    """Rate limit exceeded."""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class QueryRejectedError(TransportError):
    """The server refused a search or filter as unsupported or too complex."""
    pass


class FolderNotFoundError(TransportError):
    """Requested folder does not exist."""
    pass

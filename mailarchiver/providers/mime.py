"""
MIME part tree and RFC 822 helpers.

Messages are modelled as a tagged tree of three node kinds:

- MimeLeaf: a single body part carrying decoded bytes
- MimeMultipart: a container with ordered children
- MimeEmbeddedMessage: an attached message/rfc822 whose body is another tree

Both transports produce this tree, so attachment harvesting and body
extraction work the same way regardless of where a message came from.
"""

import email
import email.errors
import email.header
import email.utils
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage, Message
from typing import Optional, List, Tuple, Union

from mailarchiver.models.archive import ArchivedEmail, EmailAttachment

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

# Deeper trees are flattened into an opaque leaf
MAX_MIME_DEPTH = 64


@dataclass
class MimeLeaf:
    """A non-container part."""
    content_type: str
    payload: bytes = b""
    disposition: Optional[str] = None  # "attachment", "inline" or None
    filename: Optional[str] = None
    content_id: Optional[str] = None
    charset: Optional[str] = None

    @property
    def maintype(self) -> str:
        return self.content_type.split("/", 1)[0].lower()

    @property
    def subtype(self) -> str:
        parts = self.content_type.split("/", 1)
        return parts[1].lower() if len(parts) > 1 else ""

    def text(self) -> str:
        charset = self.charset or "utf-8"
        try:
            return self.payload.decode(charset, errors="replace")
        except LookupError:
            return self.payload.decode("utf-8", errors="replace")


@dataclass
class MimeMultipart:
    """A multipart/* container."""
    content_type: str
    children: List["MimeNode"] = field(default_factory=list)


@dataclass
class MimeEmbeddedMessage:
    """A message/rfc822 part; its body is a complete message tree."""
    body: "MimeNode"
    content_type: str = "message/rfc822"
    disposition: Optional[str] = None
    filename: Optional[str] = None
    subject: str = ""


MimeNode = Union[MimeLeaf, MimeMultipart, MimeEmbeddedMessage]


def decode_header_value(value: Optional[str]) -> str:
    """Decode a MIME-encoded header into text."""
    if not value:
        return ""

    try:
        decoded_parts = email.header.decode_header(str(value))
        parts = []
        for content, charset in decoded_parts:
            if isinstance(content, bytes):
                try:
                    parts.append(content.decode(charset or "utf-8", errors="replace"))
                except LookupError:
                    parts.append(content.decode("utf-8", errors="replace"))
            else:
                parts.append(str(content))
        return "".join(parts).strip()
    except (ValueError, email.errors.HeaderParseError):
        return str(value)


def strip_angle_brackets(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.strip().strip("<>").strip()


def build_part_tree(msg: Message, depth: int = 0) -> MimeNode:
    """Convert a parsed stdlib message into a MimeNode tree."""
    content_type = msg.get_content_type()
    disposition = msg.get_content_disposition()
    filename = decode_header_value(msg.get_filename()) or None

    if depth >= MAX_MIME_DEPTH:
        logger.warning(f"MIME nesting deeper than {MAX_MIME_DEPTH}, keeping remainder as opaque part")
        return MimeLeaf(
            content_type="application/octet-stream",
            payload=msg.as_bytes(),
            disposition="attachment",
            filename=filename,
        )

    if msg.get_content_maintype() == "message" and msg.get_content_subtype() in ("rfc822", "global"):
        payload = msg.get_payload()
        if isinstance(payload, list) and payload:
            inner = payload[0]
        else:
            raw = msg.get_payload(decode=True) or b""
            inner = email.message_from_bytes(raw)
        return MimeEmbeddedMessage(
            body=build_part_tree(inner, depth + 1),
            content_type=content_type,
            disposition=disposition,
            filename=filename,
            subject=decode_header_value(inner.get("Subject")),
        )

    if msg.is_multipart():
        return MimeMultipart(
            content_type=content_type,
            children=[build_part_tree(part, depth + 1) for part in msg.get_payload()],
        )

    return MimeLeaf(
        content_type=content_type,
        payload=msg.get_payload(decode=True) or b"",
        disposition=disposition,
        filename=filename,
        content_id=strip_angle_brackets(msg.get("Content-ID")) or None,
        charset=msg.get_content_charset(),
    )


def is_body_part(leaf: MimeLeaf) -> bool:
    """True for plain text/html parts that make up the message body."""
    return (
        leaf.content_type.lower() in ("text/plain", "text/html")
        and not leaf.filename
        and not leaf.content_id
        and leaf.disposition != "attachment"
    )


def extract_bodies(root: MimeNode) -> Tuple[str, str]:
    """
    Return the first plain text and first HTML body of a message.

    Embedded messages are not entered; their bodies belong to the
    attached message, not to this one.
    """
    body_plain = ""
    body_html = ""
    stack: List[MimeNode] = [root]

    while stack:
        node = stack.pop()
        if isinstance(node, MimeMultipart):
            stack.extend(reversed(node.children))
        elif isinstance(node, MimeLeaf) and is_body_part(node):
            if node.content_type.lower() == "text/plain" and not body_plain:
                body_plain = node.text()
            elif node.content_type.lower() == "text/html" and not body_html:
                body_html = node.text()

    return body_plain, body_html


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return to_naive_utc(parsed)


def extract_message_date(msg: Message) -> datetime:
    """
    Best-effort sent date.

    Falls back from the Date header to the timestamp of the last Received
    header, then to Resent-Date, then to the Unix epoch.
    """
    sent = parse_date(msg.get("Date"))
    if sent:
        return sent

    received = msg.get_all("Received") or []
    if received:
        last = str(received[-1])
        if ";" in last:
            sent = parse_date(last.rsplit(";", 1)[1])
            if sent:
                return sent

    sent = parse_date(msg.get("Resent-Date"))
    if sent:
        return sent

    return EPOCH


def format_addresses(value: Optional[str]) -> str:
    """Comma separated address list from a raw address header."""
    if not value:
        return ""
    addresses = [addr for _, addr in email.utils.getaddresses([decode_header_value(value)]) if addr]
    return ", ".join(addresses)


def split_addresses(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [addr for _, addr in email.utils.getaddresses([value]) if addr]


def compose_mime(archived: ArchivedEmail, attachments: List[EmailAttachment]) -> bytes:
    """Rebuild an RFC 822 message from an archived record for APPEND."""
    msg = EmailMessage()
    msg["Subject"] = " ".join(archived.subject.splitlines())
    msg["From"] = archived.from_address
    if archived.to_addresses:
        msg["To"] = archived.to_addresses
    if archived.cc_addresses:
        msg["Cc"] = archived.cc_addresses
    if archived.bcc_addresses:
        msg["Bcc"] = archived.bcc_addresses
    msg["Date"] = email.utils.format_datetime(archived.sent_date.replace(tzinfo=timezone.utc))
    if archived.message_id:
        message_id = archived.message_id.strip()
        msg["Message-ID"] = message_id if message_id.startswith("<") else f"<{message_id}>"

    text = archived.original_body_text or archived.body or ""
    html = archived.original_body_html or archived.html_body
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    for attachment in attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        kwargs = {
            "maintype": maintype or "application",
            "subtype": subtype or "octet-stream",
            "filename": attachment.file_name,
        }
        if attachment.content_id:
            kwargs["disposition"] = "inline"
            kwargs["cid"] = f"<{attachment.content_id}>"
        msg.add_attachment(attachment.content, **kwargs)

    return msg.as_bytes()

"""
IMAP Mail Transport

Stateful transport over aioimaplib. The connection can drop at any time
on long archive runs, so every folder, search and message operation first
checks the session: it reconnects when the socket is gone, logs in again
when the session is not authenticated and re-opens the folder in the mode
the operation needs (EXAMINE for reads, SELECT for append and delete).

Searching follows a fallback ladder because servers differ in what they
accept: SINCE, then SENTSINCE, then ALL with INTERNALDATE filtered on the
client.
"""

import asyncio
import logging
import re
import ssl
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aioimaplib

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import AccountProvider, ArchivedEmail, EmailAttachment, MailAccount
from mailarchiver.providers.base import (
    AuthenticationError,
    FolderNotFoundError,
    MailFolder,
    MessageRef,
    QueryRejectedError,
    RemoteMessage,
    TransportError,
    parse_envelope,
    parse_rfc822,
)
from mailarchiver.providers.mime import compose_mime, to_naive_utc
from mailarchiver.providers.registry import register_transport
from mailarchiver.services.attachments import AttachmentHarvester

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Response lines like: (\HasNoChildren \Sent) "/" "Sent Items"
_LIST_PATTERN = re.compile(
    r'\((?P<flags>[^)]*)\)\s+(?:"(?P<delimiter>[^"]*)"|NIL)\s+"?(?P<name>.*?)"?$'
)
_EXISTS_PATTERN = re.compile(rb"(\d+)\s+EXISTS")
_UID_PATTERN = re.compile(rb"UID\s+(\d+)")
_INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE\s+"([^"]+)"')

ENVELOPE_FIELDS = "(UID BODY.PEEK[HEADER.FIELDS (MESSAGE-ID FROM TO SUBJECT DATE RECEIVED RESENT-DATE)])"
HEADER_FETCH_CHUNK = 100


def imap_date(value: datetime) -> str:
    """IMAP search date (dd-Mon-yyyy), independent of the process locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def parse_internaldate(value: bytes) -> Optional[datetime]:
    try:
        parsed = datetime.strptime(value.decode().strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None
    return to_naive_utc(parsed)


def quote_mailbox(name: str) -> str:
    if name.startswith('"') and name.endswith('"'):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_search_response(lines: List[bytes]) -> List[str]:
    for line in lines:
        if isinstance(line, bytearray):
            continue
        text = line.decode(errors="replace").strip()
        if text.upper().startswith("SEARCH"):
            text = text[6:].strip()
        tokens = text.split()
        if tokens and all(token.isdigit() for token in tokens):
            return tokens
    return []


def parse_literal_fetch(lines: List[bytes]) -> List[Tuple[bytes, bytes]]:
    """Pair every FETCH metadata line with the literal that follows it."""
    pairs = []
    meta = b""
    for line in lines:
        if isinstance(line, bytearray):
            pairs.append((meta, bytes(line)))
            meta = b""
        elif b"FETCH" in line:
            meta = bytes(line)
    return pairs


@register_transport(AccountProvider.IMAP)
class ImapTransport:
    """
    IMAP implementation of MailTransport.

    Supports any IMAP4rev1 server. Reads never change message flags
    (BODY.PEEK, EXAMINE).
    """

    def __init__(
        self,
        account: MailAccount,
        connection_timeout: float = 180,
        command_timeout: float = 300,
        ignore_self_signed_cert: bool = False,
        harvester: Optional[AttachmentHarvester] = None,
    ):
        self.account = account
        self.connection_timeout = connection_timeout
        self.command_timeout = command_timeout
        self.ignore_self_signed_cert = ignore_self_signed_cert
        self.harvester = harvester or AttachmentHarvester()
        self._client: Optional[aioimaplib.IMAP4] = None
        self._selected: Optional[Tuple[str, bool]] = None  # (mailbox, writable)
        self._selected_exists = 0
        self._folders: Dict[str, MailFolder] = {}

    @classmethod
    def from_settings(cls, account: MailAccount, settings) -> "ImapTransport":
        return cls(
            account,
            connection_timeout=settings.connection_timeout_seconds,
            command_timeout=settings.command_timeout_seconds,
            ignore_self_signed_cert=settings.ignore_self_signed_cert,
        )

    # ============== Session ==============

    async def connect(self):
        """Connect and log in."""
        account = self.account
        try:
            if account.use_ssl:
                ssl_context = ssl.create_default_context()
                if self.ignore_self_signed_cert:
                    ssl_context.check_hostname = False
                    ssl_context.verify_mode = ssl.CERT_NONE
                self._client = aioimaplib.IMAP4_SSL(
                    host=account.imap_server,
                    port=account.imap_port,
                    ssl_context=ssl_context,
                    timeout=self.command_timeout,
                )
            else:
                self._client = aioimaplib.IMAP4(
                    host=account.imap_server,
                    port=account.imap_port,
                    timeout=self.command_timeout,
                )

            await asyncio.wait_for(self._client.wait_hello_from_server(), timeout=self.connection_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self._client = None
            raise TransportError(f"Cannot connect to {account.imap_server}:{account.imap_port}: {e}")

        self._selected = None
        await self._login()
        logger.info(f"Connected to IMAP server {account.imap_server} as {account.username or account.email_address}")

    async def _login(self):
        account = self.account
        response = await self._client.login(account.username or account.email_address, account.password)
        if response.result != "OK":
            raise AuthenticationError(f"IMAP login failed for {account.email_address}: {response.lines}")

    async def close(self):
        """Log out and drop the connection."""
        if self._client is not None:
            try:
                await self._client.logout()
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._client = None
                self._selected = None

    async def reconnect(self):
        logger.info(f"Reconnecting to {self.account.imap_server}")
        await self.close()
        await self.connect()

    def _is_alive(self) -> bool:
        protocol = getattr(self._client, "protocol", None)
        if protocol is None:
            return False
        transport = getattr(protocol, "transport", None)
        if transport is None or transport.is_closing():
            return False
        return protocol.state != aioimaplib.LOGOUT

    async def _ensure_session(self):
        if not self._is_alive():
            if self._client is not None:
                logger.warning(f"IMAP connection to {self.account.imap_server} lost")
            self._client = None
            await self.connect()
        elif self._client.protocol.state == aioimaplib.NONAUTH:
            logger.warning("IMAP session not authenticated, logging in again")
            self._selected = None
            await self._login()

    async def _open_folder(self, mailbox: str, writable: bool) -> int:
        """Select (read-write) or examine (read-only) a mailbox; returns EXISTS."""
        await self._ensure_session()
        if self._selected == (mailbox, writable) and self._client.protocol.state == aioimaplib.SELECTED:
            return self._selected_exists

        quoted = quote_mailbox(mailbox)
        if writable:
            response = await self._client.select(quoted)
        else:
            response = await self._client.examine(quoted)
        if response.result != "OK":
            self._selected = None
            raise FolderNotFoundError(f"Cannot open folder {mailbox}: {response.lines}")

        exists = 0
        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                match = _EXISTS_PATTERN.search(bytes(line))
                if match:
                    exists = int(match.group(1))
        self._selected = (mailbox, writable)
        self._selected_exists = exists
        return exists

    # ============== Folders ==============

    async def list_folders(self) -> List[MailFolder]:
        """List all mailboxes, marking non-selectable ones and special-use flags."""
        await self._ensure_session()
        response = await self._client.list('""', "*")
        if response.result != "OK":
            raise TransportError(f"LIST command failed: {response.lines}")

        folders: List[MailFolder] = []
        for line in response.lines:
            if not line:
                continue
            line_str = line.decode(errors="replace") if isinstance(line, (bytes, bytearray)) else str(line)
            match = _LIST_PATTERN.match(line_str.strip())
            if not match:
                continue

            flags = [f.strip() for f in match.group("flags").split() if f.strip()]
            lowered = {f.lower() for f in flags}
            raw_name = match.group("name").strip('"')
            delimiter = match.group("delimiter") or "/"

            folder = MailFolder(
                id=raw_name,
                name=raw_name.replace(delimiter, "/") if delimiter != "/" else raw_name,
                selectable=not ({"\\noselect", "\\nonexistent"} & lowered),
                is_sent="\\sent" in lowered,
                is_drafts="\\drafts" in lowered,
                flags=flags,
            )
            folders.append(folder)
            self._folders[folder.id] = folder

        logger.info(f"Enumerated {len(folders)} IMAP folders for {self.account.email_address}")
        return folders

    # ============== Search ==============

    async def _uid_search(self, criteria: str) -> List[str]:
        await self._ensure_session()
        response = await self._client.uid_search(criteria, charset=None)
        if response.result != "OK":
            raise QueryRejectedError(f"SEARCH {criteria} rejected: {response.lines}")
        return parse_search_response(response.lines)

    async def _fetch_uids_with_dates(self) -> List[Tuple[str, Optional[datetime]]]:
        response = await self._client.fetch("1:*", "(UID INTERNALDATE)")
        if response.result != "OK":
            raise TransportError(f"FETCH 1:* failed: {response.lines}")

        found = []
        for line in response.lines:
            if not isinstance(line, (bytes, bytearray)):
                continue
            uid_match = _UID_PATTERN.search(bytes(line))
            if not uid_match:
                continue
            date_match = _INTERNALDATE_PATTERN.search(bytes(line))
            found.append((
                uid_match.group(1).decode(),
                parse_internaldate(date_match.group(1)) if date_match else None,
            ))
        return found

    async def _search_since(
        self,
        mailbox: str,
        since: Optional[datetime],
        exists: int,
        ctx: CancellationContext,
    ) -> List[str]:
        if since is None:
            uids = await self._uid_search("ALL")
            if len(uids) < exists:
                logger.warning(
                    f"SEARCH ALL in {mailbox} returned {len(uids)} of {exists} messages, "
                    f"enumerating by sequence number"
                )
                await self._open_folder(mailbox, writable=False)
                uids = [uid for uid, _ in await self._fetch_uids_with_dates()]
            return uids

        search_date = imap_date(since)
        for criteria in (f"SINCE {search_date}", f"SENTSINCE {search_date}"):
            ctx.raise_if_cancelled()
            try:
                await self._open_folder(mailbox, writable=False)
                return await self._uid_search(criteria)
            except QueryRejectedError as e:
                logger.warning(f"{e}; trying a simpler search")

        ctx.raise_if_cancelled()
        await self._open_folder(mailbox, writable=False)
        return [
            uid for uid, internal_date in await self._fetch_uids_with_dates()
            if internal_date is None or internal_date >= since
        ]

    async def fetch_since(
        self,
        folder: MailFolder,
        since: Optional[datetime],
        ctx: CancellationContext,
    ) -> AsyncIterator[MessageRef]:
        exists = await self._open_folder(folder.id, writable=False)
        if exists == 0:
            logger.debug(f"Folder {folder.name} is empty")
            return

        uids = await self._search_since(folder.id, since, exists, ctx)
        logger.info(f"Found {len(uids)} messages to examine in {folder.name}")
        for uid in uids:
            yield MessageRef(folder_id=folder.id, remote_id=uid)

    async def fetch_before(
        self,
        folder: MailFolder,
        cutoff: datetime,
        ctx: CancellationContext,
    ) -> List[MessageRef]:
        await self._open_folder(folder.id, writable=False)
        try:
            uids = await self._uid_search(f"SENTBEFORE {imap_date(cutoff)}")
        except QueryRejectedError:
            await self._open_folder(folder.id, writable=False)
            uids = await self._uid_search(f"BEFORE {imap_date(cutoff)}")

        refs: List[MessageRef] = []
        for start in range(0, len(uids), HEADER_FETCH_CHUNK):
            ctx.raise_if_cancelled()
            chunk = uids[start:start + HEADER_FETCH_CHUNK]
            await self._open_folder(folder.id, writable=False)
            response = await self._client.uid("fetch", ",".join(chunk), ENVELOPE_FIELDS)
            if response.result != "OK":
                raise TransportError(f"Header fetch failed in {folder.name}: {response.lines}")

            for meta, literal in parse_literal_fetch(response.lines):
                uid_match = _UID_PATTERN.search(meta)
                if not uid_match:
                    continue
                refs.append(MessageRef(
                    folder_id=folder.id,
                    remote_id=uid_match.group(1).decode(),
                    envelope=parse_envelope(literal),
                ))
        return refs

    # ============== Messages ==============

    async def fetch_full(self, ref: MessageRef) -> RemoteMessage:
        await self._open_folder(ref.folder_id, writable=False)
        response = await self._client.uid("fetch", ref.remote_id, "(UID INTERNALDATE BODY.PEEK[])")
        if response.result != "OK":
            raise TransportError(f"FETCH of UID {ref.remote_id} failed: {response.lines}")

        pairs = parse_literal_fetch(response.lines)
        if not pairs:
            raise TransportError(f"Message UID {ref.remote_id} not found in {ref.folder_id}")

        meta, raw = pairs[0]
        date_match = _INTERNALDATE_PATTERN.search(meta)
        internal_date = parse_internaldate(date_match.group(1)) if date_match else None
        return parse_rfc822(raw, ref, received_date=internal_date)

    def list_attachments(self, message: RemoteMessage) -> List[EmailAttachment]:
        return self.harvester.harvest(message.root)

    async def append_message(
        self,
        folder: MailFolder,
        archived: ArchivedEmail,
        attachments: List[EmailAttachment],
    ):
        # Open the target read-write; also fails early when it does not exist
        await self._open_folder(folder.id, writable=True)
        raw = compose_mime(archived, attachments)
        response = await self._client.append(
            raw,
            mailbox=quote_mailbox(folder.id),
            flags="(\\Seen)",
            date=archived.sent_date.replace(tzinfo=timezone.utc),
        )
        if response.result != "OK":
            raise TransportError(f"APPEND to {folder.name} failed: {response.lines}")

    async def flag_for_deletion(self, folder: MailFolder, refs: List[MessageRef]) -> int:
        if not refs:
            return 0
        await self._open_folder(folder.id, writable=True)
        uid_set = ",".join(ref.remote_id for ref in refs)
        response = await self._client.uid("store", uid_set, "+FLAGS.SILENT", "(\\Deleted)")
        if response.result != "OK":
            raise TransportError(f"STORE \\Deleted in {folder.name} failed: {response.lines}")

        response = await self._client.expunge()
        if response.result != "OK":
            raise TransportError(f"EXPUNGE in {folder.name} failed: {response.lines}")

        logger.info(f"Deleted {len(refs)} messages from {folder.name}")
        return len(refs)

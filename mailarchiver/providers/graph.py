"""
Microsoft Graph Mail Transport

Stateless transport over the Microsoft Graph REST API using httpx.

Features:
- App-only OAuth (client credentials) per account tenant
- Recursive folder enumeration with well-known sent/drafts detection
- Paginated message listing following @odata.nextLink
- Query degradation when Graph rejects a filter as too complex
- Attachment download including attached messages (itemAttachment)
"""

import base64
import email
import email.policy
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from mailarchiver.core.cancellation import CancellationContext
from mailarchiver.models.archive import AccountProvider, ArchivedEmail, EmailAttachment, MailAccount
from mailarchiver.providers.base import (
    AuthenticationError,
    FolderNotFoundError,
    MailFolder,
    MessageEnvelope,
    MessageRef,
    QueryRejectedError,
    RateLimitError,
    RemoteMessage,
    TransportError,
)
from mailarchiver.providers.mime import (
    EPOCH,
    MimeEmbeddedMessage,
    MimeLeaf,
    MimeMultipart,
    MimeNode,
    build_part_tree,
    split_addresses,
    to_naive_utc,
)
from mailarchiver.providers.registry import register_transport
from mailarchiver.services.attachments import AttachmentHarvester

logger = logging.getLogger(__name__)


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_TIMEOUT_SECONDS = 60

PAGE_SIZE = 50
MAX_FOLDER_DEPTH = 20

FULL_SELECT = (
    "id,internetMessageId,subject,from,toRecipients,ccRecipients,bccRecipients,"
    "sentDateTime,receivedDateTime,hasAttachments,body,bodyPreview,lastModifiedDateTime"
)
REDUCED_SELECT = "id,internetMessageId,subject,from,sentDateTime,receivedDateTime,lastModifiedDateTime"
# Deletion pass envelopes need the recipients to rebuild fallback keys
ENVELOPE_SELECT = REDUCED_SELECT + ",toRecipients"

# MAPI PR_MESSAGE_FLAGS; 1 = MSGFLAG_READ, clears the draft flag on restored messages
PR_MESSAGE_FLAGS = "Integer 0x0E07"

QUERY_REJECTED_MARKERS = ("ErrorInvalidRestriction", "too complex", "InefficientFilter")


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def graph_filter_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def format_recipient(recipient: Optional[Dict[str, Any]]) -> str:
    """Bare address, the same form parse_rfc822 stores for IMAP and mbox."""
    address = (recipient or {}).get("emailAddress") or {}
    return (address.get("address") or "").strip()


def format_recipients(recipients: Optional[List[Dict[str, Any]]]) -> str:
    return ", ".join(filter(None, (format_recipient(r) for r in recipients or [])))


def recipient_payload(addresses: str) -> List[Dict[str, Any]]:
    return [{"emailAddress": {"address": addr}} for addr in split_addresses(addresses)]


def envelope_from_graph(data: Dict[str, Any]) -> MessageEnvelope:
    return MessageEnvelope(
        message_id=(data.get("internetMessageId") or "").strip(),
        subject=data.get("subject") or "",
        from_address=format_recipient(data.get("from")),
        to_addresses=format_recipients(data.get("toRecipients")),
        sent_date=(
            parse_graph_datetime(data.get("sentDateTime"))
            or parse_graph_datetime(data.get("receivedDateTime"))
            or EPOCH
        ),
    )


@register_transport(AccountProvider.GRAPH)
class GraphTransport:
    """
    Microsoft Graph implementation of MailTransport.

    Every call is independent; "reconnecting" means acquiring a new token.
    """

    def __init__(
        self,
        account: MailAccount,
        timeout: float = 300,
        client: Optional[httpx.AsyncClient] = None,
        harvester: Optional[AttachmentHarvester] = None,
    ):
        self.account = account
        self.timeout = timeout
        self.harvester = harvester or AttachmentHarvester()
        self._client = client
        self._owns_client = client is None
        self._access_token: Optional[str] = None

    @classmethod
    def from_settings(cls, account: MailAccount, settings) -> "GraphTransport":
        return cls(account, timeout=settings.command_timeout_seconds)

    @property
    def _user_url(self) -> str:
        return f"{GRAPH_BASE_URL}/users/{self.account.email_address}"

    # ============== Session ==============

    async def connect(self):
        """Acquire an app-only access token for the account's tenant."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

        account = self.account
        try:
            response = await self._client.post(
                TOKEN_URL.format(tenant=account.tenant_id or "common"),
                data={
                    "client_id": account.client_id,
                    "client_secret": account.client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
                timeout=TOKEN_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Token request failed: {e}")

        if response.status_code != 200:
            raise AuthenticationError(
                f"Could not obtain Graph token for {account.email_address}: "
                f"{response.status_code} - {response.text}"
            )

        self._access_token = response.json().get("access_token")
        if not self._access_token:
            raise AuthenticationError("Token response contained no access_token")
        logger.info(f"Acquired Graph token for {account.email_address}")

    async def reconnect(self):
        self._access_token = None
        await self.connect()

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._access_token = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send an authorized request and map Graph errors onto transport errors."""
        if self._access_token is None:
            await self.connect()

        for attempt in range(2):
            headers = {"Authorization": f"Bearer {self._access_token}"}
            try:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise TransportError(f"Graph {method} {url} failed: {e}")

            if response.status_code == 401 and attempt == 0:
                logger.info("Graph token rejected, acquiring a new one")
                await self.reconnect()
                continue
            break

        status = response.status_code
        if status < 400:
            return response

        if status == 401:
            raise AuthenticationError(f"Graph rejected credentials for {self.account.email_address}")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Graph API throttled the request",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status == 400 and any(marker in response.text for marker in QUERY_REJECTED_MARKERS):
            raise QueryRejectedError(f"Graph rejected the query: {response.text}")
        if status == 404:
            raise FolderNotFoundError(f"Graph resource not found: {url}")
        raise TransportError(f"Graph error: {status} - {response.text}")

    async def _get_pages(self, url: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[List[Dict[str, Any]]]:
        while url:
            response = await self._request("GET", url, params=params)
            data = response.json()
            yield data.get("value", [])
            # nextLink already carries the query
            url = data.get("@odata.nextLink")
            params = None

    # ============== Folders ==============

    async def _well_known_id(self, name: str) -> Optional[str]:
        try:
            response = await self._request("GET", f"{self._user_url}/mailFolders/{name}", params={"$select": "id"})
        except FolderNotFoundError:
            return None
        return response.json().get("id")

    async def list_folders(self) -> List[MailFolder]:
        """Enumerate all mail folders breadth first."""
        sent_id = await self._well_known_id("sentitems")
        drafts_id = await self._well_known_id("drafts")

        folders: List[MailFolder] = []
        queue: List[Tuple[Optional[str], str, int]] = [(None, "", 0)]  # (parent_id, parent_path, depth)

        while queue:
            parent_id, parent_path, depth = queue.pop(0)
            if parent_id:
                url = f"{self._user_url}/mailFolders/{parent_id}/childFolders"
            else:
                url = f"{self._user_url}/mailFolders"

            async for page in self._get_pages(url, params={"$top": 100}):
                for data in page:
                    folder_id = data.get("id", "")
                    name = data.get("displayName", "")
                    path = f"{parent_path}/{name}" if parent_path else name
                    folders.append(MailFolder(
                        id=folder_id,
                        name=path,
                        is_sent=folder_id == sent_id,
                        is_drafts=folder_id == drafts_id,
                        message_count=data.get("totalItemCount", 0),
                    ))
                    if data.get("childFolderCount", 0) > 0 and depth < MAX_FOLDER_DEPTH:
                        queue.append((folder_id, path, depth + 1))

        logger.info(f"Enumerated {len(folders)} Graph folders for {self.account.email_address}")
        return folders

    # ============== Search ==============

    def _query_ladder(self, since: Optional[datetime]) -> List[Tuple[Dict[str, Any], bool]]:
        """Queries to try in order; the flag marks client side date filtering."""
        if since is None:
            return [
                ({"$select": FULL_SELECT, "$top": PAGE_SIZE}, False),
                ({"$select": REDUCED_SELECT, "$top": PAGE_SIZE}, False),
            ]
        date_filter = f"lastModifiedDateTime ge {graph_filter_datetime(since)}"
        return [
            ({"$filter": date_filter, "$select": FULL_SELECT, "$top": PAGE_SIZE}, False),
            ({"$filter": date_filter, "$select": REDUCED_SELECT, "$top": PAGE_SIZE}, False),
            ({"$select": REDUCED_SELECT, "$top": PAGE_SIZE}, True),
        ]

    async def fetch_since(
        self,
        folder: MailFolder,
        since: Optional[datetime],
        ctx: CancellationContext,
    ) -> AsyncIterator[MessageRef]:
        url = f"{self._user_url}/mailFolders/{folder.id}/messages"
        ladder = self._query_ladder(since)

        for index, (params, filter_locally) in enumerate(ladder):
            yielded = 0
            try:
                async for page in self._get_pages(url, params=params):
                    ctx.raise_if_cancelled()
                    for data in page:
                        if filter_locally:
                            modified = parse_graph_datetime(data.get("lastModifiedDateTime"))
                            if modified is not None and modified < since:
                                continue
                        yielded += 1
                        yield MessageRef(
                            folder_id=folder.id,
                            remote_id=data["id"],
                            internal_date=parse_graph_datetime(data.get("receivedDateTime")),
                            envelope=envelope_from_graph(data),
                        )
                return
            except QueryRejectedError as e:
                # A rejection after results were handed out cannot be retried without duplicates
                if yielded or index == len(ladder) - 1:
                    raise
                logger.warning(f"{e}; retrying {folder.name} with a simpler query")

    async def fetch_before(
        self,
        folder: MailFolder,
        cutoff: datetime,
        ctx: CancellationContext,
    ) -> List[MessageRef]:
        url = f"{self._user_url}/mailFolders/{folder.id}/messages"
        params = {
            "$filter": f"sentDateTime lt {graph_filter_datetime(cutoff)}",
            "$select": ENVELOPE_SELECT,
            "$top": PAGE_SIZE,
        }
        refs: List[MessageRef] = []
        async for page in self._get_pages(url, params=params):
            ctx.raise_if_cancelled()
            for data in page:
                refs.append(MessageRef(
                    folder_id=folder.id,
                    remote_id=data["id"],
                    internal_date=parse_graph_datetime(data.get("receivedDateTime")),
                    envelope=envelope_from_graph(data),
                ))
        return refs

    # ============== Messages ==============

    async def fetch_full(self, ref: MessageRef) -> RemoteMessage:
        response = await self._request(
            "GET",
            f"{self._user_url}/messages/{ref.remote_id}",
            params={"$select": FULL_SELECT},
        )
        data = response.json()
        envelope = envelope_from_graph(data)

        body = data.get("body") or {}
        content = body.get("content") or ""
        is_html = (body.get("contentType") or "").lower() == "html"
        body_leaf = MimeLeaf(
            content_type="text/html" if is_html else "text/plain",
            payload=content.encode("utf-8"),
            charset="utf-8",
        )

        children: List[MimeNode] = [body_leaf]
        if data.get("hasAttachments"):
            children.extend(await self._attachment_nodes(ref.remote_id))

        return RemoteMessage(
            ref=ref,
            message_id=envelope.message_id,
            subject=envelope.subject,
            from_address=envelope.from_address,
            to_addresses=envelope.to_addresses,
            cc_addresses=format_recipients(data.get("ccRecipients")),
            bcc_addresses=format_recipients(data.get("bccRecipients")),
            sent_date=envelope.sent_date,
            received_date=parse_graph_datetime(data.get("receivedDateTime")) or envelope.sent_date,
            root=MimeMultipart(content_type="multipart/mixed", children=children),
            text_body="" if is_html else content,
            html_body=content if is_html else "",
        )

    async def _attachment_nodes(self, message_id: str) -> List[MimeNode]:
        url = f"{self._user_url}/messages/{message_id}/attachments"
        nodes: List[MimeNode] = []

        async for page in self._get_pages(url):
            for att in page:
                kind = att.get("@odata.type", "")
                disposition = "inline" if att.get("isInline") else "attachment"

                if kind.endswith("fileAttachment"):
                    nodes.append(MimeLeaf(
                        content_type=att.get("contentType") or "application/octet-stream",
                        payload=base64.b64decode(att.get("contentBytes") or ""),
                        disposition=disposition,
                        filename=att.get("name"),
                        content_id=att.get("contentId"),
                    ))
                elif kind.endswith("itemAttachment"):
                    nodes.append(await self._embedded_message(message_id, att, disposition))
                else:
                    logger.debug(f"Skipping unsupported attachment type {kind} on {message_id}")

        return nodes

    async def _embedded_message(self, message_id: str, att: Dict[str, Any], disposition: str) -> MimeEmbeddedMessage:
        response = await self._request(
            "GET",
            f"{self._user_url}/messages/{message_id}/attachments/{att['id']}/$value",
        )
        inner = email.message_from_bytes(response.content, policy=email.policy.compat32)
        return MimeEmbeddedMessage(
            body=build_part_tree(inner, depth=1),
            disposition=disposition,
            filename=att.get("name"),
            subject=inner.get("Subject", ""),
        )

    def list_attachments(self, message: RemoteMessage) -> List[EmailAttachment]:
        return self.harvester.harvest(message.root)

    async def append_message(
        self,
        folder: MailFolder,
        archived: ArchivedEmail,
        attachments: List[EmailAttachment],
    ):
        html = archived.original_body_html or archived.html_body
        text = archived.original_body_text or archived.body
        payload = {
            "subject": archived.subject,
            "body": {
                "contentType": "HTML" if html else "Text",
                "content": html or text or "",
            },
            "from": {"emailAddress": {"address": archived.from_address}},
            "toRecipients": recipient_payload(archived.to_addresses),
            "ccRecipients": recipient_payload(archived.cc_addresses),
            "bccRecipients": recipient_payload(archived.bcc_addresses),
            "sentDateTime": archived.sent_date.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "receivedDateTime": archived.received_date.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "singleValueExtendedProperties": [
                {"id": PR_MESSAGE_FLAGS, "value": "1"},
            ],
        }
        if archived.message_id:
            payload["internetMessageId"] = archived.message_id

        response = await self._request("POST", f"{self._user_url}/mailFolders/{folder.id}/messages", json=payload)
        created_id = response.json().get("id")

        for attachment in attachments:
            await self._request(
                "POST",
                f"{self._user_url}/messages/{created_id}/attachments",
                json={
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.file_name,
                    "contentType": attachment.content_type,
                    "contentBytes": base64.b64encode(attachment.content).decode("ascii"),
                    "contentId": attachment.content_id,
                    "isInline": bool(attachment.content_id),
                },
            )

        logger.debug(f"Restored '{archived.subject}' to {folder.name} with {len(attachments)} attachments")

    async def flag_for_deletion(self, folder: MailFolder, refs: List[MessageRef]) -> int:
        deleted = 0
        for ref in refs:
            try:
                await self._request("DELETE", f"{self._user_url}/messages/{ref.remote_id}")
                deleted += 1
            except FolderNotFoundError:
                logger.debug(f"Message {ref.remote_id} already gone from {folder.name}")
        if deleted:
            logger.info(f"Deleted {deleted} messages from {folder.name}")
        return deleted

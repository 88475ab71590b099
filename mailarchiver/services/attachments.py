"""
Attachment harvesting.

Walks a MIME part tree and picks out the binary parts worth storing:
regular attachments, inline images and content-id referenced parts,
including those buried inside forwarded (embedded) messages.
"""

import logging
import re
import uuid
from typing import List, Optional, Set

from mailarchiver.models.archive import EmailAttachment
from mailarchiver.providers.mime import (
    MimeEmbeddedMessage,
    MimeLeaf,
    MimeMultipart,
    MimeNode,
)

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/tiff": ".tiff",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "text/html": ".html",
    "text/plain": ".txt",
    "text/css": ".css",
    "text/calendar": ".ics",
    "application/pdf": ".pdf",
    "application/zip": ".zip",
    "application/json": ".json",
    "application/xml": ".xml",
    "text/xml": ".xml",
    "message/rfc822": ".eml",
}

DEFAULT_EXTENSION = ".dat"

# Names mail clients generate for pasted or embedded images
GENERIC_FILENAME_PATTERN = re.compile(
    r"^(image|img|picture|pic|attachment|att|noname|unnamed|untitled|inline)[-_ ]?\d*(\.[a-z0-9]+)?$",
    re.IGNORECASE,
)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def extension_for(content_type: str) -> str:
    return CONTENT_TYPE_EXTENSIONS.get(content_type.lower(), DEFAULT_EXTENSION)


def is_generic_filename(filename: Optional[str]) -> bool:
    if not filename:
        return False
    return bool(GENERIC_FILENAME_PATTERN.match(filename.strip()))


def is_harvestable(leaf: MimeLeaf) -> bool:
    """Decide whether a leaf part is kept as an attachment."""
    if leaf.disposition == "attachment":
        return True
    if leaf.disposition == "inline":
        return True
    if leaf.content_id:
        return True
    if leaf.maintype == "image":
        if leaf.disposition is None:
            return True
        if is_generic_filename(leaf.filename):
            return True
    return False


class AttachmentHarvester:
    """Collects attachment parts from a message tree."""

    def collect(self, root: MimeNode) -> List[MimeLeaf]:
        """
        Return harvestable leaf parts in document order.

        Uses an explicit stack so that deeply nested forwards cannot
        exhaust the interpreter stack.
        """
        found: List[MimeLeaf] = []
        stack: List[MimeNode] = [root]

        while stack:
            node = stack.pop()
            if isinstance(node, MimeMultipart):
                stack.extend(reversed(node.children))
            elif isinstance(node, MimeEmbeddedMessage):
                stack.append(node.body)
            elif isinstance(node, MimeLeaf) and is_harvestable(node):
                found.append(node)

        return found

    def harvest(self, root: MimeNode) -> List[EmailAttachment]:
        """Collect parts and turn them into named attachment records."""
        attachments: List[EmailAttachment] = []
        used_names: Set[str] = set()

        for leaf in self.collect(root):
            file_name = self._unique_name(self._file_name_for(leaf), used_names)
            used_names.add(file_name.lower())
            attachments.append(
                EmailAttachment(
                    file_name=file_name,
                    content_type=leaf.content_type.lower() or "application/octet-stream",
                    content=leaf.payload,
                    content_id=leaf.content_id,
                )
            )

        if attachments:
            logger.debug(f"Harvested {len(attachments)} attachments")
        return attachments

    def _file_name_for(self, leaf: MimeLeaf) -> str:
        if leaf.filename and leaf.filename.strip():
            return leaf.filename.strip()

        extension = extension_for(leaf.content_type)
        if leaf.content_id:
            cid = _UNSAFE_NAME_CHARS.sub("_", leaf.content_id).strip("_")
            if cid:
                return f"inline_{cid}{extension}"
        if leaf.maintype == "image":
            return f"inline_image_{uuid.uuid4().hex[:8]}{extension}"
        return f"attachment_{uuid.uuid4().hex[:8]}{extension}"

    @staticmethod
    def _unique_name(name: str, used: Set[str]) -> str:
        if name.lower() not in used:
            return name

        stem, dot, extension = name.rpartition(".")
        if not dot:
            stem, extension = name, ""
        counter = 1
        while True:
            candidate = f"{stem}_{counter}.{extension}" if extension else f"{stem}_{counter}"
            if candidate.lower() not in used:
                return candidate
            counter += 1

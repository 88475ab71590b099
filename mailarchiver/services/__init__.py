"""Mail archive services module."""

from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.attachments import AttachmentHarvester
from mailarchiver.services.dedup import DedupIndex, DedupPolicy
from mailarchiver.services.sanitizer import ContentSanitizer
from mailarchiver.services.store import MongoArchiveStore

__all__ = [
    "ArchiveWriter",
    "AttachmentHarvester",
    "ContentSanitizer",
    "DedupIndex",
    "DedupPolicy",
    "MongoArchiveStore",
]

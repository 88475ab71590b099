"""
Duplicate detection for archived messages.

Every archived email carries a dedup key: the provider's Message-ID when
there is one, otherwise a hash over the envelope. A message is a duplicate
when its key is already archived for the account, or when the heuristic
policy finds an archived email with the same envelope fields and a sent
date within the tolerance window. The heuristic absorbs providers that
hand out a different identifier for the same message on import and on
live sync.
"""

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Optional, Tuple

from mailarchiver.models.archive import ArchivedEmail
from mailarchiver.providers.base import MessageEnvelope
from mailarchiver.providers.mime import split_addresses, strip_angle_brackets
from mailarchiver.services.sanitizer import clean_text
from mailarchiver.services.store import ArchiveStore

logger = logging.getLogger(__name__)

FALLBACK_KEY_PREFIX = "hash:"

# .NET style ticks: 100ns intervals since 0001-01-01
_TICKS_ORIGIN = datetime(1, 1, 1)


@dataclass
class DedupPolicy:
    """Tunable heuristic used when identifiers cannot be trusted."""
    time_tolerance: timedelta = timedelta(seconds=2)
    fields: Tuple[str, ...] = ("from_address", "to_addresses", "subject")
    apply_to_identified: bool = True  # Also check messages that carry a Message-ID

    @classmethod
    def from_settings(cls, settings) -> "DedupPolicy":
        return cls(
            time_tolerance=timedelta(seconds=settings.dedup_time_tolerance_seconds),
            apply_to_identified=settings.dedup_heuristic_for_identified,
        )


@dataclass
class DedupResolution:
    """Outcome of resolving a message against the archive."""
    key: str
    is_duplicate: bool
    existing: Optional[ArchivedEmail] = None
    matched_by: Optional[str] = None  # "key" or "heuristic"


def datetime_ticks(value: datetime) -> int:
    delta = value - _TICKS_ORIGIN
    return (delta.days * 86_400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def normalize_message_id(message_id: Optional[str]) -> str:
    return strip_angle_brackets(message_id)


def normalize_address_list(value: Optional[str]) -> str:
    return ",".join(sorted(addr.strip().lower() for addr in split_addresses(value)))


def fallback_key(envelope: MessageEnvelope) -> str:
    """Deterministic key for messages without a provider identifier."""
    material = "\x1f".join([
        normalize_address_list(envelope.from_address),
        normalize_address_list(envelope.to_addresses),
        (envelope.subject or "").strip(),
        str(datetime_ticks(envelope.sent_date)),
    ])
    return FALLBACK_KEY_PREFIX + hashlib.sha256(material.encode("utf-8")).hexdigest()


def dedup_key_for(envelope: MessageEnvelope) -> str:
    message_id = normalize_message_id(envelope.message_id)
    return message_id or fallback_key(envelope)


class DedupIndex:
    """Resolves remote messages to archive identities."""

    def __init__(self, store: ArchiveStore, policy: Optional[DedupPolicy] = None):
        self.store = store
        self.policy = policy or DedupPolicy()
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def account_lock(self, account_id: str) -> AsyncIterator[None]:
        """Serialize resolve-then-insert sequences for one account."""
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            yield

    def key_for(self, envelope: MessageEnvelope) -> str:
        return dedup_key_for(envelope)

    def _heuristic_fields(self, envelope: MessageEnvelope) -> Dict[str, str]:
        return {name: clean_text(getattr(envelope, name) or "") for name in self.policy.fields}

    async def resolve(self, account_id: str, envelope: MessageEnvelope) -> DedupResolution:
        key = self.key_for(envelope)

        existing = await self.store.find_by_dedup_key(account_id, key)
        if existing:
            return DedupResolution(key=key, is_duplicate=True, existing=existing, matched_by="key")

        has_identifier = not key.startswith(FALLBACK_KEY_PREFIX)
        if has_identifier and not self.policy.apply_to_identified:
            return DedupResolution(key=key, is_duplicate=False)

        tolerance = self.policy.time_tolerance
        existing = await self.store.find_similar(
            account_id,
            self._heuristic_fields(envelope),
            envelope.sent_date - tolerance,
            envelope.sent_date + tolerance,
        )
        if existing:
            logger.debug(
                f"Heuristic duplicate for account {account_id}: "
                f"'{envelope.subject}' matches archived email {existing.id}"
            )
            return DedupResolution(key=key, is_duplicate=True, existing=existing, matched_by="heuristic")

        return DedupResolution(key=key, is_duplicate=False)

    async def is_archived(self, account_id: str, envelope: MessageEnvelope) -> bool:
        """True when an archived copy exists; used before remote deletion."""
        keys = [self.key_for(envelope)]
        raw_id = (envelope.message_id or "").strip()
        if raw_id and raw_id not in keys:
            keys.append(raw_id)
        return await self.store.exists(account_id, keys)

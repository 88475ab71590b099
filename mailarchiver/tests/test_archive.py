"""Unit tests for ArchiveWriter."""

from unittest.mock import AsyncMock

import pytest

from conftest import make_message
from mailarchiver.models.archive import EmailAttachment
from mailarchiver.providers.base import MailFolder
from mailarchiver.providers.mime import MimeLeaf
from mailarchiver.services.archive import ArchiveOutcome, ArchiveWriter, is_outgoing_message
from mailarchiver.services.dedup import DedupIndex
from mailarchiver.services.sanitizer import ContentLimits, ContentSanitizer
from mailarchiver.services.store import DuplicateMessageError

INBOX = MailFolder(id="INBOX", name="INBOX")
SENT = MailFolder(id="Sent", name="Sent", is_sent=True)
DRAFTS = MailFolder(id="Drafts", name="Drafts", is_drafts=True)


class TestArchiveWriter:
    """Tests for archiving single messages."""

    @pytest.mark.asyncio
    async def test_creates_record(self, writer, store, account):
        result = await writer.archive(account, make_message("1"), INBOX)

        assert result.outcome == ArchiveOutcome.CREATED
        assert result.dedup_key == "1@example.com"
        email = store.emails[result.email_id]
        assert email.account_id == account.id
        assert email.message_id == "<1@example.com>"
        assert email.folder_name == "INBOX"
        assert email.body == "Hello Bob"
        assert email.is_outgoing is False
        assert email.has_attachments is False
        assert email.archived_at is not None

    @pytest.mark.asyncio
    async def test_second_archive_is_duplicate(self, writer, store, account):
        await writer.archive(account, make_message("1"), INBOX)
        result = await writer.archive(account, make_message("1"), INBOX)

        assert result.outcome == ArchiveOutcome.DUPLICATE
        assert len(store.emails) == 1

    @pytest.mark.asyncio
    async def test_folder_move_updates_record(self, writer, store, account):
        first = await writer.archive(account, make_message("1"), INBOX)
        projects = MailFolder(id="INBOX/Projects", name="INBOX/Projects")

        result = await writer.archive(account, make_message("1", folder_id="INBOX/Projects"), projects)

        assert result.outcome == ArchiveOutcome.MOVED
        assert result.email_id == first.email_id
        assert store.emails[first.email_id].folder_name == "INBOX/Projects"
        assert len(store.emails) == 1

    @pytest.mark.asyncio
    async def test_attachments_harvested_when_not_given(self, writer, store, account):
        pdf = MimeLeaf("application/pdf", b"%PDF", disposition="attachment", filename="a.pdf")
        result = await writer.archive(account, make_message("1", extra_parts=[pdf]), INBOX)

        assert store.emails[result.email_id].has_attachments is True
        assert [a.file_name for a in store.attachments[result.email_id]] == ["a.pdf"]

    @pytest.mark.asyncio
    async def test_explicit_attachments_used(self, writer, store, account):
        attachment = EmailAttachment(file_name="given.txt", content_type="text/plain", content=b"x")
        result = await writer.archive(account, make_message("1"), INBOX, [attachment])

        assert [a.file_name for a in store.attachments[result.email_id]] == ["given.txt"]

    @pytest.mark.asyncio
    async def test_outgoing_by_sender(self, writer, store, account):
        message = make_message("1", from_address="bob@example.com", to_addresses="alice@example.com")
        result = await writer.archive(account, message, INBOX)
        assert store.emails[result.email_id].is_outgoing is True

    @pytest.mark.asyncio
    async def test_outgoing_by_folder(self, writer, store, account):
        result = await writer.archive(account, make_message("1", folder_id="Sent"), SENT)
        assert store.emails[result.email_id].is_outgoing is True

    @pytest.mark.asyncio
    async def test_drafts_never_outgoing(self, writer, store, account):
        message = make_message("1", folder_id="Drafts", from_address="bob@example.com")
        result = await writer.archive(account, message, DRAFTS)
        assert store.emails[result.email_id].is_outgoing is False

    @pytest.mark.asyncio
    async def test_large_body_truncated_with_original(self, store, account):
        sanitizer = ContentSanitizer(ContentLimits(body_text=1000))
        writer = ArchiveWriter(store, DedupIndex(store), sanitizer=sanitizer)
        text = "long body " * 500

        result = await writer.archive(account, make_message("1", text=text), INBOX)

        email = store.emails[result.email_id]
        assert email.body_truncated is True
        assert len(email.body.encode("utf-8")) <= 1000
        assert email.original_body_text == text

    @pytest.mark.asyncio
    async def test_concurrent_insert_treated_as_duplicate(self, writer, store, account):
        """A unique index violation from the store means another writer won."""
        store.insert_email = AsyncMock(side_effect=DuplicateMessageError(account.id, "1@example.com"))

        result = await writer.archive(account, make_message("1"), INBOX)

        assert result.outcome == ArchiveOutcome.DUPLICATE
        assert result.created is False

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, writer, store, account):
        store.fail_attachment_insert = True
        pdf = MimeLeaf("application/pdf", b"%PDF", disposition="attachment", filename="a.pdf")

        with pytest.raises(RuntimeError):
            await writer.archive(account, make_message("1", extra_parts=[pdf]), INBOX)
        assert store.emails == {}


class TestIsOutgoingMessage:
    """Tests for direction classification."""

    def test_sender_match_is_case_insensitive(self, account):
        assert is_outgoing_message(account, "Bob <BOB@example.com>", INBOX) is True

    def test_other_sender_in_inbox(self, account):
        assert is_outgoing_message(account, "alice@example.com", INBOX) is False

    def test_drafts_folder_by_name(self, account):
        folder = MailFolder(id="Entwürfe", name="Entwürfe")
        assert is_outgoing_message(account, "bob@example.com", folder) is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

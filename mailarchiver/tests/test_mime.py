"""
Unit tests for MIME parsing helpers.

Covers the sent date fallback chain, header decoding, body extraction
and rebuilding a message for APPEND.
"""

import email
from datetime import datetime

import pytest

from conftest import T0
from mailarchiver.models.archive import ArchivedEmail, EmailAttachment
from mailarchiver.providers.base import MailFolder, MessageRef, parse_envelope, parse_rfc822
from mailarchiver.providers.mime import (
    EPOCH,
    MimeEmbeddedMessage,
    MimeLeaf,
    MimeMultipart,
    compose_mime,
    decode_header_value,
    extract_bodies,
    extract_message_date,
    format_addresses,
)
from mailarchiver.services.attachments import AttachmentHarvester


def headers(text: str):
    return email.message_from_string(text.strip() + "\n\nbody\n")


class TestExtractMessageDate:
    """Tests for the sent date fallback chain."""

    def test_date_header(self):
        msg = headers("Date: Fri, 01 Mar 2024 12:00:00 +0000")
        assert extract_message_date(msg) == T0

    def test_date_converted_to_utc(self):
        msg = headers("Date: Fri, 01 Mar 2024 14:00:00 +0200")
        assert extract_message_date(msg) == T0

    def test_falls_back_to_last_received(self):
        msg = headers(
            "Received: from relay.example.com by mx.example.com; Sat, 02 Mar 2024 08:00:00 +0000\n"
            "Received: from client.example.com by relay.example.com; Fri, 01 Mar 2024 12:00:00 +0000"
        )
        assert extract_message_date(msg) == T0

    def test_invalid_date_falls_back(self):
        msg = headers(
            "Date: not a date\n"
            "Received: from a by b; Fri, 01 Mar 2024 12:00:00 +0000"
        )
        assert extract_message_date(msg) == T0

    def test_falls_back_to_resent_date(self):
        msg = headers("Resent-Date: Fri, 01 Mar 2024 12:00:00 +0000")
        assert extract_message_date(msg) == T0

    def test_epoch_when_nothing_usable(self):
        msg = headers("Subject: no dates here")
        assert extract_message_date(msg) == EPOCH == datetime(1970, 1, 1)


class TestHeaderHelpers:
    """Tests for header decoding."""

    def test_decode_encoded_word(self):
        assert decode_header_value("=?utf-8?q?Gr=C3=BC=C3=9Fe?=") == "Grüße"

    def test_decode_plain(self):
        assert decode_header_value("Hello") == "Hello"
        assert decode_header_value(None) == ""

    def test_format_addresses(self):
        value = '"Alice Example" <alice@example.com>, bob@example.com'
        assert format_addresses(value) == "alice@example.com, bob@example.com"


class TestExtractBodies:
    """Tests for body extraction."""

    def test_alternative_parts(self):
        root = MimeMultipart("multipart/alternative", [
            MimeLeaf("text/plain", b"plain", charset="utf-8"),
            MimeLeaf("text/html", b"<p>html</p>", charset="utf-8"),
        ])
        assert extract_bodies(root) == ("plain", "<p>html</p>")

    def test_embedded_message_body_not_used(self):
        """A forwarded message's text is not the outer message's body."""
        root = MimeMultipart("multipart/mixed", [
            MimeLeaf("text/html", b"<p>outer</p>"),
            MimeEmbeddedMessage(body=MimeLeaf("text/plain", b"inner text")),
        ])
        assert extract_bodies(root) == ("", "<p>outer</p>")

    def test_text_attachment_not_used(self):
        root = MimeMultipart("multipart/mixed", [
            MimeLeaf("text/plain", b"notes", disposition="attachment", filename="notes.txt"),
        ])
        assert extract_bodies(root) == ("", "")


class TestParseRfc822:
    """Tests for parsing raw messages."""

    RAW = (
        b"Message-ID: <abc@example.com>\r\n"
        b"Subject: =?utf-8?q?Caf=C3=A9?=\r\n"
        b"From: Alice <alice@example.com>\r\n"
        b"To: bob@example.com\r\n"
        b"Date: Fri, 01 Mar 2024 12:00:00 +0000\r\n"
        b"MIME-Version: 1.0\r\n"
        b"Content-Type: multipart/mixed; boundary=\"b1\"\r\n"
        b"\r\n"
        b"--b1\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"\r\n"
        b"Hello Bob\r\n"
        b"--b1\r\n"
        b"Content-Type: application/pdf; name=\"report.pdf\"\r\n"
        b"Content-Disposition: attachment; filename=\"report.pdf\"\r\n"
        b"Content-Transfer-Encoding: base64\r\n"
        b"\r\n"
        b"JVBERi0xLjQ=\r\n"
        b"--b1--\r\n"
    )

    def test_parses_envelope_and_bodies(self):
        ref = MessageRef(folder_id="INBOX", remote_id="7")
        message = parse_rfc822(self.RAW, ref)

        assert message.message_id == "<abc@example.com>"
        assert message.subject == "Café"
        assert message.from_address == "alice@example.com"
        assert message.to_addresses == "bob@example.com"
        assert message.sent_date == T0
        assert message.received_date == T0
        assert message.text_body.strip() == "Hello Bob"
        assert "Message-ID: <abc@example.com>" in message.raw_headers

    def test_attachments_in_tree(self):
        message = parse_rfc822(self.RAW, MessageRef(folder_id="INBOX", remote_id="7"))
        attachments = AttachmentHarvester().harvest(message.root)

        assert [a.file_name for a in attachments] == ["report.pdf"]
        assert attachments[0].content == b"%PDF-1.4"

    def test_received_date_prefers_internal_date(self):
        internal = datetime(2024, 3, 2, 9, 30)
        ref = MessageRef(folder_id="INBOX", remote_id="7", internal_date=internal)
        assert parse_rfc822(self.RAW, ref).received_date == internal

    def test_message_without_headers_rejected(self):
        with pytest.raises(ValueError):
            parse_rfc822(b"", MessageRef(folder_id="INBOX", remote_id="1"))

    def test_parse_envelope(self):
        envelope = parse_envelope(self.RAW.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n")

        assert envelope.message_id == "<abc@example.com>"
        assert envelope.subject == "Café"
        assert envelope.sent_date == T0


class TestComposeMime:
    """Tests for rebuilding archived messages."""

    def _archived(self, **overrides) -> ArchivedEmail:
        values = dict(
            account_id="acc-1",
            dedup_key="abc@example.com",
            message_id="abc@example.com",
            subject="Quarterly numbers",
            from_address="alice@example.com",
            to_addresses="bob@example.com",
            sent_date=T0,
            received_date=T0,
            folder_name="INBOX",
            body="Truncated",
            html_body="<p>Truncated</p>",
            original_body_text="Full text body",
            body_truncated=True,
        )
        values.update(overrides)
        return ArchivedEmail(**values)

    def test_rebuilt_message_parses_back(self):
        attachments = [
            EmailAttachment(file_name="report.pdf", content_type="application/pdf", content=b"%PDF"),
            EmailAttachment(file_name="logo.png", content_type="image/png", content=b"png", content_id="logo"),
        ]
        raw = compose_mime(self._archived(), attachments)
        message = parse_rfc822(raw, MessageRef(folder_id="INBOX", remote_id="new"))

        assert message.message_id == "<abc@example.com>"
        assert message.subject == "Quarterly numbers"
        assert message.sent_date == T0
        assert message.text_body.strip() == "Full text body"
        assert message.html_body.strip() == "<p>Truncated</p>"

        harvested = AttachmentHarvester().harvest(message.root)
        assert [a.file_name for a in harvested] == ["report.pdf", "logo.png"]
        assert harvested[1].content_id == "logo"

    def test_multiline_subject_flattened(self):
        raw = compose_mime(self._archived(subject="Line one\nLine two", html_body=None), [])
        message = parse_rfc822(raw, MessageRef(folder_id="INBOX", remote_id="new"))
        assert message.subject == "Line one Line two"


class TestFolderDirection:
    """Tests for outgoing folder classification."""

    def test_sent_folder_names(self):
        assert MailFolder(id="1", name="Sent Items").is_outgoing is True
        assert MailFolder(id="2", name="INBOX/Gesendete Elemente").is_outgoing is True
        assert MailFolder(id="3", name="INBOX").is_outgoing is False

    def test_server_sent_flag(self):
        assert MailFolder(id="4", name="Archive", is_sent=True).is_outgoing is True

    def test_drafts_never_outgoing(self):
        assert MailFolder(id="5", name="Drafts", is_sent=True).is_outgoing is False
        assert MailFolder(id="6", name="Sent", is_drafts=True).is_outgoing is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

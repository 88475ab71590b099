"""Unit tests for AttachmentHarvester."""

import pytest

from mailarchiver.providers.mime import MimeEmbeddedMessage, MimeLeaf, MimeMultipart, extract_bodies
from mailarchiver.services.attachments import AttachmentHarvester, is_harvestable


def text_leaf(content_type="text/plain", body="Hello"):
    return MimeLeaf(content_type=content_type, payload=body.encode(), charset="utf-8")


class TestIsHarvestable:
    """Tests for the attachment decision."""

    def test_body_parts_are_skipped(self):
        assert is_harvestable(text_leaf()) is False
        assert is_harvestable(text_leaf("text/html", "<p>Hi</p>")) is False

    def test_attachment_disposition(self):
        leaf = MimeLeaf(content_type="application/pdf", payload=b"%PDF", disposition="attachment", filename="a.pdf")
        assert is_harvestable(leaf) is True

    def test_text_file_attachment(self):
        leaf = MimeLeaf(content_type="text/plain", payload=b"notes", disposition="attachment", filename="notes.txt")
        assert is_harvestable(leaf) is True

    def test_inline_image_with_content_id(self):
        leaf = MimeLeaf(content_type="image/png", payload=b"\x89PNG", disposition="inline", content_id="logo@x")
        assert is_harvestable(leaf) is True

    def test_image_without_disposition(self):
        assert is_harvestable(MimeLeaf(content_type="image/jpeg", payload=b"\xff\xd8")) is True

    def test_any_inline_part(self):
        """Inline disposition alone is enough, even for text parts."""
        assert is_harvestable(MimeLeaf("text/plain", b"Hello", disposition="inline")) is True
        assert is_harvestable(MimeLeaf("application/octet-stream", b"\x00", disposition="inline")) is True

    def test_inline_text_part_harvested_and_kept_as_body(self):
        root = MimeMultipart("multipart/mixed", [
            MimeLeaf("text/plain", b"Hello Bob", charset="utf-8", disposition="inline"),
        ])

        attachments = AttachmentHarvester().harvest(root)

        assert len(attachments) == 1
        assert attachments[0].file_name.startswith("attachment_")
        assert attachments[0].file_name.endswith(".txt")
        assert extract_bodies(root) == ("Hello Bob", "")


class TestAttachmentHarvester:
    """Tests for collecting and naming attachments."""

    def test_flat_message(self):
        root = MimeMultipart("multipart/mixed", [
            text_leaf(),
            MimeLeaf("application/pdf", b"%PDF-1.4", disposition="attachment", filename="report.pdf"),
        ])

        attachments = AttachmentHarvester().harvest(root)

        assert [a.file_name for a in attachments] == ["report.pdf"]
        assert attachments[0].content == b"%PDF-1.4"
        assert attachments[0].size == 8

    def test_nested_multiparts_in_document_order(self):
        root = MimeMultipart("multipart/mixed", [
            MimeMultipart("multipart/related", [
                MimeMultipart("multipart/alternative", [text_leaf(), text_leaf("text/html", "<img src=cid:logo>")]),
                MimeLeaf("image/png", b"png", disposition="inline", content_id="logo"),
            ]),
            MimeLeaf("application/zip", b"zip", disposition="attachment", filename="files.zip"),
        ])

        names = [a.file_name for a in AttachmentHarvester().harvest(root)]

        assert names == ["inline_logo.png", "files.zip"]

    def test_recurses_into_embedded_messages(self):
        """Attachments of a forwarded message are harvested too."""
        forwarded = MimeEmbeddedMessage(
            body=MimeMultipart("multipart/mixed", [
                text_leaf(),
                MimeLeaf("application/pdf", b"inner", disposition="attachment", filename="inner.pdf"),
            ]),
            disposition="attachment",
            subject="Fwd: contract",
        )
        root = MimeMultipart("multipart/mixed", [text_leaf(), forwarded])

        attachments = AttachmentHarvester().harvest(root)

        assert [a.file_name for a in attachments] == ["inner.pdf"]

    def test_deep_nesting(self):
        node = MimeLeaf("application/octet-stream", b"deep", disposition="attachment", filename="deep.bin")
        for _ in range(500):
            node = MimeEmbeddedMessage(body=MimeMultipart("multipart/mixed", [node]))

        assert len(AttachmentHarvester().collect(node)) == 1

    def test_synthesized_names(self):
        root = MimeMultipart("multipart/mixed", [
            MimeLeaf("image/gif", b"gif"),
            MimeLeaf("application/x-unknown", b"??", disposition="attachment"),
        ])

        names = [a.file_name for a in AttachmentHarvester().harvest(root)]

        assert names[0].startswith("inline_image_") and names[0].endswith(".gif")
        assert names[1].startswith("attachment_") and names[1].endswith(".dat")

    def test_duplicate_names_made_unique(self):
        root = MimeMultipart("multipart/mixed", [
            MimeLeaf("text/csv", b"1", disposition="attachment", filename="data.csv"),
            MimeLeaf("text/csv", b"2", disposition="attachment", filename="data.csv"),
            MimeLeaf("text/csv", b"3", disposition="attachment", filename="DATA.csv"),
        ])

        names = [a.file_name for a in AttachmentHarvester().harvest(root)]

        assert names == ["data.csv", "data_1.csv", "DATA_2.csv"]

    def test_no_attachments(self):
        root = MimeMultipart("multipart/alternative", [text_leaf(), text_leaf("text/html", "<p>x</p>")])
        assert AttachmentHarvester().harvest(root) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

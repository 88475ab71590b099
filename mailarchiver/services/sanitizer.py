"""
Content sanitization for indexed storage.

Full-text indexes reject oversized records, so every indexed text field of
an archived email is bounded. Truncation cuts at safe boundaries (never
inside a UTF-8 sequence or an HTML tag), appends a visible notice and is
never destructive: callers keep the untruncated original elsewhere.

Content at or below its ceiling passes through unchanged, and truncated
output always fits its ceiling, so sanitizing twice is the same as
sanitizing once.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

TEXT_TRUNCATION_NOTICE = (
    "\n\n[CONTENT TRUNCATED - This message exceeded the maximum size for indexing. "
    "The full original content has been saved separately.]"
)

HTML_TRUNCATION_NOTICE = (
    '<div style="margin-top:20px;padding:10px;border:1px solid #ccc;background:#f8f8f8;">'
    "<strong>[CONTENT TRUNCATED]</strong> This message exceeded the maximum size for indexing. "
    "The full original content has been saved separately.</div>"
)

BODY_TOO_LARGE = "[Body too large - saved as attachment]"

HTML_OPEN = "<html>"
BODY_OPEN = "<body>"
HTML_CLOSE = "</body></html>"

# Characters after which plain text may be cut
_BREAK_CHARS = (" ", "\n", ".", "!", "?", ";")
_BREAK_WINDOW = 100

_CONTROL_CHARS = re.compile(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]")
_CLOSING_WRAPPERS = re.compile(r"</\s*(body|html)\s*>", re.IGNORECASE)
_HTML_OPEN_TAG = re.compile(r"<html[\s>]", re.IGNORECASE)
_BODY_OPEN_TAG = re.compile(r"<body[\s>]", re.IGNORECASE)


@dataclass
class ContentLimits:
    """Byte ceilings for the indexed fields of one archived record."""
    body_text: int = 500 * 1024
    body_html: int = 1_000_000
    subject: int = 50 * 1024
    from_address: int = 10 * 1024
    recipients: int = 50 * 1024  # Each of to, cc and bcc
    record: int = 900_000  # Aggregate of every indexed field
    record_buffer: int = 10 * 1024

    @classmethod
    def from_settings(cls, settings) -> "ContentLimits":
        return cls(
            body_text=settings.max_body_text_bytes,
            body_html=settings.max_body_html_bytes,
            record=settings.max_record_bytes,
            record_buffer=settings.record_buffer_bytes,
        )

    @property
    def record_budget(self) -> int:
        return self.record - self.record_buffer


def byte_length(value: Optional[str]) -> int:
    if not value:
        return 0
    return len(value.encode("utf-8"))


def clean_text(value: Optional[str]) -> str:
    """Drop NUL characters and replace other control characters with spaces."""
    if not value:
        return ""
    value = value.replace("\x00", "")
    return _CONTROL_CHARS.sub(" ", value)


def _cut_utf8(value: str, max_bytes: int) -> str:
    """Longest prefix whose UTF-8 encoding fits in max_bytes."""
    if max_bytes <= 0:
        return ""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    # A partial trailing sequence is dropped by ignore
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def _cut_at_break(value: str) -> str:
    window_start = max(0, len(value) - _BREAK_WINDOW)
    best = -1
    for char in _BREAK_CHARS:
        position = value.rfind(char, window_start)
        if position > best:
            best = position
    if best < 0:
        return value
    return value[:best + 1].rstrip(" ")


def sanitize_text(text: Optional[str], max_bytes: int) -> Tuple[str, bool]:
    """
    Bound plain text to max_bytes.

    Returns the stored text and whether it was truncated.
    """
    if not text:
        return "", False
    if byte_length(text) <= max_bytes:
        return text, False

    notice_bytes = byte_length(TEXT_TRUNCATION_NOTICE)
    if max_bytes <= notice_bytes:
        return _cut_utf8(text, max_bytes), True

    kept = _cut_at_break(_cut_utf8(text, max_bytes - notice_bytes))
    return kept + TEXT_TRUNCATION_NOTICE, True


def _cut_html_at_tag(html: str) -> str:
    """Drop a trailing partial tag so the cut never lands inside <...>."""
    last_open = html.rfind("<")
    last_close = html.rfind(">")
    if last_open > last_close:
        return html[:last_open]
    return html


def sanitize_html(html: Optional[str], max_bytes: int) -> Tuple[str, bool]:
    """
    Bound HTML to max_bytes while keeping it well formed.

    The kept prefix ends after the last complete tag, missing <html> and
    <body> openers are synthesized, and the result is closed with a notice
    and </body></html>.
    """
    if not html:
        return "", False
    if byte_length(html) <= max_bytes:
        return html, False

    reserve = byte_length(HTML_OPEN + BODY_OPEN + HTML_TRUNCATION_NOTICE + HTML_CLOSE)
    if max_bytes <= reserve:
        minimal = HTML_OPEN + BODY_OPEN + HTML_CLOSE
        return (minimal if byte_length(minimal) <= max_bytes else ""), True

    kept = _cut_html_at_tag(_cut_utf8(html, max_bytes - reserve))
    kept = _CLOSING_WRAPPERS.sub("", kept)

    has_html = bool(_HTML_OPEN_TAG.search(kept))
    has_body = bool(_BODY_OPEN_TAG.search(kept))
    if not has_html:
        kept = HTML_OPEN + (BODY_OPEN if not has_body else "") + kept
    elif not has_body:
        kept = kept + BODY_OPEN

    logger.debug(f"Truncated HTML from {byte_length(html)} to {byte_length(kept)} bytes")
    return kept + HTML_TRUNCATION_NOTICE + HTML_CLOSE, True


def truncate_field(value: Optional[str], max_bytes: int) -> str:
    """Cap a short header field at a word boundary, marking the cut with '...'."""
    if not value:
        return ""
    if byte_length(value) <= max_bytes:
        return value

    kept = _cut_utf8(value, max(0, max_bytes - 3))
    space = kept.rfind(" ")
    if space > len(kept) // 2:
        kept = kept[:space]
    return kept.rstrip() + "..."


@dataclass
class BoundedContent:
    """Indexed fields of one record after size enforcement."""
    subject: str
    from_address: str
    to_addresses: str
    cc_addresses: str
    bcc_addresses: str
    body: str
    html_body: Optional[str]
    original_body_text: Optional[str] = None
    original_body_html: Optional[str] = None
    truncated: bool = False


class ContentSanitizer:
    """Applies per-field and aggregate ceilings to an email's indexed fields."""

    def __init__(self, limits: Optional[ContentLimits] = None):
        self.limits = limits or ContentLimits()

    def sanitize_text(self, text: Optional[str], max_bytes: Optional[int] = None) -> Tuple[str, bool]:
        return sanitize_text(text, self.limits.body_text if max_bytes is None else max_bytes)

    def sanitize_html(self, html: Optional[str], max_bytes: Optional[int] = None) -> Tuple[str, bool]:
        return sanitize_html(html, self.limits.body_html if max_bytes is None else max_bytes)

    def bound(
        self,
        subject: Optional[str],
        from_address: Optional[str],
        to_addresses: Optional[str],
        cc_addresses: Optional[str],
        bcc_addresses: Optional[str],
        text_body: Optional[str],
        html_body: Optional[str],
    ) -> BoundedContent:
        limits = self.limits
        content = BoundedContent(
            subject=truncate_field(clean_text(subject), limits.subject),
            from_address=truncate_field(clean_text(from_address), limits.from_address),
            to_addresses=truncate_field(clean_text(to_addresses), limits.recipients),
            cc_addresses=truncate_field(clean_text(cc_addresses), limits.recipients),
            bcc_addresses=truncate_field(clean_text(bcc_addresses), limits.recipients),
            body="",
            html_body=None,
        )

        text = clean_text(text_body)
        html = clean_text(html_body)
        if not text and html:
            # Keep the message searchable when it only has an HTML part
            text = html

        body, text_truncated = sanitize_text(text, limits.body_text)
        stored_html, html_truncated = sanitize_html(html, limits.body_html)
        truncated = text_truncated or html_truncated

        envelope_bytes = sum(
            byte_length(value) for value in (
                content.subject,
                content.from_address,
                content.to_addresses,
                content.cc_addresses,
                content.bcc_addresses,
            )
        )
        available = limits.record_budget - envelope_bytes

        if available <= byte_length(BODY_TOO_LARGE):
            logger.warning(
                f"Envelope fields use {envelope_bytes} bytes, storing body separately"
            )
            body, stored_html, truncated = BODY_TOO_LARGE, "", True
        elif byte_length(body) + byte_length(stored_html) > available:
            text_budget = available // 2 if stored_html else available
            body, _ = sanitize_text(body, min(byte_length(body), text_budget))
            stored_html, _ = sanitize_html(stored_html, available - byte_length(body))
            truncated = True

        content.body = body
        content.html_body = stored_html or None
        content.truncated = truncated
        if truncated:
            content.original_body_text = text_body or None
            content.original_body_html = html_body or None
        return content

"""
Test RFC 822 parsing and attachment detection.
"""
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
import email

from mailmirror.core.email.attachment_detection import (
    attachment_filename,
    get_attachment_parts,
    is_attachment_part,
)
from mailmirror.core.email.mime import (
    PREVIEW_LENGTH,
    build_preview,
    decode_header_value,
    parse_message,
)


class TestParseMessage:
    """Test header and body extraction"""

    def test_basic_headers(self, raw_message):
        parsed = parse_message(raw_message(subject="October Invoice Attached"), uid=1)

        assert parsed.subject == "October Invoice Attached"
        assert parsed.from_name == "Alice Example"
        assert parsed.from_address == "alice@example.com"
        assert parsed.message_id == "<msg@example.com>"
        assert parsed.received_utc == datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)
        assert parsed.plain_text.strip() == "Plain body text"
        assert parsed.html_text is None
        assert parsed.attachments == []

    def test_header_map(self, raw_message):
        parsed = parse_message(raw_message(), uid=1)
        assert parsed.headers["Subject"] == ["Hello"]
        assert parsed.headers["To"] == ["me@example.com"]

    def test_encoded_subject(self):
        raw = (
            b"From: =?utf-8?q?J=C3=BCrgen?= <j@example.com>\r\n"
            b"Subject: =?utf-8?b?R3LDvMOfZQ==?=\r\n"
            b"Date: Tue, 01 Oct 2024 08:00:00 +0000\r\n"
            b"\r\n"
            b"body\r\n"
        )
        parsed = parse_message(raw, uid=5)
        assert parsed.subject == "Grüße"
        assert parsed.from_name == "Jürgen"

    def test_missing_headers_default_to_empty(self):
        fallback = datetime(2024, 1, 2, tzinfo=timezone.utc)
        parsed = parse_message(b"\r\njust a body\r\n", uid=9, received_fallback=fallback)

        assert parsed.subject == ""
        assert parsed.from_address == ""
        assert parsed.message_id == ""
        assert parsed.received_utc == fallback

    def test_bad_date_uses_fallback(self):
        fallback = datetime(2024, 3, 4, tzinfo=timezone.utc)
        raw = b"Subject: x\r\nDate: not a date\r\n\r\nbody\r\n"
        assert parse_message(raw, uid=1, received_fallback=fallback).received_utc == fallback

    def test_html_alternative_is_sanitized(self, raw_message):
        raw = raw_message(html='<p>Hi</p><img src="https://t.example.com/x.gif">')
        parsed = parse_message(raw, uid=1)

        assert "t.example.com" in parsed.html_text
        assert "t.example.com" not in parsed.sanitized_html
        assert parsed.plain_text.strip() == "Plain body text"

    def test_preview_falls_back_to_subject(self, raw_message):
        parsed = parse_message(raw_message(subject="Only subject", body=None, html="<p>x</p>"), uid=1)
        assert parsed.plain_text is None
        assert parsed.preview == "Only subject"

    def test_nul_bytes_removed(self):
        raw = b"Subject: a\x00b\r\n\r\nbody\r\n"
        assert parse_message(raw, uid=1).subject == "ab"


class TestPreview:

    def test_flattens_and_truncates(self):
        text = "line one\r\nline two\n" + "x" * 500
        preview = build_preview(text)
        assert "\n" not in preview and "\r" not in preview
        assert len(preview) <= PREVIEW_LENGTH
        assert preview.startswith("line one  line two")

    def test_empty(self):
        assert build_preview(None) == ""

    def test_decode_header_value_plain(self):
        assert decode_header_value("Hello") == "Hello"
        assert decode_header_value(None) == ""


class TestAttachments:
    """Test attachment detection and extraction"""

    def test_binary_attachment(self, raw_message):
        raw = raw_message(attachments={"report.pdf": b"%PDF-1.4 data"})
        parsed = parse_message(raw, uid=1)

        assert len(parsed.attachments) == 1
        attachment = parsed.attachments[0]
        assert attachment.file_name == "report.pdf"
        assert attachment.content_type == "application/octet-stream"
        assert attachment.disposition.startswith("attachment")
        assert attachment.open().read() == b"%PDF-1.4 data"

    def test_single_part_has_no_attachments(self, raw_message):
        msg = email.message_from_bytes(raw_message(), policy=policy.default)
        assert get_attachment_parts(msg) == []

    def test_embedded_message_is_attachment(self, raw_message):
        outer = EmailMessage()
        outer["Subject"] = "Fwd"
        outer.set_content("see attached")
        inner = email.message_from_bytes(raw_message(subject="Inner"), policy=policy.default)
        outer.add_attachment(inner)

        parsed = parse_message(outer.as_bytes(), uid=1)

        assert len(parsed.attachments) == 1
        assert parsed.attachments[0].content_type == "message/rfc822"
        assert b"Subject: Inner" in parsed.attachments[0].open().read()

    def test_inline_image_without_disposition_is_body(self):
        part = EmailMessage()
        part.set_content(b"\x89PNG", maintype="image", subtype="png")
        del part["Content-Disposition"]
        assert is_attachment_part(part) is False

    def test_filename_defaults(self):
        part = EmailMessage()
        part.set_content(b"data", maintype="application", subtype="octet-stream", disposition="attachment")
        assert attachment_filename(part) == "attachment"

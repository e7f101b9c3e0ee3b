"""
Unit tests for MIME parsing and Slack preview rendering.
"""

from email.message import EmailMessage

from app.models.inbound_email import AttachmentInfo, ParsedMime
from app.services.preview import (
    ELLIPSIS,
    FIELD_LIMIT,
    MAX_LISTED_ATTACHMENTS,
    NO_BODY_MARKER,
    PREVIEW_LIMIT,
    escape_mrkdwn,
    html_to_text,
    parse_mime,
    render_notification,
    truncate,
)


def _headers(**overrides) -> dict:
    fields = {
        "from": "Alice <alice@example.com>",
        "to": "support@example.com",
        "subject": "Printer on fire",
        "date": "Mon, 1 Jan 2024 10:00:00 +0000",
    }
    fields.update(overrides)
    return fields


def _make_raw(text=None, html=None, attachments=()) -> bytes:
    msg = EmailMessage()
    msg["From"] = "alice@example.com"
    msg["To"] = "support@example.com"
    msg["Subject"] = "Test"
    if text is not None:
        msg.set_content(text)
    if html is not None:
        if text is None:
            msg.set_content(html, subtype="html")
        else:
            msg.add_alternative(html, subtype="html")
    for filename, content, maintype, subtype in attachments:
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


class TestParseMime:

    def test_plain_text_message(self):
        parsed = parse_mime(_make_raw(text="Hello there"))
        assert parsed.text.strip() == "Hello there"
        assert parsed.html is None
        assert parsed.attachments == []

    def test_alternative_message_keeps_both_parts(self):
        parsed = parse_mime(_make_raw(text="plain", html="<p>rich</p>"))
        assert parsed.text.strip() == "plain"
        assert "<p>rich</p>" in parsed.html

    def test_attachments_are_summarized(self):
        raw = _make_raw(
            text="see attached",
            attachments=[("report.pdf", b"%PDF-1.4 data", "application", "pdf")],
        )
        parsed = parse_mime(raw)

        assert parsed.attachments == [
            AttachmentInfo(filename="report.pdf", content_type="application/pdf", size_bytes=13)
        ]

    def test_empty_input(self):
        assert parse_mime(b"") == ParsedMime()

    def test_garbage_input_does_not_raise(self):
        parsed = parse_mime(b"\x00\xff\xfe not a mime message")
        assert isinstance(parsed, ParsedMime)


class TestHtmlToText:

    def test_strips_script_and_style(self):
        html = "<style>p{color:red}</style><script>alert(1)</script><p>Visible</p>"
        assert html_to_text(html) == "Visible"

    def test_block_tags_become_line_breaks(self):
        html = "<div>One</div><p>Two</p>Three<br/>Four"
        assert html_to_text(html) == "One\nTwo\nThree\nFour"

    def test_decodes_standard_entities(self):
        html = "<p>a &lt; b &amp;&amp; c &gt; d &quot;q&quot; it&#39;s</p>"
        assert html_to_text(html) == "a < b && c > d \"q\" it's"

    def test_ampersand_entity_decoded_last(self):
        assert html_to_text("&amp;lt;") == "&lt;"

    def test_empty(self):
        assert html_to_text(None) == ""


class TestEscapeAndTruncate:

    def test_escape_control_characters(self):
        assert escape_mrkdwn("<@U1> & `code`") == "&lt;@U1&gt; &amp; 'code'"

    def test_truncate_keeps_short_text(self):
        assert truncate("short", 10) == "short"

    def test_truncate_adds_ellipsis_within_limit(self):
        out = truncate("x" * 50, 10)
        assert len(out) <= 10
        assert out.endswith(ELLIPSIS)

    def test_truncate_does_not_split_entities(self):
        out = truncate(escape_mrkdwn("aaaaaa&"), 9)
        assert out.endswith(ELLIPSIS)
        assert "&am" not in out


class TestRenderNotification:

    def test_prefers_plain_text(self):
        parsed = ParsedMime(text="plain body", html="<p>html body</p>")
        rendered = render_notification(parsed, _headers())
        assert rendered.preview == "plain body"

    def test_falls_back_to_html(self):
        parsed = ParsedMime(html="<p>html <b>body</b></p>")
        rendered = render_notification(parsed, _headers())
        assert rendered.preview == "html body"

    def test_no_readable_body_marker(self):
        rendered = render_notification(ParsedMime(), _headers())
        assert rendered.preview == NO_BODY_MARKER

    def test_fields_are_escaped(self):
        rendered = render_notification(ParsedMime(text="x"), _headers())
        assert rendered.sender == "Alice &lt;alice@example.com&gt;"

    def test_missing_headers_use_defaults(self):
        rendered = render_notification(ParsedMime(text="x"), {})
        assert rendered.sender == "unknown"
        assert rendered.subject == "(no subject)"
        assert rendered.date is None

    def test_long_inputs_stay_within_limits(self):
        huge = "<&>`" * 5000
        parsed = ParsedMime(
            text=huge,
            attachments=[
                AttachmentInfo(filename=huge, content_type="text/plain", size_bytes=1)
            ],
        )
        rendered = render_notification(
            parsed, _headers(**{"from": huge, "to": huge, "subject": huge, "date": huge})
        )

        assert len(rendered.preview) <= PREVIEW_LIMIT
        assert rendered.preview.endswith(ELLIPSIS)
        for value in (rendered.sender, rendered.recipient, rendered.subject, rendered.date):
            assert len(value) <= FIELD_LIMIT
            assert value.endswith(ELLIPSIS)
        assert all(len(line) <= FIELD_LIMIT for line in rendered.attachment_lines)

    def test_attachment_summary_is_capped(self):
        attachments = [
            AttachmentInfo(filename=f"f{i}.txt", content_type="text/plain", size_bytes=2048)
            for i in range(14)
        ]
        rendered = render_notification(ParsedMime(text="x", attachments=attachments), _headers())

        assert len(rendered.attachment_lines) == MAX_LISTED_ATTACHMENTS
        assert rendered.attachment_total == 14
        assert rendered.attachment_lines[0] == "• f0.txt (text/plain, 2.0 KB)"

    def test_slack_payload_shape(self):
        attachments = [
            AttachmentInfo(filename=f"f{i}.txt", content_type="text/plain", size_bytes=10)
            for i in range(12)
        ]
        rendered = render_notification(ParsedMime(text="body", attachments=attachments), _headers())
        payload = rendered.to_slack_payload("C0123ABCD")

        assert payload["channel"] == "C0123ABCD"
        assert payload["text"].startswith("Got an email from Alice")
        assert payload["blocks"][2]["text"]["text"] == "body"
        context = payload["blocks"][-1]["elements"][0]["text"]
        assert "12 attachment(s)" in context
        assert "…and 2 more" in context

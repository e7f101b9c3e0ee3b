"""
Message preview rendering for Slack notifications.

Turns raw MIME into a RenderedNotification:
  - plain text body preferred, HTML reduced to text otherwise
  - all free text escaped for Slack mrkdwn
  - every field held to its character limit (ellipsis when cut)
  - attachment summary capped at MAX_LISTED_ATTACHMENTS entries
"""

import email
import email.policy
import logging
import re
from email.message import EmailMessage
from typing import Mapping, Optional

from app.models.inbound_email import AttachmentInfo, ParsedMime
from app.models.notification import RenderedNotification

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 2000
FIELD_LIMIT = 150
MAX_LISTED_ATTACHMENTS = 10
ELLIPSIS = "…"
NO_BODY_MARKER = "_(no readable body)_"

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_CLOSE_RE = re.compile(
    r"</(p|div|li|tr|h[1-6]|table|ul|ol|blockquote|section|article|header|footer|pre)\s*>",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"<[^>]+>")
_PARTIAL_ENTITY_RE = re.compile(r"&[a-z]{0,3}$")

_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&apos;", "'"),
    ("&amp;", "&"),
)


# ---------------------------------------------------------------------------
# MIME parsing
# ---------------------------------------------------------------------------

def _part_text(part: Optional[EmailMessage]) -> Optional[str]:
    if part is None:
        return None
    try:
        content = part.get_content()
    except (LookupError, ValueError, AssertionError) as e:
        logger.warning(f"Unreadable {part.get_content_type()} part: {e}")
        payload = part.get_payload(decode=True) or b""
        content = payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else None


def _extract_attachments(msg: EmailMessage) -> list[AttachmentInfo]:
    attachments: list[AttachmentInfo] = []
    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        filename = part.get_filename()
        disposition = (part.get_content_disposition() or "").lower()
        if disposition != "attachment" and not filename:
            continue
        payload = part.get_payload(decode=True) or b""
        attachments.append(
            AttachmentInfo(
                filename=filename or "unnamed",
                content_type=part.get_content_type(),
                size_bytes=len(payload),
            )
        )
    return attachments


def parse_mime(raw: bytes) -> ParsedMime:
    """
    Parse raw MIME into readable parts.

    Never raises: malformed input yields an empty ParsedMime so the
    notification degrades to the "no readable body" marker.
    """
    if not raw:
        return ParsedMime()
    try:
        msg = email.message_from_bytes(raw, policy=email.policy.default)
        text = _part_text(msg.get_body(preferencelist=("plain",)))
        html = _part_text(msg.get_body(preferencelist=("html",)))
        attachments = _extract_attachments(msg)
    except Exception as e:
        logger.warning(f"Failed to parse MIME message: {e}")
        return ParsedMime()
    return ParsedMime(text=text, html=html, attachments=attachments)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def html_to_text(html: Optional[str]) -> str:
    """Simplified HTML → text: drop scripts/styles, keep block breaks."""
    if not html:
        return ""
    text = _SCRIPT_STYLE_RE.sub("", html)
    text = _BR_RE.sub("\n", text)
    text = _BLOCK_CLOSE_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return _tidy(text)


def _tidy(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def escape_mrkdwn(text: Optional[str]) -> str:
    """Escape Slack's control characters and neutralize backticks."""
    if not text:
        return ""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("`", "'")
    )


def truncate(text: str, limit: int) -> str:
    """Cut text to at most `limit` characters, ending with an ellipsis when cut."""
    if len(text) <= limit:
        return text
    cut = text[: max(limit - len(ELLIPSIS), 0)]
    # Don't leave half an escape sequence behind
    cut = _PARTIAL_ENTITY_RE.sub("", cut).rstrip()
    return cut + ELLIPSIS


def format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def _field(value: Optional[str], default: str) -> str:
    value = (value or "").strip() or default
    return truncate(escape_mrkdwn(value), FIELD_LIMIT)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_notification(
    parsed: ParsedMime,
    header_fields: Mapping[str, Optional[str]],
) -> RenderedNotification:
    """
    Build the notification for one message.

    header_fields uses lower-case keys: from, to, subject, date.
    """
    body = _tidy(parsed.text or "")
    if not body:
        body = html_to_text(parsed.html)

    preview = truncate(escape_mrkdwn(body), PREVIEW_LIMIT) if body else NO_BODY_MARKER

    listed = parsed.attachments[:MAX_LISTED_ATTACHMENTS]
    attachment_lines = tuple(
        truncate(
            "• "
            + escape_mrkdwn(a.filename)
            + f" ({escape_mrkdwn(a.content_type)}, {format_size(a.size_bytes)})",
            FIELD_LIMIT,
        )
        for a in listed
    )

    date = header_fields.get("date")
    return RenderedNotification(
        sender=_field(header_fields.get("from"), "unknown"),
        recipient=_field(header_fields.get("to"), "unknown"),
        subject=_field(header_fields.get("subject"), "(no subject)"),
        date=_field(date, "") if date else None,
        preview=preview,
        attachment_lines=attachment_lines,
        attachment_total=len(parsed.attachments),
    )

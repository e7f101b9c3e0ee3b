"""
Provider-agnostic inbound email model.

These models represent one received message after provider-specific fields
have been stripped away. The pipeline works exclusively with these models;
only the adapter layer knows about provider payload formats.
"""

from typing import Any, Optional

from pydantic import BaseModel


class InboundEmail(BaseModel):
    """
    Normalized inbound email.

    raw is an opaque body handle (bytes, a stream, text, ...) that is turned
    into bytes by app.services.raw_body.read_raw_body.
    """

    model_config = {"arbitrary_types_allowed": True}

    raw: Any = None
    headers: dict[str, str] = {}
    mail_from: str = ""
    rcpt_to: list[str] = []

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def subject(self) -> Optional[str]:
        return self.header("subject")


class AttachmentInfo(BaseModel):
    """Summary of one MIME attachment (content is not retained)."""

    filename: str
    content_type: str
    size_bytes: int


class ParsedMime(BaseModel):
    """Readable parts extracted from a raw MIME message."""

    text: Optional[str] = None
    html: Optional[str] = None
    attachments: list[AttachmentInfo] = []

"""
Pydantic models for the inbound email webhook.

Models:
  GenericWebhookPayload   inbound webhook JSON in the generic format
  PostmarkWebhookPayload  subset of Postmark's inbound webhook JSON
  InboundVerdict          response body telling the transport what to do
"""

from typing import Optional

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Webhook payloads
# ---------------------------------------------------------------------------

class GenericWebhookPayload(BaseModel):
    """
    Generic inbound payload: the raw message plus its SMTP envelope.

    raw is the full RFC 822 message, base64-encoded unless raw_encoding is
    "text".
    """
    model_config = {"extra": "ignore"}

    raw: str = ""
    raw_encoding: str = "base64"
    mail_from: str = ""
    rcpt_to: list[str] = []


class PostmarkHeader(BaseModel):
    Name: str
    Value: str = ""


class PostmarkWebhookPayload(BaseModel):
    """
    Subset of Postmark's inbound webhook JSON that the relay cares about.

    RawEmail is only present when "Include raw email content" is enabled on
    the inbound stream.
    """
    model_config = {"extra": "ignore"}

    From: str = ""
    To: str = ""
    OriginalRecipient: Optional[str] = None
    Subject: Optional[str] = None
    Headers: list[PostmarkHeader] = []
    RawEmail: Optional[str] = None


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------

class InboundVerdict(BaseModel):
    """
    Disposition of one inbound message.

    action is "accept" or "reject"; reject always carries a human-readable
    reason the transport can hand back to the sender.
    """

    action: str = "accept"
    reason: Optional[str] = None
    route: Optional[str] = None
    processed: bool = True

    @classmethod
    def accept(cls, route: Optional[str] = None, processed: bool = True) -> "InboundVerdict":
        return cls(action="accept", route=route, processed=processed)

    @classmethod
    def reject(cls, reason: str, route: Optional[str] = None) -> "InboundVerdict":
        return cls(action="reject", reason=reason, route=route)

    @property
    def rejected(self) -> bool:
        return self.action == "reject"

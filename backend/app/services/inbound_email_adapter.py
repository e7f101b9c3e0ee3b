"""
Inbound email adapter service.

Normalizes provider-specific inbound webhook payloads into a single
provider-agnostic InboundEmail model.

Supported providers:
  - generic   (default) raw RFC 822 message plus its SMTP envelope
  - postmark  Postmark inbound webhook with "Include raw email content" on

Adding a new provider:
  1. Write a normalize_<provider>(payload: dict) -> InboundEmail function.
  2. Register it in _NORMALIZERS.
  3. Set EMAIL_PROVIDER=<provider> in the environment.

Generic payload
---------------
  raw           str        full message, base64 unless raw_encoding="text"
  raw_encoding  str        "base64" (default) or "text"
  mail_from     str        envelope sender (MAIL FROM)
  rcpt_to       list[str]  envelope recipients (RCPT TO)

Envelope fields fall back to the From/To headers when omitted.
"""

import base64
import binascii
import logging
import os
from email.parser import BytesHeaderParser
from email.utils import getaddresses, parseaddr
from typing import Callable

from app.models.email_intake import GenericWebhookPayload, PostmarkWebhookPayload
from app.models.inbound_email import InboundEmail
from app.services.raw_body import read_raw_body

logger = logging.getLogger(__name__)


def _header_map(raw: bytes) -> dict[str, str]:
    """Parse only the header block of a raw message."""
    if not raw:
        return {}
    parsed = BytesHeaderParser().parsebytes(raw)
    headers: dict[str, str] = {}
    for name, value in parsed.items():
        # First occurrence wins (Received: etc. repeat)
        headers.setdefault(name, str(value))
    return headers


def _addresses(value: str) -> list[str]:
    return [addr for _, addr in getaddresses([value or ""]) if addr]


# ---------------------------------------------------------------------------
# Generic normalizer
# ---------------------------------------------------------------------------

def normalize_generic(payload: dict) -> InboundEmail:
    """Convert a generic raw-message payload to InboundEmail."""
    data = GenericWebhookPayload.model_validate(payload)

    if data.raw_encoding.lower() == "text":
        raw = read_raw_body(data.raw)
    else:
        try:
            # Line-wrapped base64 is fine; any other stray character is not
            raw = base64.b64decode("".join(data.raw.split()), validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Generic payload carried undecodable base64 raw body")
            raw = b""

    headers = _header_map(raw)
    lookup = {k.lower(): v for k, v in headers.items()}

    mail_from = data.mail_from.strip() or parseaddr(lookup.get("from", ""))[1]
    rcpt_to = [r.strip() for r in data.rcpt_to if r and r.strip()]
    if not rcpt_to:
        rcpt_to = _addresses(lookup.get("to", ""))

    return InboundEmail(raw=raw, headers=headers, mail_from=mail_from, rcpt_to=rcpt_to)


# ---------------------------------------------------------------------------
# Postmark normalizer
# ---------------------------------------------------------------------------

def normalize_postmark(payload: dict) -> InboundEmail:
    """
    Convert a Postmark inbound webhook payload to InboundEmail.

    Postmark uses PascalCase keys: From, To, OriginalRecipient, Subject,
    Headers[].{Name, Value}, RawEmail.
    """
    data = PostmarkWebhookPayload.model_validate(payload)

    raw = read_raw_body(data.RawEmail)
    headers = _header_map(raw)
    if not headers:
        headers = {h.Name: h.Value for h in data.Headers}
        headers.setdefault("From", data.From)
        headers.setdefault("To", data.To)
        if data.Subject is not None:
            headers.setdefault("Subject", data.Subject)

    recipient = data.OriginalRecipient or data.To
    return InboundEmail(
        raw=raw,
        headers=headers,
        mail_from=parseaddr(data.From)[1],
        rcpt_to=_addresses(recipient),
    )


# ---------------------------------------------------------------------------
# Registry and dispatcher
# ---------------------------------------------------------------------------

_NORMALIZERS: dict[str, Callable[[dict], InboundEmail]] = {
    "generic": normalize_generic,
    "postmark": normalize_postmark,
}


def normalize_webhook(payload: dict, provider: str | None = None) -> InboundEmail:
    """
    Route to the correct normalizer based on the provider argument or the
    EMAIL_PROVIDER environment variable.

    Priority:
      1. provider argument (explicit, used in tests and the webhook endpoint)
      2. EMAIL_PROVIDER env var
      3. Default: "generic"

    Raises ValueError for unknown provider names.
    """
    resolved = provider or os.getenv("EMAIL_PROVIDER", "generic")
    resolved = resolved.lower().strip()

    normalizer = _NORMALIZERS.get(resolved)
    if normalizer is None:
        raise ValueError(
            f"Unknown email provider {resolved!r}. "
            f"Supported providers: {sorted(_NORMALIZERS)}"
        )

    return normalizer(payload)

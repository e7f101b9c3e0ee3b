#!/usr/bin/env python3
"""
Dev helper: send a test inbound-email webhook to the local relay.

Builds a real RFC 822 message (optionally with an attachment), wraps it in
the configured provider's webhook payload and POST-s it to the
/api/email/inbound endpoint. The verdict body is printed.

Usage
-----
# Basic: generic payload to support@example.com on localhost:8000
python scripts/send_test_email.py

# Pick the recipient that should be routed
python scripts/send_test_email.py --to sales@example.com

# Attach a file
python scripts/send_test_email.py --file path/to/invoice.pdf

# Send an HTML-only body
python scripts/send_test_email.py --text "" --html "<p>Hello <b>team</b></p>"

# Use Postmark payload format instead of the generic one
python scripts/send_test_email.py --provider postmark

# Print the payload instead of sending it
python scripts/send_test_email.py --dry-run

Environment / .env
------------------
EMAIL_PROVIDER   Provider format to use (default: generic).
                 Overridden by --provider flag.
"""

import argparse
import base64
import json
import mimetypes
import os
import sys
import textwrap
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from pathlib import Path

import httpx
from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Message builder
# ---------------------------------------------------------------------------

def _build_message(
    from_email: str,
    to_address: str,
    subject: str,
    text: str | None,
    html: str | None,
    attachment: Path | None,
) -> bytes:
    """Return a complete RFC 822 message as bytes."""
    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_address
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(domain="relay.test")

    if text is not None:
        msg.set_content(text)
        if html is not None:
            msg.add_alternative(html, subtype="html")
    elif html is not None:
        msg.set_content(html, subtype="html")
    else:
        msg.set_content("")

    if attachment is not None:
        content_type = mimetypes.guess_type(attachment.name)[0] or "application/octet-stream"
        maintype, subtype = content_type.split("/", 1)
        msg.add_attachment(
            attachment.read_bytes(),
            maintype=maintype,
            subtype=subtype,
            filename=attachment.name,
        )

    return msg.as_bytes()


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_generic_payload(raw: bytes, from_email: str, to_address: str, subject: str) -> dict:
    """
    Build a generic inbound payload.

      raw        full message, base64
      mail_from  envelope sender
      rcpt_to    envelope recipients
    """
    return {
        "raw": base64.b64encode(raw).decode(),
        "mail_from": from_email,
        "rcpt_to": [to_address],
    }


def _build_postmark_payload(raw: bytes, from_email: str, to_address: str, subject: str) -> dict:
    """
    Build a Postmark inbound webhook payload (PascalCase keys).

    RawEmail is what Postmark sends with "Include raw email content" on.
    """
    return {
        "From": from_email,
        "To": to_address,
        "OriginalRecipient": to_address,
        "Subject": subject,
        "Headers": [],
        "RawEmail": raw.decode("utf-8", errors="replace"),
    }


_PAYLOAD_BUILDERS = {
    "generic": _build_generic_payload,
    "postmark": _build_postmark_payload,
}


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        print(f"\n[FAIL] HTTP {status}")
        print(response.text)
        return

    if status != 200:
        symbol = "FAIL"
    elif body.get("action") == "reject":
        symbol = "REJECTED"
    else:
        symbol = "OK"
    print(f"\n[{symbol}] HTTP {status}")
    print(json.dumps(body, indent=2))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    # Locate project root (scripts/ lives one level below the root)
    script_dir = Path(__file__).resolve().parent
    project_root = script_dir.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_email.py",
        description=textwrap.dedent("""\
            Send a test inbound-email webhook to the relay and print the
            accept/reject verdict.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_email.py
              python scripts/send_test_email.py --to sales@example.com
              python scripts/send_test_email.py --file invoice.pdf
              python scripts/send_test_email.py --provider postmark
              python scripts/send_test_email.py --url http://localhost:8000
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Relay base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--provider",
        default=os.getenv("EMAIL_PROVIDER", "generic"),
        choices=list(_PAYLOAD_BUILDERS),
        help="Webhook payload format to use (default: generic)",
    )
    parser.add_argument(
        "--from",
        dest="from_email",
        default="Test Sender <sender@example.org>",
        help="From header and envelope sender",
    )
    parser.add_argument(
        "--to",
        default="support@example.com",
        help="Recipient address to route (default: support@example.com)",
    )
    parser.add_argument(
        "--subject",
        default="Test message from send_test_email.py",
        help="Subject header",
    )
    parser.add_argument(
        "--text",
        default="Hello! This is a test message.\n\nSecond paragraph.",
        help="Plain-text body",
    )
    parser.add_argument(
        "--html",
        default=None,
        help="HTML body. Sent alone when --text is empty.",
    )
    parser.add_argument(
        "--file",
        default=None,
        metavar="PATH",
        help="Path to a file to attach.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the payload JSON without sending it.",
    )

    args = parser.parse_args()

    attachment = None
    if args.file:
        attachment = Path(args.file)
        if not attachment.exists():
            print(f"ERROR: File not found: {attachment}", file=sys.stderr)
            return 1
        print(f"Attaching file: {attachment} ({attachment.stat().st_size:,} bytes)")

    raw = _build_message(
        from_email=args.from_email,
        to_address=args.to,
        subject=args.subject,
        text=args.text or None,
        html=args.html,
        attachment=attachment,
    )

    builder = _PAYLOAD_BUILDERS[args.provider]
    payload = builder(raw, args.from_email, args.to, args.subject)
    endpoint = f"{args.url.rstrip('/')}/api/email/inbound"

    print(f"\nProvider : {args.provider}")
    print(f"Endpoint : {endpoint}")
    print(f"From     : {args.from_email}")
    print(f"To       : {args.to}")
    print(f"Subject  : {args.subject}")
    print(f"Size     : {len(raw):,} bytes")

    if args.dry_run:
        # Print payload without the (potentially large) raw blob
        display = dict(payload)
        raw_key = "raw" if args.provider == "generic" else "RawEmail"
        display[raw_key] = f"<raw message, {len(raw)} bytes>"
        print("\n[DRY RUN] Payload:")
        print(json.dumps(display, indent=2))
        return 0

    try:
        response = httpx.post(endpoint, json=payload, timeout=30)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the relay running? Start it with:\n"
            "  cd backend && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1
    except httpx.HTTPError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())

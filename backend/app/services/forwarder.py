"""
Email forwarding with a single From-rewrite fallback.

Targets are attempted strictly in route order. A target that rejects the
plain forward (typically SPF/DMARC alignment) gets exactly one more attempt
with From rewritten to an alternate sender we control and the original
sender kept in Reply-To. If that is impossible or also fails, forwarding is
fatal and the inbound message must be rejected.
"""

import email
import email.policy
import logging
import smtplib
from email.utils import parseaddr
from typing import Optional, Protocol, Sequence

from app.models.delivery import DeliveryOutcome, ForwardAttempt, ForwardResult

logger = logging.getLogger(__name__)

FORWARD_FAILED_REASON = "Unable to forward this email"
DEFAULT_FORWARDER_LOCAL_PART = "forwarder"


class ForwardRejected(Exception):
    """The receiving system refused a forwarded message."""


class ForwardTransport(Protocol):
    def forward(
        self,
        raw: bytes,
        to: str,
        headers: Optional[dict[str, str]] = None,
        mail_from: Optional[str] = None,
    ) -> None:
        """Deliver raw to one address. Raises ForwardRejected on refusal."""
        ...


def apply_header_overrides(raw: bytes, headers: Optional[dict[str, str]]) -> bytes:
    """Return raw with the given headers replaced (or added)."""
    if not headers:
        return raw
    msg = email.message_from_bytes(raw, policy=email.policy.default)
    for name, value in headers.items():
        del msg[name]
        msg[name] = value
    return msg.as_bytes(policy=email.policy.SMTP)


def _bare_address(value: Optional[str]) -> str:
    return parseaddr(value or "")[1].strip().lower()


def derive_rewrite_sender(
    configured: Optional[str],
    recipient: Optional[str],
) -> Optional[str]:
    """
    Pick the alternate sender for a rewritten forward.

    The configured address wins; otherwise forwarder@<recipient domain>.
    """
    if configured and "@" in configured:
        return configured.strip()
    address = _bare_address(recipient)
    if "@" not in address:
        return None
    domain = address.rsplit("@", 1)[1]
    if not domain:
        return None
    return f"{DEFAULT_FORWARDER_LOCAL_PART}@{domain}"


class SmtpForwardTransport:
    """
    Forwarding primitive backed by an SMTP relay.

    Every SMTP refusal or connection problem is raised as ForwardRejected.
    """

    def __init__(
        self,
        host: str,
        port: int = 25,
        username: Optional[str] = None,
        password: Optional[str] = None,
        starttls: bool = False,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def forward(
        self,
        raw: bytes,
        to: str,
        headers: Optional[dict[str, str]] = None,
        mail_from: Optional[str] = None,
    ) -> None:
        message = apply_header_overrides(raw, headers)
        envelope_from = _bare_address(mail_from)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(envelope_from, [to], message)
        except (smtplib.SMTPException, OSError) as e:
            raise ForwardRejected(f"{type(e).__name__}: {e}") from e
        logger.info(f"Forwarded message to {to} via {self.host}:{self.port}")


class ForwardDeliverer:
    """Runs the forward → rewrite-and-retry sequence over a route's targets."""

    def __init__(self, transport: ForwardTransport):
        self.transport = transport

    def deliver(
        self,
        targets: Sequence[str],
        raw: bytes,
        original_from: str,
        rewrite_sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> ForwardResult:
        """
        Forward raw to every target in order.

        Args:
            targets:        Ordered forward destinations.
            raw:            Raw RFC 822 message.
            original_from:  Envelope sender of the inbound message.
            rewrite_sender: Configured alternate sender for the fallback.
            recipient:      Address the message was received at; its domain
                            is used to derive an alternate sender when none
                            is configured.

        Returns:
            ForwardResult. outcome is FAILED_FATAL when any target could not
            be reached even after the rewrite fallback.
        """
        if not targets:
            return ForwardResult(outcome=DeliveryOutcome.SKIPPED)

        alternate = derive_rewrite_sender(rewrite_sender, recipient)
        attempts: list[ForwardAttempt] = []
        delivered: list[str] = []

        for target in targets:
            try:
                self.transport.forward(raw, target, mail_from=original_from)
                attempts.append(ForwardAttempt(target=target))
                delivered.append(target)
                continue
            except ForwardRejected as e:
                first_error = str(e)
                attempts.append(ForwardAttempt(target=target, error=first_error))

            if not alternate or _bare_address(alternate) == _bare_address(original_from):
                logger.error(
                    f"Forwarding to {target} failed: {first_error}; "
                    "no distinct rewrite sender is available"
                )
                return ForwardResult(
                    outcome=DeliveryOutcome.FAILED_FATAL,
                    reason=FORWARD_FAILED_REASON,
                    delivered=delivered,
                    attempts=attempts,
                )

            try:
                self.transport.forward(
                    raw,
                    target,
                    headers={"From": alternate, "Reply-To": original_from},
                    mail_from=alternate,
                )
            except ForwardRejected as e:
                attempts.append(ForwardAttempt(target=target, rewritten=True, error=str(e)))
                logger.error(
                    f"Forwarding to {target} failed: {first_error}; "
                    f"retry with rewritten From also failed: {e}"
                )
                return ForwardResult(
                    outcome=DeliveryOutcome.FAILED_FATAL,
                    reason=FORWARD_FAILED_REASON,
                    delivered=delivered,
                    attempts=attempts,
                )

            attempts.append(ForwardAttempt(target=target, rewritten=True))
            delivered.append(target)

        result = ForwardResult(
            outcome=DeliveryOutcome.SUCCEEDED,
            delivered=delivered,
            attempts=attempts,
        )
        if result.used_rewrite:
            logger.warning(
                f"Forward succeeded after retry with rewritten From header (from {original_from})"
            )
        return result

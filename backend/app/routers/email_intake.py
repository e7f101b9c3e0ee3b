"""
Email intake router.

Receives inbound email webhooks from the mail transport and returns the
accept/reject verdict for each message.

The webhook endpoint is provider-agnostic: it normalises the raw payload
via the inbound_email_adapter service, so swapping providers only requires
changing the EMAIL_PROVIDER env var.

Endpoints:
  POST /inbound   provider webhook; responds with an InboundVerdict

The endpoint always answers 200. A rejected message is signalled in the body
({"action": "reject", "reason": ...}) so the transport bounces it with that
reason instead of retrying the webhook.
"""

import logging

from fastapi import APIRouter, BackgroundTasks

from app.config import get_settings
from app.models.email_intake import InboundVerdict
from app.services.inbound_email_adapter import normalize_webhook
from app.services.pipeline import process_inbound_email

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/inbound")
def receive_inbound_email(
    payload: dict,
    background_tasks: BackgroundTasks,
) -> dict:
    """
    Provider-agnostic inbound email webhook receiver.

    Forwarding runs before the response is sent because its outcome decides
    the verdict. Slack delivery runs as background tasks after the response.
    """
    settings = get_settings()
    try:
        email = normalize_webhook(payload, provider=settings.email_provider)
    except ValueError as exc:
        logger.error(f"Webhook normalization failed: {exc}")
        return InboundVerdict(
            action="accept", processed=False, reason="unsupported_payload"
        ).model_dump()

    verdict = process_inbound_email(email, settings, scheduler=background_tasks)
    if verdict.rejected:
        logger.warning(f"Rejecting inbound message: {verdict.reason}")
    return verdict.model_dump()

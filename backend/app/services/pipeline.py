"""
Inbound email pipeline.

One call to process_inbound_email() handles one received message:

1. Read the raw body and parse the routing table (once per event).
2. Resolve the route for the envelope recipients.
   No route → the deployment's RoutingMissPolicy decides reject vs. accept.
3. Schedule the Slack tasks (notification, raw archive upload) as detached
   but tracked background work sharing one per-event ResolutionCache.
4. Forward synchronously. Only a fatal forwarding failure rejects the
   inbound message; Slack failures never do.
"""

import logging
from typing import Any, Callable, Optional, Protocol

from app.config import RoutingMissPolicy, Settings
from app.models.delivery import DeliveryOutcome, ForwardResult, TaskRecord
from app.models.email_intake import InboundVerdict
from app.models.inbound_email import InboundEmail
from app.models.route import RouteConfig, parse_routing_table
from app.services.forwarder import (
    FORWARD_FAILED_REASON,
    ForwardDeliverer,
    ForwardTransport,
    SmtpForwardTransport,
)
from app.services.preview import escape_mrkdwn, parse_mime, render_notification
from app.services.raw_body import read_raw_body
from app.services.routing import resolve_recipients
from app.services.slack_api import SlackApiClient, hint_for
from app.services.slack_targets import ResolutionCache, SlackTargetResolver
from app.services.slack_upload import MAX_TITLE_LENGTH, archive_filename, upload_file

logger = logging.getLogger(__name__)

NO_SUCH_RECIPIENT_REASON = "No such recipient"
UNKNOWN_ADDRESS_REASON = "Unknown address"


class TaskScheduler(Protocol):
    """Anything with FastAPI BackgroundTasks' add_task signature."""

    def add_task(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        ...


class InlineScheduler:
    """Runs tasks immediately. Used by scripts and tests."""

    def add_task(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        func(*args, **kwargs)


class DeliveryTracker:
    """
    Submits delivery tasks and records how each one ended.

    A task wrapped by the tracker can never raise into its scheduler; an
    unexpected exception is logged and recorded as FAILED_RECOVERABLE.
    """

    def __init__(self, scheduler: TaskScheduler):
        self.scheduler = scheduler
        self.records: list[TaskRecord] = []

    def submit(self, name: str, func: Callable[..., DeliveryOutcome], *args: Any) -> None:
        self.scheduler.add_task(self.run_isolated, name, func, *args)

    def run_isolated(
        self,
        name: str,
        func: Callable[..., DeliveryOutcome],
        *args: Any,
    ) -> DeliveryOutcome:
        try:
            outcome = func(*args)
        except Exception:
            logger.exception(f"Delivery task {name} crashed")
            outcome = DeliveryOutcome.FAILED_RECOVERABLE
        self.record(name, outcome)
        return outcome

    def record(self, name: str, outcome: DeliveryOutcome, detail: Optional[str] = None) -> None:
        self.records.append(TaskRecord(name=name, outcome=outcome, detail=detail))
        if outcome is DeliveryOutcome.FAILED_FATAL:
            logger.error(f"Delivery task {name}: {outcome.value} ({detail})")
        elif outcome is DeliveryOutcome.FAILED_RECOVERABLE:
            logger.warning(f"Delivery task {name}: {outcome.value}")
        else:
            logger.info(f"Delivery task {name}: {outcome.value}")

    def outcome_of(self, name: str) -> Optional[DeliveryOutcome]:
        for record in reversed(self.records):
            if record.name == name:
                return record.outcome
        return None


# ---------------------------------------------------------------------------
# Slack tasks
# ---------------------------------------------------------------------------

def _header_fields(email: InboundEmail) -> dict[str, Optional[str]]:
    return {
        "from": email.header("from") or email.mail_from,
        "to": email.header("to") or ", ".join(email.rcpt_to),
        "subject": email.subject,
        "date": email.header("date"),
    }


def notify_slack(
    client: SlackApiClient,
    resolver: SlackTargetResolver,
    route: RouteConfig,
    cache: ResolutionCache,
    email: InboundEmail,
    raw: bytes,
) -> DeliveryOutcome:
    """Post the rendered notification to the route's Slack destination."""
    channel = resolver.resolve(route, cache)
    if not channel:
        return DeliveryOutcome.FAILED_RECOVERABLE

    rendered = render_notification(parse_mime(raw), _header_fields(email))
    posted = client.call("chat.postMessage", rendered.to_slack_payload(channel))
    if not posted.ok:
        logger.error(f"chat.postMessage failed: {posted.error or 'unknown_error'}")
        hint = hint_for(posted.error)
        if hint:
            logger.error(f"Fix: {hint}")
        return DeliveryOutcome.FAILED_RECOVERABLE
    return DeliveryOutcome.SUCCEEDED


def archive_to_slack(
    client: SlackApiClient,
    resolver: SlackTargetResolver,
    route: RouteConfig,
    cache: ResolutionCache,
    email: InboundEmail,
    raw: bytes,
) -> DeliveryOutcome:
    """Upload the raw message as an .eml file to the route's Slack destination."""
    if not raw:
        return DeliveryOutcome.SKIPPED

    channel = resolver.resolve(route, cache)
    if not channel:
        return DeliveryOutcome.FAILED_RECOVERABLE

    subject = email.subject or "no-subject"
    sender = email.mail_from or email.header("from") or "unknown"
    comment = (
        f":email: New email from *{escape_mrkdwn(sender)}*\n"
        f"*Subject:* {escape_mrkdwn(subject)}"
    )
    uploaded = upload_file(
        client,
        channel,
        archive_filename(subject),
        raw,
        title=subject[:MAX_TITLE_LENGTH],
        comment=comment,
    )
    return DeliveryOutcome.SUCCEEDED if uploaded else DeliveryOutcome.FAILED_RECOVERABLE


def _schedule_slack(
    tracker: DeliveryTracker,
    settings: Settings,
    route: RouteConfig,
    email: InboundEmail,
    raw: bytes,
    slack_client: Optional[SlackApiClient],
) -> None:
    if not route.has_slack_target:
        return
    if not settings.slack_bot_token and slack_client is None:
        logger.info("SLACK_BOT_TOKEN not configured; Slack delivery skipped")
        tracker.record("slack", DeliveryOutcome.SKIPPED)
        return
    if not (settings.slack_notify or settings.slack_upload_raw):
        return

    owns_client = slack_client is None
    client = slack_client or SlackApiClient(
        settings.slack_bot_token,
        api_base=settings.slack_api_base,
        max_attempts=settings.slack_max_attempts,
    )
    resolver = SlackTargetResolver(client, allow_create=settings.slack_allow_channel_create)
    # Shared by this event's tasks only
    cache = ResolutionCache()

    if settings.slack_notify:
        tracker.submit("slack_notification", notify_slack, client, resolver, route, cache, email, raw)
    if settings.slack_upload_raw:
        tracker.submit("slack_archive", archive_to_slack, client, resolver, route, cache, email, raw)
    if owns_client:
        tracker.scheduler.add_task(client.close)


# ---------------------------------------------------------------------------
# Forwarding
# ---------------------------------------------------------------------------

def _build_transport(settings: Settings) -> Optional[ForwardTransport]:
    if not settings.smtp_host:
        return None
    return SmtpForwardTransport(
        settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        starttls=settings.smtp_starttls,
    )


def _forward(
    settings: Settings,
    route: RouteConfig,
    recipient: Optional[str],
    email: InboundEmail,
    raw: bytes,
    transport: Optional[ForwardTransport],
) -> ForwardResult:
    transport = transport or _build_transport(settings)
    if transport is None:
        logger.error("SMTP_HOST not configured; forwarding skipped")
        return ForwardResult(outcome=DeliveryOutcome.SKIPPED, reason="transport_not_configured")

    if not raw:
        logger.error("Inbound message has no raw body; cannot forward")
        return ForwardResult(outcome=DeliveryOutcome.FAILED_FATAL, reason=FORWARD_FAILED_REASON)

    try:
        return ForwardDeliverer(transport).deliver(
            route.forward_targets,
            raw,
            email.mail_from,
            rewrite_sender=route.forward_sender or settings.forward_sender,
            recipient=recipient,
        )
    except Exception:
        logger.exception("Forwarding crashed")
        return ForwardResult(outcome=DeliveryOutcome.FAILED_FATAL, reason=FORWARD_FAILED_REASON)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def process_inbound_email(
    email: InboundEmail,
    settings: Settings,
    scheduler: Optional[TaskScheduler] = None,
    slack_client: Optional[SlackApiClient] = None,
    transport: Optional[ForwardTransport] = None,
    tracker: Optional[DeliveryTracker] = None,
) -> InboundVerdict:
    """
    Route and deliver one inbound message.

    Args:
        email:        Normalized inbound message.
        settings:     Configuration snapshot for this event.
        scheduler:    Where Slack tasks run (BackgroundTasks in the web app).
                      Defaults to running them inline.
        slack_client: Optional pre-built Slack client (caller keeps ownership).
        transport:    Optional forwarding primitive; defaults to SMTP from
                      settings.
        tracker:      Optional tracker to collect task outcomes.

    Returns:
        InboundVerdict for the mail transport.
    """
    tracker = tracker or DeliveryTracker(scheduler or InlineScheduler())
    raw = read_raw_body(email.raw)
    table = parse_routing_table(settings.routes_json, default_channel=settings.slack_default_channel)

    recipient, route = resolve_recipients(email.rcpt_to, table)
    if route is None:
        if settings.routing_miss_policy is RoutingMissPolicy.REJECT:
            logger.warning(f"No route for {email.rcpt_to!r}; rejecting")
            return InboundVerdict.reject(NO_SUCH_RECIPIENT_REASON)
        logger.info(f"No route for {email.rcpt_to!r}; accepting without delivery")
        return InboundVerdict.accept(processed=False)

    if settings.require_forward_targets and not route.forward_targets:
        logger.warning(f"Route for {recipient!r} has no forward targets; rejecting")
        return InboundVerdict.reject(UNKNOWN_ADDRESS_REASON, route=recipient)

    _schedule_slack(tracker, settings, route, email, raw, slack_client)

    if route.forward_targets:
        result = _forward(settings, route, recipient, email, raw, transport)
        tracker.record("forward", result.outcome, result.reason)
        if result.fatal:
            return InboundVerdict.reject(result.reason or FORWARD_FAILED_REASON, route=recipient)

    return InboundVerdict.accept(route=recipient)

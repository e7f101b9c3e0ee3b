"""
End-to-end pipeline tests.

Slack and forwarding are replaced by a Mock client and a fake transport;
Slack tasks run inline so their outcomes can be asserted directly.
"""

import json
from unittest.mock import Mock

from app.config import RoutingMissPolicy, Settings
from app.models.delivery import DeliveryOutcome
from app.models.inbound_email import InboundEmail
from app.services.forwarder import FORWARD_FAILED_REASON, ForwardRejected
from app.services.pipeline import (
    NO_SUCH_RECIPIENT_REASON,
    UNKNOWN_ADDRESS_REASON,
    DeliveryTracker,
    InlineScheduler,
    process_inbound_email,
)
from app.services.slack_api import SlackResponse

RAW = (
    b"From: Alice <alice@sender.org>\r\n"
    b"To: support@example.com\r\n"
    b"Subject: Printer on fire\r\n"
    b"Date: Mon, 1 Jan 2024 10:00:00 +0000\r\n"
    b"\r\n"
    b"It is really on fire.\r\n"
)


class FakeTransport:
    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls: list[dict] = []

    def forward(self, raw, to, headers=None, mail_from=None):
        self.calls.append({"to": to, "headers": headers, "mail_from": mail_from})
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome


class RecordingScheduler:
    """Collects tasks without running them."""

    def __init__(self):
        self.tasks = []

    def add_task(self, func, *args, **kwargs):
        self.tasks.append((func, args, kwargs))


def _ok(**data) -> SlackResponse:
    return SlackResponse(ok=True, http_status=200, data={"ok": True, **data})


def _slack_client(post=None) -> Mock:
    client = Mock()
    responses = {
        "chat.postMessage": post or _ok(ts="1700000000.000100"),
        "files.getUploadURLExternal": _ok(upload_url="https://files.example/u", file_id="F0FILE001"),
        "files.completeUploadExternal": _ok(files=[{"id": "F0FILE001"}]),
    }
    client.call.side_effect = lambda method, payload=None, encoding="json": responses[method]
    client.put_bytes.return_value = True
    return client


def _settings(routes: dict, **overrides) -> Settings:
    values = {
        "routes_json": json.dumps(routes),
        "slack_bot_token": "xoxb-test",
    }
    values.update(overrides)
    return Settings(**values)


def _email(rcpt="support@example.com", raw=RAW) -> InboundEmail:
    return InboundEmail(
        raw=raw,
        headers={
            "From": "Alice <alice@sender.org>",
            "To": rcpt,
            "Subject": "Printer on fire",
            "Date": "Mon, 1 Jan 2024 10:00:00 +0000",
        },
        mail_from="alice@sender.org",
        rcpt_to=[rcpt],
    )


CHANNEL_AND_FORWARD = {
    "support@example.com": {
        "type": "channel",
        "slack": "C0SUPPORT1",
        "forward_to": ["oncall@example.net"],
    }
}


class TestRoutingMiss:

    def test_unknown_recipient_is_rejected_by_default(self):
        settings = _settings(CHANNEL_AND_FORWARD)
        transport = FakeTransport()

        verdict = process_inbound_email(
            _email("nobody@example.com"), settings, transport=transport
        )

        assert verdict.rejected
        assert verdict.reason == NO_SUCH_RECIPIENT_REASON
        assert transport.calls == []

    def test_skip_policy_accepts_without_delivery(self):
        settings = _settings(CHANNEL_AND_FORWARD, routing_miss_policy=RoutingMissPolicy.SKIP)
        client = _slack_client()

        verdict = process_inbound_email(
            _email("nobody@example.com"), settings, slack_client=client
        )

        assert not verdict.rejected
        assert verdict.processed is False
        client.call.assert_not_called()

    def test_invalid_routing_table_behaves_as_empty(self):
        settings = _settings({}, routes_json="{broken")
        verdict = process_inbound_email(_email(), settings)
        assert verdict.reason == NO_SUCH_RECIPIENT_REASON

    def test_fallback_route_is_used(self):
        settings = _settings({"fallback": {"forward_to": "catchall@example.net"}})
        transport = FakeTransport()

        verdict = process_inbound_email(_email("anyone@example.com"), settings, transport=transport)

        assert verdict.action == "accept"
        assert verdict.route == "anyone@example.com"
        assert transport.calls[0]["to"] == "catchall@example.net"


class TestForwarding:

    def test_route_without_targets_rejected_when_required(self):
        settings = _settings(
            {"support@example.com": {"type": "channel", "slack": "C0SUPPORT1"}},
            require_forward_targets=True,
        )
        client = _slack_client()

        verdict = process_inbound_email(_email(), settings, slack_client=client)

        assert verdict.rejected
        assert verdict.reason == UNKNOWN_ADDRESS_REASON
        client.call.assert_not_called()

    def test_successful_forward_accepts(self):
        transport = FakeTransport()
        tracker = DeliveryTracker(InlineScheduler())

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD, slack_bot_token=None),
            transport=transport,
            tracker=tracker,
        )

        assert verdict.action == "accept"
        assert verdict.route == "support@example.com"
        assert tracker.outcome_of("forward") is DeliveryOutcome.SUCCEEDED
        assert transport.calls[0]["mail_from"] == "alice@sender.org"

    def test_rejected_forward_recovers_with_rewritten_sender(self):
        transport = FakeTransport([ForwardRejected("550 DMARC"), None])

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD, slack_bot_token=None),
            transport=transport,
        )

        assert verdict.action == "accept"
        retry = transport.calls[1]
        assert retry["headers"]["From"] == "forwarder@example.com"
        assert retry["headers"]["Reply-To"] == "alice@sender.org"

    def test_configured_forward_sender_is_preferred(self):
        transport = FakeTransport([ForwardRejected("550"), None])

        process_inbound_email(
            _email(),
            _settings(
                CHANNEL_AND_FORWARD,
                slack_bot_token=None,
                forward_sender="relay@example.org",
            ),
            transport=transport,
        )

        assert transport.calls[1]["mail_from"] == "relay@example.org"

    def test_fatal_forward_rejects_the_message(self):
        transport = FakeTransport([ForwardRejected("550"), ForwardRejected("550")])
        tracker = DeliveryTracker(InlineScheduler())

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD, slack_bot_token=None),
            transport=transport,
            tracker=tracker,
        )

        assert verdict.rejected
        assert verdict.reason == FORWARD_FAILED_REASON
        assert tracker.outcome_of("forward") is DeliveryOutcome.FAILED_FATAL

    def test_missing_raw_body_is_fatal_for_forwarding(self):
        transport = FakeTransport()

        verdict = process_inbound_email(
            _email(raw=None),
            _settings(CHANNEL_AND_FORWARD, slack_bot_token=None),
            transport=transport,
        )

        assert verdict.rejected
        assert transport.calls == []

    def test_no_transport_configured_does_not_reject(self):
        tracker = DeliveryTracker(InlineScheduler())

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD, slack_bot_token=None),
            tracker=tracker,
        )

        assert verdict.action == "accept"
        assert tracker.outcome_of("forward") is DeliveryOutcome.SKIPPED


class TestSlackDelivery:

    def test_notification_and_archive_share_one_resolution(self):
        client = _slack_client()
        tracker = DeliveryTracker(InlineScheduler())
        settings = _settings(
            {"support@example.com": {"type": "dm", "slack": "U0USER001"}}
        )
        opened = _ok(channel={"id": "D0DMCHAN1"})
        base = client.call.side_effect
        client.call.side_effect = (
            lambda method, payload=None, encoding="json":
            opened if method == "conversations.open" else base(method, payload, encoding)
        )

        verdict = process_inbound_email(_email(), settings, slack_client=client, tracker=tracker)

        assert verdict.action == "accept"
        methods = [c.args[0] for c in client.call.call_args_list]
        assert methods.count("conversations.open") == 1
        assert "chat.postMessage" in methods
        assert "files.completeUploadExternal" in methods
        assert tracker.outcome_of("slack_notification") is DeliveryOutcome.SUCCEEDED
        assert tracker.outcome_of("slack_archive") is DeliveryOutcome.SUCCEEDED

    def test_notification_payload_targets_resolved_channel(self):
        client = _slack_client()

        process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD),
            slack_client=client,
            transport=FakeTransport(),
        )

        post = next(c for c in client.call.call_args_list if c.args[0] == "chat.postMessage")
        payload = post.args[1]
        assert payload["channel"] == "C0SUPPORT1"
        assert "Printer on fire" in payload["text"]

    def test_missing_token_skips_slack(self):
        tracker = DeliveryTracker(InlineScheduler())

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD, slack_bot_token=None),
            transport=FakeTransport(),
            tracker=tracker,
        )

        assert verdict.action == "accept"
        assert tracker.outcome_of("slack") is DeliveryOutcome.SKIPPED
        assert tracker.outcome_of("slack_notification") is None

    def test_slack_failure_never_rejects(self):
        client = _slack_client(
            post=SlackResponse(ok=False, error="not_in_channel", http_status=200)
        )
        tracker = DeliveryTracker(InlineScheduler())

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD),
            slack_client=client,
            transport=FakeTransport(),
            tracker=tracker,
        )

        assert verdict.action == "accept"
        assert tracker.outcome_of("slack_notification") is DeliveryOutcome.FAILED_RECOVERABLE

    def test_crashing_task_is_isolated(self):
        client = Mock()
        client.call.side_effect = RuntimeError("socket closed")
        client.put_bytes.side_effect = RuntimeError("socket closed")
        tracker = DeliveryTracker(InlineScheduler())
        settings = _settings(
            {"support@example.com": {"type": "channel", "slack": "C0SUPPORT1"}}
        )

        verdict = process_inbound_email(_email(), settings, slack_client=client, tracker=tracker)

        assert verdict.action == "accept"
        assert tracker.outcome_of("slack_notification") is DeliveryOutcome.FAILED_RECOVERABLE
        assert tracker.outcome_of("slack_archive") is DeliveryOutcome.FAILED_RECOVERABLE

    def test_tasks_are_scheduled_not_awaited(self):
        scheduler = RecordingScheduler()
        client = _slack_client()
        transport = FakeTransport()

        verdict = process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD),
            scheduler=scheduler,
            slack_client=client,
            transport=transport,
        )

        # The verdict is decided before any Slack call happens
        assert verdict.action == "accept"
        assert len(scheduler.tasks) == 2
        client.call.assert_not_called()
        assert len(transport.calls) == 1

    def test_disabled_archive_upload(self):
        client = _slack_client()
        tracker = DeliveryTracker(InlineScheduler())

        process_inbound_email(
            _email(),
            _settings(CHANNEL_AND_FORWARD, slack_upload_raw=False),
            slack_client=client,
            transport=FakeTransport(),
            tracker=tracker,
        )

        methods = [c.args[0] for c in client.call.call_args_list]
        assert "files.getUploadURLExternal" not in methods
        assert tracker.outcome_of("slack_archive") is None


class TestDeliveryTracker:

    def test_outcome_of_returns_latest(self):
        tracker = DeliveryTracker(InlineScheduler())
        tracker.record("forward", DeliveryOutcome.FAILED_RECOVERABLE)
        tracker.record("forward", DeliveryOutcome.SUCCEEDED)
        assert tracker.outcome_of("forward") is DeliveryOutcome.SUCCEEDED
        assert tracker.outcome_of("missing") is None

    def test_submit_runs_through_scheduler(self):
        tracker = DeliveryTracker(InlineScheduler())
        tracker.submit("task", lambda x: DeliveryOutcome.SUCCEEDED if x else DeliveryOutcome.SKIPPED, 1)
        assert tracker.records[0].name == "task"
        assert tracker.records[0].outcome is DeliveryOutcome.SUCCEEDED

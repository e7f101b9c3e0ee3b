"""
Rendered Slack notification for one inbound message.

All text fields are already escaped for Slack mrkdwn and truncated to their
limits by app.services.preview; this model only assembles the payload.
"""

from typing import Any, Optional

from pydantic import BaseModel


class RenderedNotification(BaseModel):
    """Size-bounded notification payload. Immutable once built."""

    model_config = {"frozen": True}

    sender: str
    recipient: str
    subject: str
    date: Optional[str] = None
    preview: str
    attachment_lines: tuple[str, ...] = ()
    attachment_total: int = 0

    @property
    def summary(self) -> str:
        """One-line fallback text shown in push notifications."""
        return (
            f"Got an email from {self.sender}, to {self.recipient}, "
            f"subject: {self.subject}"
        )

    def to_slack_payload(self, channel: str) -> dict[str, Any]:
        """Build the chat.postMessage body."""
        fields = [
            {"type": "mrkdwn", "text": f"*From:*\n{self.sender}"},
            {"type": "mrkdwn", "text": f"*To:*\n{self.recipient}"},
            {"type": "mrkdwn", "text": f"*Subject:*\n{self.subject}"},
        ]
        if self.date:
            fields.append({"type": "mrkdwn", "text": f"*Date:*\n{self.date}"})

        blocks: list[dict[str, Any]] = [
            {"type": "section", "fields": fields},
            {"type": "divider"},
            {"type": "section", "text": {"type": "mrkdwn", "text": self.preview}},
        ]

        if self.attachment_total:
            lines = list(self.attachment_lines)
            hidden = self.attachment_total - len(lines)
            if hidden > 0:
                lines.append(f"…and {hidden} more")
            blocks.append(
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": f":paperclip: {self.attachment_total} attachment(s)\n"
                            + "\n".join(lines),
                        }
                    ],
                }
            )

        return {
            "channel": channel,
            "text": self.summary,
            "blocks": blocks,
            "unfurl_links": False,
            "unfurl_media": False,
        }

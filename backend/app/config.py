"""
Process configuration.

All settings come from environment variables (a local .env file is loaded
first when present). Secrets and the routing table are never compiled in.

Environment variables
---------------------
SLACK_BOT_TOKEN             Bot token for the Slack Web API. When absent all
                            Slack delivery is skipped (mail is never rejected
                            for this).
SLACK_API_BASE              Web API base URL (default: https://slack.com/api).
SLACK_NOTIFY                Post a notification message (default: true).
SLACK_UPLOAD_RAW            Upload the raw .eml as a file (default: true).
SLACK_ALLOW_CHANNEL_CREATE  Create channels that are referenced by name but
                            do not exist yet (default: false).
SLACK_DEFAULT_CHANNEL       Channel name used by routes that request Slack
                            delivery without naming a destination
                            (default: email-inbox).
SLACK_MAX_ATTEMPTS          Attempt ceiling for retried API calls (default: 3).
ROUTES_JSON                 Routing table, JSON object keyed by recipient.
ROUTING_MISS_POLICY         "reject" or "skip" when no route matches
                            (default: reject).
REQUIRE_FORWARD_TARGETS     Reject routes that have no forward_to targets
                            (default: false).
FORWARD_SENDER              Sender used when a forward has to be retried with
                            a rewritten From header.
SMTP_HOST / SMTP_PORT       Relay used for forwarding (default port 25).
SMTP_USERNAME / SMTP_PASSWORD / SMTP_STARTTLS
EMAIL_PROVIDER              Inbound webhook payload format (default: generic).
"""

import os
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


class RoutingMissPolicy(str, Enum):
    REJECT = "reject"
    SKIP = "skip"


class Settings(BaseModel):
    """Snapshot of the process configuration."""

    slack_bot_token: Optional[str] = None
    slack_api_base: str = "https://slack.com/api"
    slack_notify: bool = True
    slack_upload_raw: bool = True
    slack_allow_channel_create: bool = False
    slack_default_channel: str = "email-inbox"
    slack_max_attempts: int = 3

    routes_json: Optional[str] = None
    routing_miss_policy: RoutingMissPolicy = RoutingMissPolicy.REJECT
    require_forward_targets: bool = False

    forward_sender: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 25
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_starttls: bool = False

    email_provider: str = "generic"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def _miss_policy() -> RoutingMissPolicy:
    raw = (os.getenv("ROUTING_MISS_POLICY") or "").strip().lower()
    try:
        return RoutingMissPolicy(raw) if raw else RoutingMissPolicy.REJECT
    except ValueError:
        return RoutingMissPolicy.REJECT


def get_settings() -> Settings:
    """
    Read settings from the environment.

    Called once per inbound event so that a changed routing table is picked
    up without restarting the process.
    """
    return Settings(
        slack_bot_token=_env_str("SLACK_BOT_TOKEN"),
        slack_api_base=_env_str("SLACK_API_BASE") or "https://slack.com/api",
        slack_notify=_env_bool("SLACK_NOTIFY", True),
        slack_upload_raw=_env_bool("SLACK_UPLOAD_RAW", True),
        slack_allow_channel_create=_env_bool("SLACK_ALLOW_CHANNEL_CREATE", False),
        slack_default_channel=_env_str("SLACK_DEFAULT_CHANNEL") or "email-inbox",
        slack_max_attempts=max(1, _env_int("SLACK_MAX_ATTEMPTS", 3)),
        routes_json=os.getenv("ROUTES_JSON"),
        routing_miss_policy=_miss_policy(),
        require_forward_targets=_env_bool("REQUIRE_FORWARD_TARGETS", False),
        forward_sender=_env_str("FORWARD_SENDER"),
        smtp_host=_env_str("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 25),
        smtp_username=_env_str("SMTP_USERNAME"),
        smtp_password=_env_str("SMTP_PASSWORD"),
        smtp_starttls=_env_bool("SMTP_STARTTLS", False),
        email_provider=(_env_str("EMAIL_PROVIDER") or "generic").lower(),
    )

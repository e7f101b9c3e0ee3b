"""
Routing table models.

The routing table is operator-supplied JSON keyed by recipient address.
Each entry is parsed once per inbound event into an immutable RouteConfig;
anything malformed is dropped (treated as "no route") instead of flowing
further into the pipeline.

Accepted entry shapes
---------------------
Compact form::

    {"type": "channel", "slack": "C0123456789", "forward_to": ["a@example.com"]}
    {"type": "channel", "slack": "support"}
    {"type": "dm", "slack": "U0123456789", "forward_to": "a@example.com"}

Explicit form::

    {"type": "channel", "channel_name": "support", "forward_sender": "relay@example.com"}
    {"type": "dm", "user_id": "U0123456789"}

Table-level keys:
    fallback    route used when no recipient-specific entry matches
    forwarder   default forward_sender for every route that lacks one
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

FALLBACK_KEY = "fallback"
FORWARDER_KEY = "forwarder"

# Public channels start with C, private (legacy group) channels with G.
CHANNEL_ID_RE = re.compile(r"^[CG][A-Z0-9]{8,}$")
# An already-opened direct message conversation.
DM_CHANNEL_ID_RE = re.compile(r"^D[A-Z0-9]{8,}$")


class RouteKind(str, Enum):
    CHANNEL = "channel"
    DIRECT_MESSAGE = "direct_message"


_DESTINATION_KEYS = ("slack", "channel_id", "channel_name", "user_id")

_KIND_ALIASES = {
    "channel": RouteKind.CHANNEL,
    "dm": RouteKind.DIRECT_MESSAGE,
    "direct_message": RouteKind.DIRECT_MESSAGE,
}


class RouteConfig(BaseModel):
    """
    The routing decision for one recipient.

    kind is None for forward-only routes (no Slack delivery).
    forward_targets is ordered (attempt order) and duplicate-free.
    """

    model_config = {"frozen": True}

    kind: Optional[RouteKind] = None
    channel_id: Optional[str] = None
    channel_name: Optional[str] = None
    user_id: Optional[str] = None
    forward_targets: tuple[str, ...] = ()
    forward_sender: Optional[str] = None

    @property
    def has_slack_target(self) -> bool:
        return self.kind is not None


def normalize_address(address: Optional[str]) -> str:
    """Trim and lower-case an address for table lookups."""
    return f"{address or ''}".strip().lower()


def _clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _dedupe_targets(raw: Any) -> Optional[tuple[str, ...]]:
    """
    Normalize forward_to into an ordered, duplicate-free tuple.

    Returns None when the value has the wrong shape.
    """
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return None

    seen: set[str] = set()
    targets: list[str] = []
    for item in raw:
        address = _clean_str(item)
        if not address or "@" not in address:
            return None
        key = address.lower()
        if key in seen:
            continue
        seen.add(key)
        targets.append(address)
    return tuple(targets)


def parse_route_config(
    value: Any,
    default_sender: Optional[str] = None,
    default_channel: Optional[str] = None,
) -> Optional[RouteConfig]:
    """
    Parse one routing-table entry with defaults.

    Returns None for anything malformed. Never raises.
    """
    if not isinstance(value, dict):
        return None

    targets = _dedupe_targets(value.get("forward_to", value.get("forwardTo")))
    if targets is None:
        return None

    # A destination key that is set must hold a usable string
    named = [k for k in _DESTINATION_KEYS if value.get(k) is not None]
    if any(_clean_str(value[k]) is None for k in named):
        return None

    forward_sender = _clean_str(value.get("forward_sender")) or default_sender
    slack = _clean_str(value.get("slack"))
    raw_kind = _clean_str(value.get("type"))

    if raw_kind is None and not named:
        # Forward-only route
        if not targets:
            return None
        return RouteConfig(forward_targets=targets, forward_sender=forward_sender)

    kind = _KIND_ALIASES.get((raw_kind or "channel").lower())
    if kind is None:
        return None

    if kind is RouteKind.DIRECT_MESSAGE:
        user_id = _clean_str(value.get("user_id")) or slack
        if not user_id:
            return None
        return RouteConfig(
            kind=kind,
            user_id=user_id,
            forward_targets=targets,
            forward_sender=forward_sender,
        )

    channel_id = _clean_str(value.get("channel_id"))
    channel_name = _clean_str(value.get("channel_name"))
    if slack and not channel_id and not channel_name:
        if CHANNEL_ID_RE.match(slack):
            channel_id = slack
        else:
            channel_name = slack.lstrip("#")
    if channel_id and channel_name:
        return None
    if not channel_id and not channel_name and not named:
        channel_name = default_channel
    if not channel_id and not channel_name:
        return None

    return RouteConfig(
        kind=kind,
        channel_id=channel_id,
        channel_name=channel_name,
        forward_targets=targets,
        forward_sender=forward_sender,
    )


def parse_routing_table(
    raw: Any,
    default_channel: Optional[str] = None,
) -> dict[str, RouteConfig]:
    """
    Parse a routing table (JSON string or dict) into normalized routes.

    Keys are normalized with normalize_address(). The reserved fallback key
    is kept under FALLBACK_KEY. Invalid JSON yields an empty table.
    """
    if isinstance(raw, (str, bytes)):
        if not raw.strip():
            return {}
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.error("Routing table is not valid JSON; treating as empty")
            return {}
    if not isinstance(raw, dict):
        return {}

    default_sender = _clean_str(raw.get(FORWARDER_KEY))

    table: dict[str, RouteConfig] = {}
    for key, value in raw.items():
        if key == FORWARDER_KEY:
            continue
        route = parse_route_config(
            value,
            default_sender=default_sender,
            default_channel=default_channel,
        )
        if route is None:
            logger.warning(f"Ignoring malformed route entry for {key!r}")
            continue
        table[normalize_address(key)] = route
    return table

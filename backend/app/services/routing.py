"""
Recipient → route resolution.

Lookups are case-insensitive on the configured key. The reserved fallback
entry is only returned when no recipient-specific entry matches. A None
result means "no destination configured"; whether that rejects the message
or silently accepts it is the deployment's RoutingMissPolicy.
"""

import logging
from typing import Iterable, Optional

from app.models.route import FALLBACK_KEY, RouteConfig, normalize_address

logger = logging.getLogger(__name__)


def resolve_route(
    recipient: Optional[str],
    routing_table: dict[str, RouteConfig],
) -> Optional[RouteConfig]:
    """
    Map one recipient address to its RouteConfig.

    routing_table must come from parse_routing_table() (normalized keys).
    """
    if not routing_table:
        return None

    key = normalize_address(recipient)
    if key and key != FALLBACK_KEY:
        route = routing_table.get(key)
        if route is not None:
            return route

    return routing_table.get(FALLBACK_KEY)


def resolve_recipients(
    recipients: Iterable[str],
    routing_table: dict[str, RouteConfig],
) -> tuple[Optional[str], Optional[RouteConfig]]:
    """
    Resolve the first envelope recipient that has its own route.

    Returns (matched_recipient, route). When only the fallback applies the
    first recipient is reported as matched; when nothing applies both are None.
    """
    recipients = [r for r in recipients if normalize_address(r)]

    for recipient in recipients:
        key = normalize_address(recipient)
        if key != FALLBACK_KEY and key in routing_table:
            return recipient, routing_table[key]

    fallback = routing_table.get(FALLBACK_KEY) if routing_table else None
    if fallback is not None:
        logger.info(f"No route for {recipients!r}; using fallback route")
        return (recipients[0] if recipients else None), fallback

    return None, None

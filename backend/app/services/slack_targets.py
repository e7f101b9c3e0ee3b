"""
Resolve a route's Slack destination into a concrete conversation id.

Three destination shapes are supported:
  - direct message   conversations.open with the user id
  - channel id       validated locally, used without any network call
  - channel name     paginated conversations.list, then conversations.create
                     when creation is allowed

Results are memoized in a ResolutionCache that lives for exactly one inbound
event. Channels can be created or renamed between events, so a cache must
never be reused across events.
"""

import logging
import re
from typing import Optional

from app.models.route import CHANNEL_ID_RE, DM_CHANNEL_ID_RE, RouteConfig, RouteKind
from app.services.slack_api import SlackApiClient, hint_for

logger = logging.getLogger(__name__)

MAX_CHANNEL_NAME_LENGTH = 80
LIST_PAGE_SIZE = 200

_MISSING = object()
# conversations.list could not be read to the end
_LIST_FAILED = object()


class ResolutionCache:
    """Per-event memo of resolved destinations (None included)."""

    def __init__(self) -> None:
        self._entries: dict[str, Optional[str]] = {}

    def lookup(self, key: str):
        return self._entries.get(key, _MISSING)

    def store(self, key: str, channel_id: Optional[str]) -> None:
        self._entries[key] = channel_id

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def sanitize_channel_name(name: Optional[str]) -> Optional[str]:
    """
    Normalize a human channel name to Slack's naming rules.

    Lower-case, spaces become hyphens, only [a-z0-9_-] survive, at most 80
    characters. Returns None when nothing usable is left.
    """
    if not name:
        return None
    cleaned = name.strip().lstrip("#").lower().replace(" ", "-")
    cleaned = re.sub(r"[^a-z0-9_-]", "", cleaned)[:MAX_CHANNEL_NAME_LENGTH]
    return cleaned or None


def is_channel_id(value: Optional[str]) -> bool:
    return bool(value) and bool(CHANNEL_ID_RE.match(value))


class SlackTargetResolver:
    """
    Turns a RouteConfig into a channel id.

    resolve() never raises: every failure is logged and yields None.
    """

    def __init__(self, client: SlackApiClient, allow_create: bool = False):
        self.client = client
        self.allow_create = allow_create

    def resolve(self, route: RouteConfig, cache: ResolutionCache) -> Optional[str]:
        try:
            if route.kind is RouteKind.DIRECT_MESSAGE:
                return self._resolve_dm(route.user_id, cache)
            if route.kind is RouteKind.CHANNEL:
                if route.channel_id:
                    return self._resolve_channel_id(route.channel_id)
                return self._resolve_channel_name(route.channel_name, cache)
            return None
        except Exception:
            logger.exception("Slack target resolution failed")
            return None

    # -----------------------------------------------------------------------
    # Direct messages
    # -----------------------------------------------------------------------

    def _resolve_dm(self, user_id: Optional[str], cache: ResolutionCache) -> Optional[str]:
        if not user_id:
            return None
        if DM_CHANNEL_ID_RE.match(user_id):
            # Already a DM conversation id
            return user_id

        key = f"dm:{user_id}"
        cached = cache.lookup(key)
        if cached is not _MISSING:
            return cached

        opened = self.client.call("conversations.open", {"users": user_id})
        channel_id = (opened.get("channel") or {}).get("id") if opened.ok else None
        if not channel_id:
            logger.error(
                f"conversations.open failed for {user_id}: {opened.error or 'missing channel id'}"
            )
            self._log_hint(opened.error)
        cache.store(key, channel_id)
        return channel_id

    # -----------------------------------------------------------------------
    # Channels
    # -----------------------------------------------------------------------

    @staticmethod
    def _resolve_channel_id(channel_id: str) -> Optional[str]:
        if is_channel_id(channel_id):
            return channel_id
        logger.error(f"Configured channel id {channel_id!r} is not a valid channel id")
        return None

    def _resolve_channel_name(
        self,
        channel_name: Optional[str],
        cache: ResolutionCache,
    ) -> Optional[str]:
        name = sanitize_channel_name(channel_name)
        if not name:
            logger.error(f"Channel name {channel_name!r} is empty after sanitizing")
            return None

        key = f"name:{name}"
        cached = cache.lookup(key)
        if cached is not _MISSING:
            return cached

        channel_id = self._find_channel(name)
        if channel_id is _LIST_FAILED:
            channel_id = None
        elif channel_id is None:
            if self.allow_create:
                channel_id = self._create_channel(name)
            else:
                logger.warning(
                    f"Slack channel #{name} not found and channel creation is disabled"
                )
        cache.store(key, channel_id)
        return channel_id

    def _find_channel(self, name: str):
        """
        Walk conversations.list pages until a match or the last page.

        Returns the channel id, None when the listing completed without a
        match, or _LIST_FAILED when a page could not be fetched.
        """
        cursor: Optional[str] = None
        seen_cursors: set[str] = set()

        while True:
            payload = {
                "types": "public_channel,private_channel",
                "exclude_archived": True,
                "limit": LIST_PAGE_SIZE,
            }
            if cursor:
                payload["cursor"] = cursor

            listed = self.client.call("conversations.list", payload, encoding="form")
            if not listed.ok:
                logger.error(f"conversations.list failed: {listed.error}")
                self._log_hint(listed.error)
                return _LIST_FAILED

            for channel in listed.get("channels") or []:
                if channel.get("name") == name and channel.get("id"):
                    return channel["id"]

            cursor = (listed.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor or cursor in seen_cursors:
                return None
            seen_cursors.add(cursor)

    def _create_channel(self, name: str) -> Optional[str]:
        created = self.client.call(
            "conversations.create",
            {"name": name, "is_private": False},
            encoding="form",
        )
        if created.ok:
            channel_id = (created.get("channel") or {}).get("id")
            logger.info(f"Created Slack channel #{name} ({channel_id})")
            return channel_id

        if created.error == "name_taken":
            # Created concurrently (or archived); look it up once more.
            found = self._find_channel(name)
            return None if found is _LIST_FAILED else found

        logger.error(f"conversations.create failed for #{name}: {created.error}")
        self._log_hint(created.error)
        return None

    @staticmethod
    def _log_hint(error: Optional[str]) -> None:
        hint = hint_for(error)
        if hint:
            logger.error(f"Fix: {hint}")

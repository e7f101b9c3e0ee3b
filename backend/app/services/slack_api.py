"""
Slack Web API client.

Every call to Slack goes through SlackApiClient.call(), which gives callers a
single shape to reason about: a SlackResponse whose ``ok`` flag is False for
transport failures, HTTP failures, Slack-reported failures and non-JSON
bodies alike.

Retry policy
------------
HTTP 429            sleep for Retry-After (clamped to 1-10 s), then retry.
Transient errors    ratelimited, timeout, internal_error, service_unavailable,
                    fatal_error, 5xx responses and transport errors: retry
                    with linear backoff (attempt * backoff_base seconds).
Anything else       returned immediately.

After max_attempts the call yields error="retries_exhausted".
"""

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://slack.com/api"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

RETRY_AFTER_MIN = 1.0
RETRY_AFTER_MAX = 10.0
BACKOFF_BASE = 1.0

TRANSIENT_ERRORS = frozenset({
    "ratelimited",
    "rate_limited",
    "timeout",
    "request_timeout",
    "internal_error",
    "service_unavailable",
    "fatal_error",
    "transport_error",
})

# Actionable hints for the most common permanent failures.
ERROR_HINTS = {
    "missing_scope": "ensure the bot token has files:write, chat:write, "
    "channels:read, groups:read, channels:manage and im:write scopes.",
    "channel_not_found": "ensure the channel id is a conversation id like C..., "
    "and that the bot can see the channel.",
    "not_in_channel": "invite the bot to the channel (especially private channels).",
    "invalid_auth": "check SLACK_BOT_TOKEN.",
    "not_authed": "check SLACK_BOT_TOKEN.",
}


def hint_for(error: Optional[str]) -> Optional[str]:
    """Return a remediation hint for a Slack error code, if one is known."""
    return ERROR_HINTS.get(error or "")


@dataclass
class SlackResponse:
    """Uniform result of one Slack Web API call."""

    ok: bool
    error: Optional[str] = None
    http_status: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def _clamp_retry_after(response: httpx.Response) -> float:
    raw = response.headers.get("Retry-After", "")
    try:
        delay = float(raw)
    except ValueError:
        delay = RETRY_AFTER_MIN
    if not math.isfinite(delay):
        delay = RETRY_AFTER_MIN
    return min(max(delay, RETRY_AFTER_MIN), RETRY_AFTER_MAX)


def _parse_response(response: httpx.Response) -> SlackResponse:
    """Read the body as text first, then classify it."""
    text = response.text
    status = response.status_code
    try:
        parsed = json.loads(text)
    except ValueError:
        logger.error(f"Slack response not JSON: HTTP {status} {text[:500]!r}")
        return SlackResponse(ok=False, error="non_json_response", http_status=status)

    if not isinstance(parsed, dict):
        return SlackResponse(ok=False, error="non_json_response", http_status=status)

    ok = parsed.get("ok") is True
    error = parsed.get("error")
    if not response.is_success and ok:
        ok = False
    if not ok and not error:
        error = f"http_{status}" if not response.is_success else "unknown_error"
    return SlackResponse(ok=ok, error=None if ok else error, http_status=status, data=parsed)


def _form_fields(payload: dict[str, Any]) -> dict[str, str]:
    """Flatten a payload for form encoding; nested values are sent as JSON."""
    fields: dict[str, str] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            fields[key] = json.dumps(value)
        elif isinstance(value, bool):
            fields[key] = "true" if value else "false"
        else:
            fields[key] = str(value)
    return fields


class SlackApiClient:
    """
    Synchronous Slack Web API executor with bounded retry.

    Args:
        token:        Bot token (xoxb-...).
        api_base:     Web API base URL.
        max_attempts: Attempt ceiling shared by 429 and transient retries.
        http_client:  Optional pre-built httpx.Client (tests pass one with a
                      MockTransport).
        sleep:        Sleep function, injectable for tests.
    """

    def __init__(
        self,
        token: str,
        api_base: str = DEFAULT_API_BASE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        backoff_base: float = BACKOFF_BASE,
    ):
        if not token:
            raise ValueError("A Slack bot token is required")
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._http = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT)

    def close(self) -> None:
        self._http.close()

    def _send(self, method: str, payload: dict[str, Any], encoding: str) -> httpx.Response:
        url = f"{self.api_base}/{method}"
        headers = {"Authorization": f"Bearer {self.token}"}
        if encoding == "form":
            return self._http.post(url, headers=headers, data=_form_fields(payload))
        headers["Content-Type"] = "application/json; charset=utf-8"
        return self._http.post(url, headers=headers, content=json.dumps(payload))

    def call(
        self,
        method: str,
        payload: Optional[dict[str, Any]] = None,
        encoding: str = "json",
    ) -> SlackResponse:
        """
        Invoke a Web API method.

        Args:
            method:   API method name, e.g. "chat.postMessage".
            payload:  Method arguments.
            encoding: "json" (structured body) or "form" (form fields).

        Returns:
            SlackResponse. Never raises for transport or API failures.
        """
        if encoding not in ("json", "form"):
            raise ValueError(f"Unsupported payload encoding {encoding!r}")
        payload = payload or {}
        last_status: Optional[int] = None

        for attempt in range(1, self.max_attempts + 1):
            is_last = attempt == self.max_attempts
            try:
                response = self._send(method, payload, encoding)
            except httpx.TransportError as e:
                logger.warning(
                    f"Slack {method} transport error: {e} "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                if is_last:
                    break
                self._sleep(self.backoff_base * attempt)
                continue

            last_status = response.status_code

            if response.status_code == 429:
                delay = _clamp_retry_after(response)
                logger.warning(
                    f"Slack {method} rate limited; retrying in {delay:.0f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                if is_last:
                    break
                self._sleep(delay)
                continue

            result = _parse_response(response)
            if result.ok:
                return result

            transient = result.error in TRANSIENT_ERRORS or response.status_code >= 500
            if not transient:
                return result

            logger.warning(
                f"Slack {method} transient error: {result.error} "
                f"(attempt {attempt}/{self.max_attempts})"
            )
            if is_last:
                break
            self._sleep(self.backoff_base * attempt)

        logger.error(f"Slack {method} failed after {self.max_attempts} attempts")
        return SlackResponse(ok=False, error="retries_exhausted", http_status=last_status)

    def put_bytes(self, url: str, data: bytes) -> bool:
        """
        Transfer raw bytes to a pre-signed upload URL.

        Success is judged on the HTTP status alone; the body is not JSON.
        """
        try:
            response = self._http.post(
                url,
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Slack file transfer failed: {e}")
            return False
        if not response.is_success:
            logger.error(f"Slack file transfer returned HTTP {response.status_code}")
            return False
        return True

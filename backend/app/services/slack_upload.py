"""
Slack external file upload.

Slack uploads are three ordered phases:
  1. files.getUploadURLExternal   reserve a slot for `length` bytes
  2. POST bytes to the upload URL  raw application/octet-stream body
  3. files.completeUploadExternal  share the file into a channel

Each phase depends on the previous one; a failure anywhere aborts the rest
and the whole upload reports False. Nothing is retried here beyond what the
API client does per call, so a caller wanting another try starts over.
"""

import logging
import re
import time
from typing import Optional

from app.models.delivery import UploadSession
from app.services.slack_api import SlackApiClient, hint_for

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 150
_SUBJECT_SLUG_LENGTH = 80


def archive_filename(subject: Optional[str], now_ms: Optional[int] = None) -> str:
    """
    Build the .eml filename for an archived message.

    Example: email-1718000000000-quarterly_report.eml
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    slug = re.sub(r"[^a-z0-9]+", "_", (subject or "")[:_SUBJECT_SLUG_LENGTH], flags=re.IGNORECASE)
    slug = slug.strip("_").lower()
    return f"email-{now_ms}-{slug or 'no_subject'}.eml"


def _request_slot(client: SlackApiClient, session: UploadSession) -> bool:
    reserved = client.call(
        "files.getUploadURLExternal",
        {"filename": session.filename, "length": session.total_bytes},
        encoding="form",
    )
    if not reserved.ok:
        logger.error(f"files.getUploadURLExternal failed: {reserved.error}")
        hint = hint_for(reserved.error)
        if hint:
            logger.error(f"Fix: {hint}")
        return False

    session.upload_url = reserved.get("upload_url")
    session.file_id = reserved.get("file_id")
    if not session.upload_url or not session.file_id:
        logger.error("files.getUploadURLExternal returned no upload_url/file_id")
        return False
    return True


def _complete(
    client: SlackApiClient,
    session: UploadSession,
    channel_id: str,
    title: Optional[str],
    comment: Optional[str],
) -> bool:
    file_entry = {"id": session.file_id}
    if title:
        file_entry["title"] = title[:MAX_TITLE_LENGTH]

    payload = {"files": [file_entry], "channel_id": channel_id}
    if comment:
        payload["initial_comment"] = comment

    completed = client.call("files.completeUploadExternal", payload)
    if not completed.ok:
        logger.error(f"files.completeUploadExternal failed: {completed.error}")
        hint = hint_for(completed.error)
        if hint:
            logger.error(f"Fix: {hint}")
        return False
    return True


def upload_file(
    client: SlackApiClient,
    channel_id: str,
    filename: str,
    data: bytes,
    title: Optional[str] = None,
    comment: Optional[str] = None,
) -> bool:
    """
    Upload one file into a channel.

    Args:
        client:     Slack API client.
        channel_id: Destination conversation id.
        filename:   Name shown in Slack.
        data:       File content. Empty content is never uploaded.
        title:      Optional file title (truncated to 150 chars).
        comment:    Optional message posted alongside the file.

    Returns:
        True only when all three phases succeeded.
    """
    if not data:
        logger.warning(f"Refusing to upload empty file {filename!r}")
        return False

    session = UploadSession(filename=filename, total_bytes=len(data))

    if not _request_slot(client, session):
        return False

    if not client.put_bytes(session.upload_url, data):
        return False

    if not _complete(client, session, channel_id, title, comment):
        return False

    logger.info(
        f"Uploaded {session.filename} ({session.total_bytes} bytes) "
        f"to {channel_id} as {session.file_id}"
    )
    return True

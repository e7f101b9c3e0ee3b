"""
Delivery result models.

Every delivery task (notification, archive upload, forwarding) ends in one
DeliveryOutcome. Only a forwarding task's FAILED_FATAL outcome affects the
accept/reject decision for the inbound message.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class DeliveryOutcome(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED_RECOVERABLE = "failed-recoverable"
    FAILED_FATAL = "failed-fatal"


class ForwardAttempt(BaseModel):
    """One forward attempt to one target."""

    target: str
    rewritten: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ForwardResult(BaseModel):
    """Aggregate result of forwarding to every target of a route."""

    outcome: DeliveryOutcome
    reason: Optional[str] = None
    delivered: list[str] = []
    attempts: list[ForwardAttempt] = []

    @property
    def fatal(self) -> bool:
        return self.outcome is DeliveryOutcome.FAILED_FATAL

    @property
    def used_rewrite(self) -> bool:
        return any(a.rewritten and a.ok for a in self.attempts)


@dataclass
class UploadSession:
    """State carried across the three upload phases of one file."""

    filename: str
    total_bytes: int
    upload_url: Optional[str] = None
    file_id: Optional[str] = None


@dataclass
class TaskRecord:
    """A finished background delivery task."""

    name: str
    outcome: DeliveryOutcome
    detail: Optional[str] = None
    finished_at: datetime = field(default_factory=datetime.now)

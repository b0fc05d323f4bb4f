"""
Core data models for the bulk dispatcher.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    CHAT = "chat"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.COMPLETED})


class JobCommand(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class PassOutcome(str, Enum):
    NOT_RUNNING = "not_running"     # job was not running when the pass began
    LOCKED = "locked"               # another pass holds the lease
    COMPLETED = "completed"         # pass finalized the job
    STOPPED = "stopped"             # pause/cancel observed mid-loop
    YIELDED = "yielded"             # batch or time budget exhausted, more work left


class SweepAction(str, Enum):
    ACTIVATED = "activated"
    COMPLETED = "completed"
    DISPATCHED = "dispatched"
    ERROR = "error"


# ──────────────────────────────────────────────────────────────
#  Recipient — one member of a resolved audience
# ──────────────────────────────────────────────────────────────

class Recipient(BaseModel):
    id: str
    name: str = ""
    email: str = ""
    chat_address: str = ""                    # phone number or chat user id
    fields: dict[str, Any] = {}               # extra placeholder values

    def address_for(self, channel: ChannelType) -> str:
        if channel == ChannelType.EMAIL:
            return self.email.strip()
        return self.chat_address.strip()

    @property
    def label(self) -> str:
        return self.name or self.email or self.chat_address or self.id


# ──────────────────────────────────────────────────────────────
#  Template & errors
# ──────────────────────────────────────────────────────────────

class MessageTemplate(BaseModel):
    body: str
    subject: str = ""
    content_type: str = "auto"                # auto | text | html
    metadata: dict[str, Any] = {}


class ErrorEntry(BaseModel):
    """One failed recipient in a job's error log."""
    recipient_id: str
    recipient_label: str = ""
    reason: str
    timestamp: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  DispatchJob — one bulk-dispatch run
# ──────────────────────────────────────────────────────────────

class DispatchJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    channel: ChannelType
    audience_selector: str
    template: MessageTemplate
    total_candidates: int = 0
    valid_candidates: int = 0
    sent_count: int = 0
    failed_count: int = 0
    status: JobStatus = JobStatus.PENDING
    current_recipient_label: Optional[str] = None   # display hint only
    error_log: list[ErrorEntry] = []
    interval_seconds: float = 0.0
    audience_snapshot: bool = False
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_send_at: Optional[datetime] = None      # stamped by every counted outcome
    scheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def processed_count(self) -> int:
        return self.sent_count + self.failed_count

    @property
    def remaining(self) -> int:
        return max(self.valid_candidates - self.processed_count, 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_status_view(self) -> JobStatusView:
        return JobStatusView(
            id=self.id,
            channel=self.channel,
            status=self.status,
            sent_count=self.sent_count,
            failed_count=self.failed_count,
            total_candidates=self.total_candidates,
            valid_candidates=self.valid_candidates,
            remaining=self.remaining,
            current_recipient_label=self.current_recipient_label,
            error_log=list(self.error_log),
            created_at=self.created_at,
            completed_at=self.completed_at,
        )


class JobStatusView(BaseModel):
    """Read model returned by the status endpoint."""
    id: str
    channel: ChannelType
    status: JobStatus
    sent_count: int
    failed_count: int
    total_candidates: int
    valid_candidates: int
    remaining: int
    current_recipient_label: Optional[str] = None
    error_log: list[ErrorEntry] = []
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    success: bool
    delivery_ref: Optional[str] = None
    reason: str = ""
    retryable: bool = False

    @classmethod
    def ok(cls, delivery_ref: Optional[str] = None) -> SendResult:
        return cls(success=True, delivery_ref=delivery_ref)

    @classmethod
    def failed(cls, reason: str, retryable: bool = False) -> SendResult:
        return cls(success=False, reason=reason, retryable=retryable)


class PassResult(BaseModel):
    job_id: str
    outcome: PassOutcome
    status: Optional[JobStatus] = None
    sent: int = 0                   # sends made during this pass
    failed: int = 0                 # failures recorded during this pass
    remaining: int = 0


class SweepEntry(BaseModel):
    job_id: str
    action: SweepAction
    detail: str = ""


class SweepResult(BaseModel):
    scanned: int = 0
    entries: list[SweepEntry] = []

    @property
    def is_empty(self) -> bool:
        return not self.entries

"""
Abstract Job Store — Interface for all storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)
  - FileJobStore     (JSON files on disk, single-process, durable)

Every mutation is a single conditional write. Status changes go through
compare_and_set_status; counter changes are rejected once the job is
terminal, when they would push sent + failed past valid_candidates, when
the addressed snapshot row was already processed, or when the caller names a
lease owner that no longer holds the lease.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Union

from models.schemas import DispatchJob, ErrorEntry, JobStatus, Recipient

ExpectedStatus = Union[JobStatus, Iterable[JobStatus]]

# Snapshot row states
ROW_PENDING = "pending"
ROW_SENT = "sent"
ROW_FAILED = "failed"

# Keyword stamps compare_and_set_status accepts
STAMP_FIELDS = frozenset({"started_at", "completed_at", "scheduled_at"})


def expected_set(expected: ExpectedStatus) -> frozenset[JobStatus]:
    if isinstance(expected, JobStatus):
        return frozenset({expected})
    return frozenset(expected)


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Jobs ──────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: DispatchJob,
                         recipients: Optional[list[Recipient]] = None) -> DispatchJob:
        """Persist a new job and, when given, its ordered recipient snapshot."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[DispatchJob]:
        ...

    @abstractmethod
    async def list_jobs(self, status: Optional[ExpectedStatus] = None,
                        limit: int = 100) -> list[DispatchJob]:
        """Jobs ordered by created_at, optionally filtered by status."""
        ...

    # ── Status ────────────────────────────────────────────────

    @abstractmethod
    async def compare_and_set_status(self, job_id: str, expected: ExpectedStatus,
                                     new: JobStatus, **stamps) -> bool:
        """
        Set status to `new` only if the current status is in `expected`.
        Nothing leaves a terminal status, whatever `expected` says.
        A move to `completed` additionally requires sent + failed >= valid.
        Terminal targets clear the lease and the current label.
        """
        ...

    # ── Counters ──────────────────────────────────────────────

    @abstractmethod
    async def increment_sent(self, job_id: str, position: Optional[int] = None,
                             delivery_ref: Optional[str] = None, owner: Optional[str] = None) -> bool:
        """
        Count one delivered message and stamp last_send_at. With `owner`, the
        write only lands while that owner still holds the lease.
        """
        ...

    @abstractmethod
    async def increment_failed(self, job_id: str, entry: ErrorEntry,
                               position: Optional[int] = None, owner: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    async def set_current_recipient_label(self, job_id: str, label: Optional[str]) -> None:
        ...

    # ── Lease ─────────────────────────────────────────────────

    @abstractmethod
    async def claim_job(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        """
        Take or renew the processing lease. Succeeds only while the job is
        running and the lease is free, expired, or already held by `owner`.
        """
        ...

    @abstractmethod
    async def renew_lease(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        """Push the expiry forward while `owner` holds the lease and the job is not terminal."""
        ...

    @abstractmethod
    async def release_job(self, job_id: str, owner: str) -> None:
        ...

    # ── Snapshot ──────────────────────────────────────────────

    @abstractmethod
    async def get_recipients(self, job_id: str, offset: int = 0,
                             limit: Optional[int] = None) -> list[Recipient]:
        ...

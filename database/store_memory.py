"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlJobStore
  - Atomic under asyncio: no mutator awaits between its check and its write
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from database.store_base import (
    BaseJobStore, ExpectedStatus, ROW_FAILED, ROW_PENDING, ROW_SENT, STAMP_FIELDS, expected_set,
)
from models.schemas import DispatchJob, ErrorEntry, JobStatus, Recipient, TERMINAL_STATUSES

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore(BaseJobStore):
    """
    Keeps DispatchJob models plus one list of snapshot rows per job.
    Reads return deep copies so callers never hold live references.
    """

    def __init__(self):
        self._jobs: dict[str, DispatchJob] = {}
        self._recipients: dict[str, list[dict[str, Any]]] = {}     # job_id → ordered rows
        logger.info("inmemory_store_initialized")

    # ── Jobs ──────────────────────────────────────────────

    async def create_job(self, job: DispatchJob,
                         recipients: Optional[list[Recipient]] = None) -> DispatchJob:
        job = job.model_copy(deep=True)
        if recipients is not None:
            job.audience_snapshot = True
            self._recipients[job.id] = [
                {"position": i, "recipient": r.model_dump(mode="json"),
                 "status": ROW_PENDING, "delivery_ref": None, "processed_at": None}
                for i, r in enumerate(recipients)
            ]
        self._jobs[job.id] = job
        return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[DispatchJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, status: Optional[ExpectedStatus] = None,
                        limit: int = 100) -> list[DispatchJob]:
        wanted = expected_set(status) if status is not None else None
        jobs = [j for j in self._jobs.values() if wanted is None or j.status in wanted]
        jobs.sort(key=lambda j: j.created_at)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    # ── Status ────────────────────────────────────────────

    async def compare_and_set_status(self, job_id: str, expected: ExpectedStatus,
                                     new: JobStatus, **stamps) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status in TERMINAL_STATUSES or job.status not in expected_set(expected):
            return False
        if new == JobStatus.COMPLETED and job.processed_count < job.valid_candidates:
            return False

        job.status = new
        job.updated_at = _utcnow()
        for key, value in stamps.items():
            if key in STAMP_FIELDS:
                setattr(job, key, value)
        if new in TERMINAL_STATUSES:
            job.lease_owner = None
            job.lease_expires_at = None
            job.current_recipient_label = None
        return True

    # ── Counters ──────────────────────────────────────────

    def _take_row(self, job: DispatchJob, position: Optional[int],
                  owner: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Return the pending snapshot row at `position`, {} when unaddressed, None to reject."""
        if job.status in TERMINAL_STATUSES:
            return None
        if owner is not None and job.lease_owner != owner:
            return None
        if job.processed_count >= job.valid_candidates:
            return None
        if position is None or job.id not in self._recipients:
            return {}
        rows = self._recipients[job.id]
        if not 0 <= position < len(rows) or rows[position]["status"] != ROW_PENDING:
            return None
        return rows[position]

    async def increment_sent(self, job_id: str, position: Optional[int] = None,
                             delivery_ref: Optional[str] = None, owner: Optional[str] = None) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        row = self._take_row(job, position, owner)
        if row is None:
            return False
        now = _utcnow()
        if row:
            row.update(status=ROW_SENT, delivery_ref=delivery_ref, processed_at=now.isoformat())
        job.sent_count += 1
        job.updated_at = job.last_send_at = now
        return True

    async def increment_failed(self, job_id: str, entry: ErrorEntry,
                               position: Optional[int] = None, owner: Optional[str] = None) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        row = self._take_row(job, position, owner)
        if row is None:
            return False
        now = _utcnow()
        if row:
            row.update(status=ROW_FAILED, processed_at=now.isoformat())
        job.failed_count += 1
        job.error_log.append(entry.model_copy())
        job.updated_at = job.last_send_at = now
        return True

    async def set_current_recipient_label(self, job_id: str, label: Optional[str]) -> None:
        job = self._jobs.get(job_id)
        if job is not None and job.status not in TERMINAL_STATUSES:
            job.current_recipient_label = label

    # ── Lease ─────────────────────────────────────────────

    async def claim_job(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False
        now = _utcnow()
        held_by_other = (
            job.lease_owner not in (None, owner)
            and job.lease_expires_at is not None
            and job.lease_expires_at > now
        )
        if held_by_other:
            return False
        job.lease_owner = owner
        job.lease_expires_at = now + timedelta(seconds=lease_seconds)
        return True

    async def renew_lease(self, job_id: str, owner: str, lease_seconds: float) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status in TERMINAL_STATUSES or job.lease_owner != owner:
            return False
        job.lease_expires_at = _utcnow() + timedelta(seconds=lease_seconds)
        return True

    async def release_job(self, job_id: str, owner: str) -> None:
        job = self._jobs.get(job_id)
        if job is not None and job.lease_owner == owner:
            job.lease_owner = None
            job.lease_expires_at = None

    # ── Snapshot ──────────────────────────────────────────

    async def get_recipients(self, job_id: str, offset: int = 0,
                             limit: Optional[int] = None) -> list[Recipient]:
        rows = self._recipients.get(job_id, [])
        end = None if limit is None else offset + limit
        return [Recipient.model_validate(r["recipient"]) for r in rows[offset:end]]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "jobs": len(self._jobs),
            "recipients": sum(len(v) for v in self._recipients.values()),
        }
